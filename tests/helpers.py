"""
Shared test helpers: loopback echo servers and a scriptable transport
"""

import asyncio
import socket
import time
from typing import List, Optional, Union

from replayr.errors import ConnectError, SendError
from replayr.transport import Endpoint, InboundPacket, Protocol, Transport


def unused_port(kind: int = socket.SOCK_STREAM) -> int:
    """A loopback port nothing is listening on (right now)"""
    sock = socket.socket(socket.AF_INET, kind)
    try:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
    finally:
        sock.close()


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll predicate until true or fail the test"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)


class TcpEchoServer:
    """Loopback TCP server echoing every chunk back"""

    def __init__(self, close_immediately: bool = False):
        self.close_immediately = close_immediately
        self.received: List[bytes] = []
        self.port: Optional[int] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: List[asyncio.StreamWriter] = []

    @property
    def received_bytes(self) -> bytes:
        return b"".join(self.received)

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(Protocol.TCP, "127.0.0.1", self.port)

    async def start(self) -> "TcpEchoServer":
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._writers.append(writer)
        try:
            if self.close_immediately:
                return
            while True:
                data = await reader.read(1024)
                if not data:
                    break
                self.received.append(data)
                writer.write(data)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()

    async def stop(self) -> None:
        for writer in self._writers:
            writer.close()
        self._server.close()
        await asyncio.wait_for(self._server.wait_closed(), timeout=2.0)


class _UdpEchoProtocol(asyncio.DatagramProtocol):
    def __init__(self):
        self.transport = None
        self.received: List[bytes] = []

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.received.append(data)
        self.transport.sendto(data, addr)


class UdpEchoServer:
    """Loopback UDP socket echoing every datagram to its sender"""

    def __init__(self):
        self.port: Optional[int] = None
        self._transport = None
        self._protocol: Optional[_UdpEchoProtocol] = None

    @property
    def received(self) -> List[bytes]:
        return self._protocol.received

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(Protocol.UDP, "127.0.0.1", self.port)

    async def start(self) -> "UdpEchoServer":
        loop = asyncio.get_running_loop()
        self._transport, self._protocol = await loop.create_datagram_endpoint(
            _UdpEchoProtocol, local_addr=("127.0.0.1", 0)
        )
        self.port = self._transport.get_extra_info("sockname")[1]
        return self

    async def stop(self) -> None:
        self._transport.close()


class FakeTransport(Transport):
    """
    In-memory transport

    fail_connect: cause for a ConnectError on connect()
    fail_send_at: index of the send attempt that raises SendError
    feed(): queue inbound bytes or an exception for receive()
    """

    def __init__(self, fail_connect: Optional[str] = None, fail_send_at: Optional[int] = None):
        super().__init__()
        self.fail_connect = fail_connect
        self.fail_send_at = fail_send_at
        self.connected = False
        self.sent: List[bytes] = []
        self.send_times: List[float] = []
        self.release_count = 0
        self._inbound: "asyncio.Queue[Union[bytes, BaseException]]" = asyncio.Queue()

    async def connect(self, endpoint: Endpoint) -> None:
        self._endpoint = endpoint
        if self.fail_connect:
            raise ConnectError(self.fail_connect)
        self.connected = True

    async def send(self, data: bytes) -> None:
        if self.fail_send_at is not None and len(self.sent) == self.fail_send_at:
            raise SendError("broken pipe")
        self.sent.append(data)
        self.send_times.append(time.monotonic())

    async def receive(self) -> InboundPacket:
        item = await self._inbound.get()
        if isinstance(item, BaseException):
            raise item
        return InboundPacket(data=item, source=("192.0.2.1", 4000))

    def feed(self, item: Union[bytes, BaseException]) -> None:
        self._inbound.put_nowait(item)

    async def _release(self) -> None:
        self.release_count += 1
