"""
Transport Adapters

Uniform connect/send/receive/close over one TCP stream or one UDP socket.

UDP note: the socket is bound locally and never connect()ed, so datagrams
from ANY sender are delivered by receive(), not only those from the
configured endpoint. Callers see the source address on each InboundPacket.
"""

import asyncio
import logging
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from .constants import (
    CLOSE_TIMEOUT,
    DEFAULT_CONNECT_TIMEOUT,
    PORT_MAX,
    PORT_MIN,
    TCP_RECV_BUFFER_SIZE,
    UDP_BIND_ADDRESS_V4,
    UDP_BIND_ADDRESS_V6,
)
from .errors import ConnectError, PeerClosed, ReceiveError, SendError

logger = logging.getLogger("Replayr.Transport")


class Protocol(Enum):
    """Transport protocol"""
    TCP = "tcp"
    UDP = "udp"

    @classmethod
    def parse(cls, value: Any) -> "Protocol":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        raise ValueError(f"unknown protocol: {value!r}")


@dataclass(frozen=True)
class Endpoint:
    """
    Network target

    Attributes:
        protocol: TCP or UDP
        host: Hostname or IP literal
        port: 1..65535
    """
    protocol: Protocol
    host: str
    port: int

    def __post_init__(self):
        if not isinstance(self.protocol, Protocol):
            object.__setattr__(self, "protocol", Protocol.parse(self.protocol))
        if not self.host:
            raise ValueError("endpoint host must not be empty")
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ValueError(f"endpoint port must be an integer, got {self.port!r}")
        if not PORT_MIN <= self.port <= PORT_MAX:
            raise ValueError(f"endpoint port out of range: {self.port}")

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.protocol.value}://{self.address}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol.value,
            "host": self.host,
            "port": self.port,
        }


@dataclass(frozen=True)
class InboundPacket:
    """One TCP chunk or UDP datagram"""
    data: bytes
    source: Optional[Tuple[str, int]] = None


class Transport(ABC):
    """
    Transport adapter base

    A transport is used by exactly one Session. close() is idempotent.
    """

    def __init__(self, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        self.connect_timeout = connect_timeout
        self._endpoint: Optional[Endpoint] = None
        self._closed = False

    @property
    def endpoint(self) -> Optional[Endpoint]:
        return self._endpoint

    @property
    def is_closed(self) -> bool:
        return self._closed

    @abstractmethod
    async def connect(self, endpoint: Endpoint) -> None:
        """Open the OS resource; raises ConnectError"""

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Write all of data; raises SendError"""

    @abstractmethod
    async def receive(self) -> InboundPacket:
        """Wait for the next inbound bytes; raises PeerClosed or ReceiveError"""

    async def close(self) -> None:
        """Release the OS resource (no-op when already closed)"""
        if self._closed:
            return
        self._closed = True
        await self._release()

    @abstractmethod
    async def _release(self) -> None:
        """Release the OS resource, called at most once"""


class TcpTransport(Transport):
    """Stream transport over asyncio streams"""

    def __init__(self, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
                 recv_buffer_size: int = TCP_RECV_BUFFER_SIZE):
        super().__init__(connect_timeout)
        self.recv_buffer_size = recv_buffer_size
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    async def connect(self, endpoint: Endpoint) -> None:
        self._endpoint = endpoint
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(endpoint.host, endpoint.port),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            raise ConnectError(
                f"timed out connecting to {endpoint.address} after {self.connect_timeout}s"
            )
        except socket.gaierror as e:
            raise ConnectError(f"cannot resolve {endpoint.host}: {e}") from e
        except OSError as e:
            raise ConnectError(f"connection to {endpoint.address} failed: {e}") from e

        if self._closed:
            await self._release_writer(self._writer)
            raise ConnectError("transport closed while connecting")

        logger.debug(f"[TCP] Connected to {endpoint.address}")

    async def send(self, data: bytes) -> None:
        if self._writer is None or self._closed:
            raise SendError("transport is not connected")
        try:
            # write() queues everything; drain() waits until the buffer is flushed
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, ConnectionError) as e:
            raise SendError(str(e) or e.__class__.__name__) from e

    async def receive(self) -> InboundPacket:
        if self._reader is None or self._closed:
            raise ReceiveError("transport is not connected")
        try:
            data = await self._reader.read(self.recv_buffer_size)
        except (OSError, ConnectionError) as e:
            raise ReceiveError(str(e) or e.__class__.__name__) from e
        if not data:
            raise PeerClosed()
        return InboundPacket(data=data)

    async def _release(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        await self._release_writer(writer)

    async def _release_writer(self, writer: Optional[asyncio.StreamWriter]) -> None:
        if writer is None:
            return
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=CLOSE_TIMEOUT)
        except (OSError, ConnectionError, asyncio.TimeoutError) as e:
            logger.debug(f"[TCP] Error closing writer: {e!r}")


class _DatagramQueueProtocol(asyncio.DatagramProtocol):
    """Feeds received datagrams and errors into a queue"""

    def __init__(self):
        self.queue: "asyncio.Queue[Union[InboundPacket, BaseException, None]]" = asyncio.Queue()

    def datagram_received(self, data: bytes, addr: Tuple[Any, ...]) -> None:
        self.queue.put_nowait(InboundPacket(data=data, source=(addr[0], addr[1])))

    def error_received(self, exc: Exception) -> None:
        self.queue.put_nowait(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.queue.put_nowait(exc)


class UdpTransport(Transport):
    """
    Datagram transport

    connect() resolves the endpoint and binds an ephemeral local port; no
    packet is exchanged, so it succeeds even when nothing listens remotely.
    """

    def __init__(self, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        super().__init__(connect_timeout)
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._protocol: Optional[_DatagramQueueProtocol] = None
        self._target: Optional[Tuple[Any, ...]] = None

    @property
    def local_address(self) -> Optional[Tuple[Any, ...]]:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")

    async def connect(self, endpoint: Endpoint) -> None:
        self._endpoint = endpoint
        loop = asyncio.get_running_loop()
        try:
            infos = await asyncio.wait_for(
                loop.getaddrinfo(endpoint.host, endpoint.port, type=socket.SOCK_DGRAM),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            raise ConnectError(f"timed out resolving {endpoint.host}")
        except socket.gaierror as e:
            raise ConnectError(f"cannot resolve {endpoint.host}: {e}") from e
        if not infos:
            raise ConnectError(f"no address found for {endpoint.host}")

        family, _, _, _, sockaddr = infos[0]
        bind_host = UDP_BIND_ADDRESS_V6 if family == socket.AF_INET6 else UDP_BIND_ADDRESS_V4
        try:
            self._transport, self._protocol = await loop.create_datagram_endpoint(
                _DatagramQueueProtocol,
                local_addr=(bind_host, 0),
                family=family,
            )
        except OSError as e:
            raise ConnectError(f"UDP bind failed: {e}") from e

        if self._closed:
            self._transport.close()
            raise ConnectError("transport closed while connecting")

        self._target = sockaddr
        logger.debug(f"[UDP] Bound {self.local_address}, default target {endpoint.address}")

    async def send(self, data: bytes) -> None:
        if self._transport is None or self._closed:
            raise SendError("transport is not connected")
        if self._transport.is_closing():
            raise SendError("socket is closing")
        try:
            self._transport.sendto(data, self._target)
        except OSError as e:
            raise SendError(str(e)) from e

    async def receive(self) -> InboundPacket:
        if self._protocol is None or self._closed:
            raise ReceiveError("transport is not connected")
        item = await self._protocol.queue.get()
        if isinstance(item, InboundPacket):
            return item
        if item is None:
            raise ReceiveError("socket closed")
        raise ReceiveError(str(item) or item.__class__.__name__)

    async def _release(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()


def create_transport(protocol: Protocol,
                     connect_timeout: float = DEFAULT_CONNECT_TIMEOUT) -> Transport:
    """Build the adapter for a protocol"""
    protocol = Protocol.parse(protocol)
    if protocol == Protocol.TCP:
        return TcpTransport(connect_timeout=connect_timeout)
    return UdpTransport(connect_timeout=connect_timeout)
