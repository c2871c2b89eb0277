"""
Tests for the TCP and UDP transport adapters
"""

import asyncio
import socket

import pytest

from replayr.errors import ConnectError, PeerClosed, SendError
from replayr.transport import (
    Endpoint,
    Protocol,
    TcpTransport,
    UdpTransport,
    create_transport,
)

from tests.helpers import TcpEchoServer, UdpEchoServer, unused_port


class TestEndpoint:
    """Tests for Endpoint validation"""

    def test_str(self):
        endpoint = Endpoint(Protocol.TCP, "127.0.0.1", 8080)
        assert str(endpoint) == "tcp://127.0.0.1:8080"
        assert endpoint.address == "127.0.0.1:8080"

    def test_protocol_coerced(self):
        assert Endpoint("UDP", "localhost", 53).protocol == Protocol.UDP

    @pytest.mark.parametrize("port", [0, 65536, -1, "80", True])
    def test_invalid_port(self, port):
        with pytest.raises(ValueError):
            Endpoint(Protocol.TCP, "127.0.0.1", port)

    def test_empty_host(self):
        with pytest.raises(ValueError):
            Endpoint(Protocol.TCP, "", 80)

    def test_unknown_protocol(self):
        with pytest.raises(ValueError):
            Endpoint("sctp", "127.0.0.1", 80)


class TestTcpTransport:
    """Tests for TcpTransport against a loopback server"""

    @pytest.mark.asyncio
    async def test_send_and_receive(self):
        server = await TcpEchoServer().start()
        transport = TcpTransport(connect_timeout=2.0)
        try:
            await transport.connect(server.endpoint)
            await transport.send(b"ping")
            packet = await asyncio.wait_for(transport.receive(), timeout=2.0)
            assert packet.data == b"ping"
            assert packet.source is None
        finally:
            await transport.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        transport = TcpTransport(connect_timeout=2.0)
        endpoint = Endpoint(Protocol.TCP, "127.0.0.1", unused_port())
        with pytest.raises(ConnectError) as exc:
            await transport.connect(endpoint)
        assert exc.value.cause

    @pytest.mark.asyncio
    async def test_unresolvable_host(self):
        transport = TcpTransport(connect_timeout=2.0)
        with pytest.raises(ConnectError):
            await transport.connect(Endpoint(Protocol.TCP, "no-such-host.invalid", 80))

    @pytest.mark.asyncio
    async def test_peer_close(self):
        server = await TcpEchoServer(close_immediately=True).start()
        transport = TcpTransport(connect_timeout=2.0)
        try:
            await transport.connect(server.endpoint)
            with pytest.raises(PeerClosed):
                await asyncio.wait_for(transport.receive(), timeout=2.0)
        finally:
            await transport.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        server = await TcpEchoServer().start()
        transport = TcpTransport(connect_timeout=2.0)
        try:
            await transport.connect(server.endpoint)
            await transport.close()
            await transport.close()
            assert transport.is_closed
            with pytest.raises(SendError):
                await transport.send(b"late")
        finally:
            await server.stop()


class TestUdpTransport:
    """Tests for UdpTransport"""

    @pytest.mark.asyncio
    async def test_connect_without_listener(self):
        transport = UdpTransport()
        endpoint = Endpoint(Protocol.UDP, "127.0.0.1", unused_port(socket.SOCK_DGRAM))
        try:
            await transport.connect(endpoint)
            assert transport.local_address[1] != 0
            await transport.send(b"anyone?")
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_echo_reports_source(self):
        server = await UdpEchoServer().start()
        transport = UdpTransport()
        try:
            await transport.connect(server.endpoint)
            await transport.send(b"\x01\x02")
            packet = await asyncio.wait_for(transport.receive(), timeout=2.0)
            assert packet.data == b"\x01\x02"
            assert packet.source == ("127.0.0.1", server.port)
        finally:
            await transport.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_accepts_datagrams_from_other_senders(self):
        transport = UdpTransport()
        endpoint = Endpoint(Protocol.UDP, "127.0.0.1", unused_port(socket.SOCK_DGRAM))
        stranger = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            await transport.connect(endpoint)
            stranger.sendto(b"hello", ("127.0.0.1", transport.local_address[1]))
            packet = await asyncio.wait_for(transport.receive(), timeout=2.0)
            assert packet.data == b"hello"
            assert packet.source[1] == stranger.getsockname()[1]
        finally:
            stranger.close()
            await transport.close()

    @pytest.mark.asyncio
    async def test_send_after_close(self):
        transport = UdpTransport()
        await transport.connect(Endpoint(Protocol.UDP, "127.0.0.1", 9))
        await transport.close()
        with pytest.raises(SendError):
            await transport.send(b"x")


def test_create_transport():
    assert isinstance(create_transport(Protocol.TCP), TcpTransport)
    assert isinstance(create_transport("udp", connect_timeout=1.0), UdpTransport)
