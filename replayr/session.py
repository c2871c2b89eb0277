"""
Session - one connection's lifecycle state machine

States:
    IDLE -> CONNECTING -> OPEN -> CLOSED
                 |          |
                 +--> FAILED <--+

CLOSED and FAILED are terminal: the transport is released exactly once on
entry and the log is sealed (it can still be exported).

While OPEN a receive task delivers inbound data independently of the
caller's sends; both paths append to the same PacketLog.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .codec import Payload, payload_from_bytes
from .constants import (
    DEFAULT_CONNECT_TIMEOUT,
    NOTE_CLOSED,
    NOTE_CONNECTED,
    NOTE_CONNECTING,
    NOTE_PEER_CLOSED,
)
from .errors import (
    ConnectError,
    PeerClosed,
    SendError,
    SendFailed,
    SessionStateError,
    TransportError,
)
from .events import EngineEvent, PacketReceived, SessionStateChanged
from .packet_log import Direction, PacketLog
from .transport import Endpoint, Protocol, Transport, create_transport

logger = logging.getLogger("Replayr.Session")

TransportFactory = Callable[[Endpoint], Transport]
EventSink = Callable[[EngineEvent], Any]


class SessionState(Enum):
    """Session lifecycle state"""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.FAILED)


@dataclass
class SessionStats:
    """Session traffic counters"""
    packets_sent: int = 0
    packets_received: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    opened_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "packets_sent": self.packets_sent,
            "packets_received": self.packets_received,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


class Session:
    """
    Session State Machine

    Owns its transport exclusively. Commands: connect(), send(), close().
    Events (PacketReceived, SessionStateChanged) go to the event sink.
    """

    def __init__(
        self,
        session_id: str,
        endpoint: Endpoint,
        initial_payload: Optional[Payload] = None,
        event_sink: Optional[EventSink] = None,
        transport_factory: Optional[TransportFactory] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ):
        """
        Initialize session

        Args:
            session_id: Identifier, unique within the owning registry
            endpoint: Target endpoint, fixed for the session's lifetime
            initial_payload: Sent right after connecting, before any other send
            event_sink: Callable receiving engine events
            transport_factory: Builds the transport (defaults by protocol)
            connect_timeout: Seconds allowed for connecting
        """
        self.session_id = session_id
        self.endpoint = endpoint
        self.initial_payload = initial_payload
        self.connect_timeout = connect_timeout
        self.log = PacketLog(owner=session_id)
        self.stats = SessionStats()

        self._event_sink = event_sink
        self._transport_factory = transport_factory or self._default_transport
        self._transport: Optional[Transport] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._state = SessionState.IDLE
        self._failure_cause: Optional[str] = None
        self._ended = asyncio.Event()

        logger.info(f"[Session {session_id}] Created for {endpoint}")

    def _default_transport(self, endpoint: Endpoint) -> Transport:
        return create_transport(endpoint.protocol, connect_timeout=self.connect_timeout)

    @property
    def state(self) -> SessionState:
        """Current lifecycle state"""
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == SessionState.OPEN

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    @property
    def failure_cause(self) -> Optional[str]:
        """Cause recorded on the transition into FAILED"""
        return self._failure_cause

    async def connect(self) -> bool:
        """
        Connect the session

        Returns:
            True if the session is OPEN afterwards. On failure the session is
            FAILED, the cause is in the log, in failure_cause and in the
            emitted SessionStateChanged event.

        Raises:
            SessionStateError: session is not IDLE
        """
        if self._state != SessionState.IDLE:
            raise SessionStateError(self.session_id, "connect", self._state.value)

        self._set_state(SessionState.CONNECTING)
        self.log.record(Direction.SYSTEM, note=NOTE_CONNECTING)

        transport = self._transport_factory(self.endpoint)
        self._transport = transport
        try:
            await transport.connect(self.endpoint)
        except ConnectError as e:
            logger.error(f"[Session {self.session_id}] Connection to {self.endpoint} failed: {e.cause}")
            await self._fail(e.cause)
            return False

        if self._state != SessionState.CONNECTING:
            # Closed while the connect was in flight
            await transport.close()
            return False

        self.stats.opened_at = datetime.now()
        self.log.record(Direction.SYSTEM, note=NOTE_CONNECTED)
        self._set_state(SessionState.OPEN)
        logger.info(f"[Session {self.session_id}] Connected to {self.endpoint}")

        self._receive_task = asyncio.create_task(self._receive_loop())

        if self.initial_payload is not None and len(self.initial_payload):
            try:
                await self.send(self.initial_payload)
            except SendFailed:
                return False
        return True

    async def send(self, payload: Payload) -> None:
        """
        Send a payload

        Raises:
            SessionStateError: session is not OPEN
            SendFailed: transport failed; the session is now FAILED
        """
        if self._state != SessionState.OPEN:
            raise SessionStateError(self.session_id, "send", self._state.value)

        try:
            await self._transport.send(payload.data)
        except SendError as e:
            logger.error(f"[Session {self.session_id}] Send failed: {e.cause}")
            await self._fail(e.cause)
            raise SendFailed(self.session_id, e.cause) from e

        if self._state != SessionState.OPEN:
            # Closed concurrently after the bytes left
            raise SessionStateError(self.session_id, "send", self._state.value)

        self.stats.packets_sent += 1
        self.stats.bytes_sent += len(payload.data)
        self.log.record(Direction.SENT, payload=payload)
        logger.debug(f"[Session {self.session_id}] Sent {len(payload.data)} bytes")

    async def close(self) -> None:
        """Close the session; a no-op once terminal"""
        if self._state.is_terminal:
            return
        await self._finish(SessionState.CLOSED)

    async def wait_closed(self) -> SessionState:
        """Wait until the session is terminal"""
        await self._ended.wait()
        return self._state

    async def _receive_loop(self) -> None:
        """Deliver inbound data until the transport ends or the session closes"""
        while self._state == SessionState.OPEN:
            try:
                packet = await self._transport.receive()
            except asyncio.CancelledError:
                raise
            except PeerClosed:
                if self._state == SessionState.OPEN:
                    logger.info(f"[Session {self.session_id}] Peer closed the connection")
                    self._receive_task = None
                    await self._finish(
                        SessionState.CLOSED,
                        notes=(NOTE_PEER_CLOSED, NOTE_CLOSED),
                        cause=NOTE_PEER_CLOSED,
                    )
                return
            except TransportError as e:
                if self._state == SessionState.OPEN:
                    logger.error(f"[Session {self.session_id}] Receive failed: {e.cause}")
                    self._receive_task = None
                    await self._fail(e.cause)
                return

            if self._state != SessionState.OPEN:
                return

            payload = payload_from_bytes(packet.data)
            note = None
            if self.endpoint.protocol == Protocol.UDP and packet.source:
                note = f"from {packet.source[0]}:{packet.source[1]}"
            entry = self.log.record(Direction.RECEIVED, payload=payload, note=note)
            self.stats.packets_received += 1
            self.stats.bytes_received += len(packet.data)
            logger.debug(f"[Session {self.session_id}] Received {len(packet.data)} bytes")
            self._emit(PacketReceived(session_id=self.session_id, entry=entry))

    async def _fail(self, cause: str) -> None:
        if self._state.is_terminal:
            return
        self._failure_cause = cause
        await self._finish(SessionState.FAILED, notes=(f"error: {cause}",), cause=cause)

    async def _finish(self, state: SessionState, notes=(NOTE_CLOSED,), cause: Optional[str] = None) -> None:
        """Enter a terminal state: log, release the transport once, notify"""
        if self._state.is_terminal:
            return

        old_state = self._state
        self._state = state
        self.stats.ended_at = datetime.now()
        for note in notes:
            self.log.record(Direction.SYSTEM, note=note)
        self.log.seal()

        task, self._receive_task = self._receive_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

        logger.info(
            f"[Session {self.session_id}] State: {old_state.name} -> {state.name}"
            + (f" ({cause})" if cause else "")
        )
        self._emit(SessionStateChanged(
            session_id=self.session_id,
            new_state=state,
            old_state=old_state,
            cause=cause,
        ))
        self._ended.set()

    def _set_state(self, new_state: SessionState) -> None:
        old_state = self._state
        self._state = new_state
        logger.info(f"[Session {self.session_id}] State: {old_state.name} -> {new_state.name}")
        self._emit(SessionStateChanged(
            session_id=self.session_id,
            new_state=new_state,
            old_state=old_state,
        ))

    def _emit(self, event: EngineEvent) -> None:
        if self._event_sink is None:
            return
        try:
            self._event_sink(event)
        except Exception:
            logger.exception(f"[Session {self.session_id}] Event sink failed on {event.event_type.value}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert session to dictionary"""
        return {
            "session_id": self.session_id,
            "endpoint": self.endpoint.to_dict(),
            "state": self._state.value,
            "failure_cause": self._failure_cause,
            "initial_payload": self.initial_payload.to_dict() if self.initial_payload else None,
            "log": self.log.to_dict(),
            "statistics": self.stats.to_dict(),
        }

