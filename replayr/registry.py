"""
Session Registry - multi-session management and engine command surface

Owns any number of independent Sessions and Replays, each addressed by id.
Sessions share nothing but the registry's EventBus, which the presentation
layer subscribes to (optionally per session id).

Commands:
    new_session(endpoint, initial_payload=None) -> session_id
    send(session_id, payload)
    close(session_id)
    start_replay(script, endpoint) -> replay_id
    cancel_replay(replay_id)
    export_log(session_id, format) -> bytes
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .codec import Payload, PayloadEncoding, encode
from .constants import (
    DEFAULT_CONNECT_TIMEOUT,
    HUMAN_EXPORT_SUFFIX,
    MAX_SESSIONS_DEFAULT,
    REPLAY_EXPORT_SUFFIX,
)
from .errors import UnknownReplay, UnknownSession
from .events import EventBus
from .packet_log import ExportFormat, ReplayScript
from .replay import ReplayEngine, ReplayOptions, ReplayOutcome
from .session import Session, SessionState, TransportFactory
from .transport import Endpoint

logger = logging.getLogger("Replayr.Registry")


@dataclass
class RegistryConfig:
    """Registry configuration"""
    max_sessions: int = MAX_SESSIONS_DEFAULT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT


@dataclass
class RegistryStats:
    """Registry statistics"""
    sessions_created: int = 0
    sessions_failed: int = 0
    replays_started: int = 0
    replays_completed: int = 0
    replays_aborted: int = 0
    started_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessions_created": self.sessions_created,
            "sessions_failed": self.sessions_failed,
            "replays_started": self.replays_started,
            "replays_completed": self.replays_completed,
            "replays_aborted": self.replays_aborted,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


class SessionRegistry:
    """
    Session Registry

    Creates, addresses and tears down Sessions and ReplayEngines.
    """

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        events: Optional[EventBus] = None,
        transport_factory: Optional[TransportFactory] = None,
        name: str = "",
    ):
        """
        Initialize registry

        Args:
            config: Registry configuration
            events: Event bus to publish on (a new one by default)
            transport_factory: Overrides transport creation for every session
            name: Label for logging
        """
        self.config = config or RegistryConfig()
        self.events = events or EventBus()
        self.name = name
        self.stats = RegistryStats(started_at=datetime.now())

        self._transport_factory = transport_factory
        self._sessions: Dict[str, Session] = {}
        self._replays: Dict[str, ReplayEngine] = {}
        self._replay_tasks: Dict[str, asyncio.Task] = {}
        self._next_session = 1
        self._next_replay = 1

        logger.info(f"[Registry] Initialized {name or 'default'}")

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def open_session_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_open)

    def _allocate_session_id(self) -> str:
        session_id = f"s{self._next_session}"
        self._next_session += 1
        return session_id

    def _allocate_replay_id(self) -> str:
        replay_id = f"r{self._next_replay}"
        self._next_replay += 1
        return replay_id

    def create_session(self, endpoint: Endpoint,
                       initial_payload: Optional[Payload] = None) -> Session:
        """
        Build and register an unconnected session

        Closed and failed sessions stay registered for export but do not
        count against max_sessions.
        """
        live = sum(1 for s in self._sessions.values() if not s.is_terminal)
        if live >= self.config.max_sessions:
            raise RuntimeError(f"Maximum sessions ({self.config.max_sessions}) reached")

        session = Session(
            session_id=self._allocate_session_id(),
            endpoint=endpoint,
            initial_payload=initial_payload,
            event_sink=self.events.publish,
            transport_factory=self._transport_factory,
            connect_timeout=self.config.connect_timeout,
        )
        self._sessions[session.session_id] = session
        self.stats.sessions_created += 1
        return session

    async def new_session(self, endpoint: Endpoint,
                          initial_payload: Optional[Payload] = None) -> str:
        """
        Create and connect a session

        A failed connect is reported through SessionStateChanged and leaves
        the session registered in FAILED so its log stays exportable.

        Returns:
            Session id
        """
        session = self.create_session(endpoint, initial_payload)
        if not await session.connect():
            self.stats.sessions_failed += 1
        return session.session_id

    def get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        return session

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self._sessions.values()]

    async def send(self, session_id: str, payload: Payload) -> None:
        """Send on a session (raises SendFailed / SessionStateError)"""
        await self.get_session(session_id).send(payload)

    async def send_text(self, session_id: str, text: str,
                        encoding: Union[PayloadEncoding, str] = PayloadEncoding.HEX) -> Payload:
        """Encode operator text then send it; CodecError leaves the session untouched"""
        session = self.get_session(session_id)
        payload = encode(text, PayloadEncoding.parse(encoding))
        await session.send(payload)
        return payload

    async def close(self, session_id: str) -> None:
        """Close a session (idempotent)"""
        await self.get_session(session_id).close()

    async def remove_session(self, session_id: str) -> bool:
        """Close a session and forget it"""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        await session.close()
        del self._sessions[session_id]
        logger.info(f"[Registry] Removed session {session_id}")
        return True

    def export_log(self, session_id: str, format: Union[ExportFormat, str]) -> bytes:
        """
        Export a session log

        Raises:
            UnknownSession: no such session
            EmptyScript: replay export of a log without sends
        """
        session = self.get_session(session_id)
        fmt = ExportFormat.parse(format)
        if fmt == ExportFormat.HUMAN:
            return session.log.export_human().encode("utf-8")
        return session.log.export_replay().to_bytes()

    def default_export_name(self, session_id: str, format: Union[ExportFormat, str]) -> str:
        """File name derived from the session endpoint"""
        endpoint = self.get_session(session_id).endpoint
        stem = f"{endpoint.protocol.value}_{endpoint.host}_{endpoint.port}"
        stem = "".join(c if c.isalnum() or c in "._-" else "_" for c in stem)
        if ExportFormat.parse(format) == ExportFormat.HUMAN:
            return stem + HUMAN_EXPORT_SUFFIX
        return stem + REPLAY_EXPORT_SUFFIX

    def export_log_to_file(
        self,
        session_id: str,
        format: Union[ExportFormat, str],
        path: Optional[Union[str, Path]] = None,
    ) -> Path:
        """
        Write an export to disk

        Args:
            session_id: Session to export
            format: human or replay
            path: Target file or directory (current directory by default)

        Returns:
            Path written
        """
        data = self.export_log(session_id, format)
        target = Path(path) if path is not None else Path.cwd()
        if target.is_dir():
            target = target / self.default_export_name(session_id, format)
        target.write_bytes(data)
        logger.info(f"[Registry] Exported {ExportFormat.parse(format).value} log of {session_id} to {target}")
        return target

    def start_replay(
        self,
        script: ReplayScript,
        endpoint: Endpoint,
        options: Optional[ReplayOptions] = None,
    ) -> str:
        """
        Start replaying a script in the background

        Must be called from a running event loop.

        Returns:
            Replay id
        """
        replay_id = self._allocate_replay_id()
        engine = ReplayEngine(
            replay_id=replay_id,
            script=script,
            endpoint=endpoint,
            session_factory=self.create_session,
            options=options,
            event_sink=self.events.publish,
        )
        self._replays[replay_id] = engine
        self.stats.replays_started += 1

        task = asyncio.create_task(engine.run())
        task.add_done_callback(lambda t, rid=replay_id: self._on_replay_done(rid, t))
        self._replay_tasks[replay_id] = task
        logger.info(f"[Registry] Started replay {replay_id} ({len(script)} sends) to {endpoint}")
        return replay_id

    def _on_replay_done(self, replay_id: str, task: asyncio.Task) -> None:
        self._replay_tasks.pop(replay_id, None)
        if task.cancelled():
            logger.warning(f"[Registry] Replay {replay_id} task was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[Registry] Replay {replay_id} crashed: {error!r}")
            return
        if task.result().completed:
            self.stats.replays_completed += 1
        else:
            self.stats.replays_aborted += 1

    def cancel_replay(self, replay_id: str) -> bool:
        """Request cancellation at the next delay boundary"""
        return self.get_replay(replay_id).cancel()

    def get_replay(self, replay_id: str) -> ReplayEngine:
        engine = self._replays.get(replay_id)
        if engine is None:
            raise UnknownReplay(replay_id)
        return engine

    def list_replays(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self._replays.values()]

    async def wait_replay(self, replay_id: str) -> ReplayOutcome:
        """Wait for a replay to finish and return its outcome"""
        engine = self.get_replay(replay_id)
        task = self._replay_tasks.get(replay_id)
        if task is not None:
            return await asyncio.shield(task)
        return engine.outcome

    async def shutdown(self) -> None:
        """Cancel replays and close every session"""
        for engine in self._replays.values():
            engine.cancel()
        tasks = list(self._replay_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for session in list(self._sessions.values()):
            await session.close()
        logger.info(f"[Registry] Shut down {self.name or 'default'}")

    def get_status(self) -> Dict[str, Any]:
        """Registry status"""
        states: Dict[str, int] = {}
        for session in self._sessions.values():
            states[session.state.value] = states.get(session.state.value, 0) + 1
        return {
            "name": self.name,
            "session_count": self.session_count,
            "open_sessions": self.open_session_count,
            "sessions_by_state": {s.value: states.get(s.value, 0) for s in SessionState},
            "sessions": self.list_sessions(),
            "replays": self.list_replays(),
            "statistics": self.stats.to_dict(),
            "events": self.events.get_statistics(),
        }


# Global registry instances
_registries: Dict[str, SessionRegistry] = {}


def get_session_registry(name: str = "default") -> SessionRegistry:
    """
    Get or create a named registry

    Args:
        name: Registry name

    Returns:
        Registry instance
    """
    if name not in _registries:
        _registries[name] = SessionRegistry(name=name)
    return _registries[name]


def configure_session_registry(name: str, config: RegistryConfig) -> SessionRegistry:
    """Replace a named registry with a freshly configured one"""
    registry = SessionRegistry(config=config, name=name)
    _registries[name] = registry
    return registry
