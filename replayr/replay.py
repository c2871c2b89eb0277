"""
Replay Engine

Plays a ReplayScript into a fresh Session:

    IDLE -> RUNNING -> COMPLETED
                |
                +-> ABORTED (send failed, connect failed, session closed,
                             or cancelled)

For each entry, in order: wait the entry's delay (or the fixed interval
when configured), then send. Cancellation is checked at every delay
boundary; an in-flight send is never interrupted. The Session stays open
after the replay ends so responses keep arriving.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .errors import SendFailed, SessionStateError
from .events import EngineEvent, ReplayFinished, ReplayProgress
from .packet_log import ReplayScript
from .session import Session
from .transport import Endpoint

logger = logging.getLogger("Replayr.Replay")

SessionFactory = Callable[[Endpoint], Session]
EventSink = Callable[[EngineEvent], Any]


class ReplayState(Enum):
    """Replay lifecycle state"""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class AbortReason(Enum):
    """Why a replay stopped early"""
    CONNECT_FAILED = "connect_failed"
    SEND_FAILED = "send_failed"
    SESSION_CLOSED = "session_closed"
    CANCELLED = "cancelled"


@dataclass
class ReplayOptions:
    """
    Replay timing options

    Attributes:
        fixed_interval_ms: Wait this long before every send instead of the
            recorded delays (the first send still goes immediately)
        speed: Divides recorded delays (2.0 plays twice as fast)
    """
    fixed_interval_ms: Optional[int] = None
    speed: float = 1.0

    def __post_init__(self):
        if self.fixed_interval_ms is not None and self.fixed_interval_ms < 0:
            raise ValueError("fixed_interval_ms must be non-negative")
        if self.speed <= 0:
            raise ValueError("speed must be positive")

    def delay_for(self, index: int, recorded_ms: int) -> float:
        """Seconds to wait before script entry `index`"""
        if self.fixed_interval_ms is not None:
            return 0.0 if index == 0 else self.fixed_interval_ms / 1000.0
        return recorded_ms / 1000.0 / self.speed


@dataclass
class ReplayOutcome:
    """Terminal result of a replay"""
    state: ReplayState
    entries_sent: int
    total: int
    reason: Optional[AbortReason] = None
    failed_index: Optional[int] = None
    cause: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.state == ReplayState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "entries_sent": self.entries_sent,
            "total": self.total,
            "reason": self.reason.value if self.reason else None,
            "failed_index": self.failed_index,
            "cause": self.cause,
            "session_id": self.session_id,
        }


class ReplayEngine:
    """
    Drives one script into one Session

    A ReplayEngine runs once; start another engine for another replay.
    """

    def __init__(
        self,
        replay_id: str,
        script: ReplayScript,
        endpoint: Endpoint,
        session_factory: SessionFactory,
        options: Optional[ReplayOptions] = None,
        event_sink: Optional[EventSink] = None,
    ):
        """
        Initialize replay

        Args:
            replay_id: Identifier used in progress/finished events
            script: Sends to replay, in order
            endpoint: Target; may differ from where the script was recorded
            session_factory: Builds the (unconnected) session for endpoint
            options: Timing overrides
            event_sink: Callable receiving ReplayProgress/ReplayFinished
        """
        self.replay_id = replay_id
        self.script = script
        self.endpoint = endpoint
        self.options = options or ReplayOptions()
        self._session_factory = session_factory
        self._event_sink = event_sink

        self._state = ReplayState.IDLE
        self._session: Optional[Session] = None
        self._entries_sent = 0
        self._cancel_requested = asyncio.Event()
        self._outcome: Optional[ReplayOutcome] = None
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None

    @property
    def state(self) -> ReplayState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        """Session being driven (available once started)"""
        return self._session

    @property
    def entries_sent(self) -> int:
        return self._entries_sent

    @property
    def outcome(self) -> Optional[ReplayOutcome]:
        return self._outcome

    def cancel(self) -> bool:
        """
        Request a stop at the next delay boundary

        Returns:
            False if the replay already finished
        """
        if self._state in (ReplayState.COMPLETED, ReplayState.ABORTED):
            return False
        if not self._cancel_requested.is_set():
            logger.info(f"[Replay {self.replay_id}] Cancellation requested")
        self._cancel_requested.set()
        return True

    async def run(self) -> ReplayOutcome:
        """
        Connect a fresh session and play the script

        Returns:
            The terminal outcome (also emitted as ReplayFinished)
        """
        if self._state != ReplayState.IDLE:
            raise RuntimeError(f"replay {self.replay_id} already started")

        self._state = ReplayState.RUNNING
        self.started_at = datetime.now()
        total = len(self.script)
        logger.info(f"[Replay {self.replay_id}] Replaying {total} sends to {self.endpoint}")

        try:
            session = self._session_factory(self.endpoint)
        except Exception as e:
            logger.error(f"[Replay {self.replay_id}] Could not create session: {e}")
            return self._finish_aborted(AbortReason.CONNECT_FAILED, None, str(e))
        self._session = session

        if self._cancel_requested.is_set():
            return self._finish_aborted(AbortReason.CANCELLED, None, "cancelled before connect")

        if not await session.connect():
            return self._finish_aborted(
                AbortReason.CONNECT_FAILED, None, session.failure_cause or session.state.value
            )

        for index, entry in enumerate(self.script):
            delay = self.options.delay_for(index, entry.delay_ms)
            if await self._wait_or_cancel(delay):
                return self._finish_aborted(AbortReason.CANCELLED, index, "cancelled")

            if not session.is_open:
                cause = session.failure_cause or f"session {session.state.value}"
                logger.warning(f"[Replay {self.replay_id}] Session ended before entry {index}: {cause}")
                return self._finish_aborted(AbortReason.SESSION_CLOSED, index, cause)

            if len(entry.payload) == 0:
                logger.debug(f"[Replay {self.replay_id}] Skipping empty entry {index}")
            else:
                try:
                    await session.send(entry.payload)
                except SendFailed as e:
                    return self._finish_aborted(AbortReason.SEND_FAILED, index, e.cause)
                except SessionStateError as e:
                    return self._finish_aborted(AbortReason.SESSION_CLOSED, index, str(e))

            self._entries_sent = index + 1
            self._emit(ReplayProgress(
                replay_id=self.replay_id,
                entries_sent=self._entries_sent,
                total=total,
                session_id=session.session_id,
            ))

        self._state = ReplayState.COMPLETED
        logger.info(f"[Replay {self.replay_id}] Completed ({total} sends)")
        return self._finish(ReplayOutcome(
            state=ReplayState.COMPLETED,
            entries_sent=self._entries_sent,
            total=total,
            session_id=session.session_id,
        ))

    async def _wait_or_cancel(self, delay: float) -> bool:
        """Sleep for delay seconds; True if cancellation was requested"""
        if self._cancel_requested.is_set():
            return True
        if delay <= 0:
            # Still yield so other sessions progress between back-to-back sends
            await asyncio.sleep(0)
            return self._cancel_requested.is_set()
        try:
            await asyncio.wait_for(self._cancel_requested.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _finish_aborted(self, reason: AbortReason, index: Optional[int],
                        cause: Optional[str]) -> ReplayOutcome:
        self._state = ReplayState.ABORTED
        where = f" at entry {index}" if index is not None else ""
        logger.warning(f"[Replay {self.replay_id}] Aborted{where}: {reason.value} ({cause})")
        return self._finish(ReplayOutcome(
            state=ReplayState.ABORTED,
            entries_sent=self._entries_sent,
            total=len(self.script),
            reason=reason,
            failed_index=index,
            cause=cause,
            session_id=self._session.session_id if self._session else None,
        ))

    def _finish(self, outcome: ReplayOutcome) -> ReplayOutcome:
        self._outcome = outcome
        self.finished_at = datetime.now()
        self._emit(ReplayFinished(replay_id=self.replay_id, outcome=outcome))
        return outcome

    def _emit(self, event: EngineEvent) -> None:
        if self._event_sink is None:
            return
        try:
            self._event_sink(event)
        except Exception:
            logger.exception(f"[Replay {self.replay_id}] Event sink failed on {event.event_type.value}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "replay_id": self.replay_id,
            "state": self._state.value,
            "endpoint": self.endpoint.to_dict(),
            "session_id": self._session.session_id if self._session else None,
            "entries_sent": self._entries_sent,
            "total": len(self.script),
            "options": {
                "fixed_interval_ms": self.options.fixed_interval_ms,
                "speed": self.options.speed,
            },
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcome": self._outcome.to_dict() if self._outcome else None,
        }
