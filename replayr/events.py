"""
Engine Events

Typed events produced for the presentation layer and a small
publish/subscribe bus to deliver them:

- PacketReceived: a Received entry was appended to a session log
- SessionStateChanged: a session moved to a new lifecycle state
- ReplayProgress: a scripted send completed
- ReplayFinished: a replay reached Completed or Aborted

Subscribers may filter by event type and by session or replay id.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Deque, Dict, List, Optional, Union

from .constants import EVENT_HISTORY_SIZE

if TYPE_CHECKING:
    from .packet_log import LogEntry
    from .replay import ReplayOutcome
    from .session import SessionState

logger = logging.getLogger("Replayr.Events")


class EventType(Enum):
    """Types of engine events"""
    PACKET_RECEIVED = "session.packet.received"
    SESSION_STATE_CHANGED = "session.state.changed"
    REPLAY_PROGRESS = "replay.progress"
    REPLAY_FINISHED = "replay.finished"


@dataclass
class PacketReceived:
    """Inbound bytes landed in a session log"""
    event_type: ClassVar[EventType] = EventType.PACKET_RECEIVED

    session_id: str
    entry: "LogEntry"
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def subject(self) -> str:
        return self.session_id

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type.value,
            "session_id": self.session_id,
            "entry": self.entry.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class SessionStateChanged:
    """Session lifecycle transition; cause is set for Failed and peer close"""
    event_type: ClassVar[EventType] = EventType.SESSION_STATE_CHANGED

    session_id: str
    new_state: "SessionState"
    old_state: Optional["SessionState"] = None
    cause: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def subject(self) -> str:
        return self.session_id

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type.value,
            "session_id": self.session_id,
            "new_state": self.new_state.value,
            "old_state": self.old_state.value if self.old_state else None,
            "cause": self.cause,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ReplayProgress:
    """A scripted entry has been sent"""
    event_type: ClassVar[EventType] = EventType.REPLAY_PROGRESS

    replay_id: str
    entries_sent: int
    total: int
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def subject(self) -> str:
        return self.replay_id

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type.value,
            "replay_id": self.replay_id,
            "session_id": self.session_id,
            "entries_sent": self.entries_sent,
            "total": self.total,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ReplayFinished:
    """Replay reached a terminal state"""
    event_type: ClassVar[EventType] = EventType.REPLAY_FINISHED

    replay_id: str
    outcome: "ReplayOutcome"
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def subject(self) -> str:
        return self.replay_id

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type.value,
            "replay_id": self.replay_id,
            "outcome": self.outcome.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


EngineEvent = Union[PacketReceived, SessionStateChanged, ReplayProgress, ReplayFinished]
EventCallback = Callable[[EngineEvent], Any]


@dataclass
class Subscription:
    """A subscriber's filter and callback"""
    subscriber_id: str
    callback: EventCallback
    event_type: Optional[EventType] = None
    subject: Optional[str] = None  # session_id or replay_id

    def matches(self, event: EngineEvent) -> bool:
        if self.event_type is not None and event.event_type != self.event_type:
            return False
        if self.subject is not None and event.subject != self.subject:
            return False
        return True


class EventBus:
    """
    Delivers engine events to subscribers

    Delivery is synchronous, in subscription order. A subscriber that
    raises is logged and skipped; it never breaks the publisher.
    """

    def __init__(self, history_size: int = EVENT_HISTORY_SIZE):
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._queues: Dict[str, "asyncio.Queue[EngineEvent]"] = {}
        self._history: Deque[EngineEvent] = deque(maxlen=history_size)
        self._stats = {
            "total_published": 0,
            "total_delivered": 0,
            "delivery_errors": 0,
            "by_type": {},
        }

    def subscribe(
        self,
        callback: EventCallback,
        event_type: Optional[EventType] = None,
        subject: Optional[str] = None,
        subscriber_id: Optional[str] = None,
    ) -> str:
        """
        Register a callback

        Args:
            callback: Called with each matching event
            event_type: Only this type (all types when None)
            subject: Only events about this session/replay id
            subscriber_id: Reuse an id to group subscriptions

        Returns:
            Subscriber id, for unsubscribe()
        """
        subscriber_id = subscriber_id or f"sub_{uuid.uuid4().hex[:12]}"
        self._subscriptions.setdefault(subscriber_id, []).append(
            Subscription(
                subscriber_id=subscriber_id,
                callback=callback,
                event_type=event_type,
                subject=subject,
            )
        )
        return subscriber_id

    def subscribe_session(self, session_id: str, callback: EventCallback,
                          subscriber_id: Optional[str] = None) -> str:
        """Receive every event about one session"""
        return self.subscribe(callback, subject=session_id, subscriber_id=subscriber_id)

    def attach_queue(
        self,
        event_type: Optional[EventType] = None,
        subject: Optional[str] = None,
        subscriber_id: Optional[str] = None,
    ) -> "asyncio.Queue[EngineEvent]":
        """Subscribe an asyncio.Queue for consumers that prefer to await events"""
        queue: "asyncio.Queue[EngineEvent]" = asyncio.Queue()
        subscriber_id = self.subscribe(
            queue.put_nowait, event_type=event_type, subject=subject, subscriber_id=subscriber_id
        )
        self._queues[subscriber_id] = queue
        return queue

    def unsubscribe(self, subscriber_id: str) -> int:
        """Drop all subscriptions of a subscriber; returns how many were removed"""
        self._queues.pop(subscriber_id, None)
        return len(self._subscriptions.pop(subscriber_id, []))

    def publish(self, event: EngineEvent) -> int:
        """Record and deliver an event; returns the number of deliveries"""
        self._history.append(event)
        self._stats["total_published"] += 1
        type_key = event.event_type.value
        self._stats["by_type"][type_key] = self._stats["by_type"].get(type_key, 0) + 1

        delivered = 0
        for subscriptions in list(self._subscriptions.values()):
            for subscription in subscriptions:
                if not subscription.matches(event):
                    continue
                try:
                    subscription.callback(event)
                    delivered += 1
                except Exception:
                    self._stats["delivery_errors"] += 1
                    logger.exception(
                        f"[Events] Subscriber {subscription.subscriber_id} failed on {type_key}"
                    )

        self._stats["total_delivered"] += delivered
        return delivered

    def get_history(
        self,
        event_type: Optional[EventType] = None,
        subject: Optional[str] = None,
        limit: int = 100,
    ) -> List[EngineEvent]:
        """Recent events, oldest first"""
        events = list(self._history)
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        if subject:
            events = [e for e in events if e.subject == subject]
        return events[-limit:]

    def clear_history(self) -> int:
        count = len(self._history)
        self._history.clear()
        return count

    def get_statistics(self) -> dict:
        return {
            "total_published": self._stats["total_published"],
            "total_delivered": self._stats["total_delivered"],
            "delivery_errors": self._stats["delivery_errors"],
            "history_size": len(self._history),
            "subscriber_count": len(self._subscriptions),
            "by_type": dict(self._stats["by_type"]),
        }
