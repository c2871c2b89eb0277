"""
Packet Log

Append-only, sequence-numbered record of one Session's traffic and
lifecycle events, with two exports:

- human: one self-describing line per entry, for inspection only
      2026-10-18T14:03:11.250 Sent hex 48656C6C6F
      2026-10-18T14:03:11.252 Received hex 48656c6c6f
      2026-10-18T14:03:12.010 System system closed

- replay: the Sent entries only, with the gap to the previous send
      [{"delay_ms": 0, "encoding": "hex", "data": "48656C6C6F"}, ...]
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from .codec import Payload, PayloadEncoding, decode, encode
from .constants import SYSTEM_ENCODING_LABEL
from .errors import CodecError, EmptyScript, ParseError

logger = logging.getLogger("Replayr.Log")

REPLAY_RECORD_FIELDS = ("delay_ms", "encoding", "data")


class Direction(Enum):
    """What a log entry records"""
    SENT = "Sent"
    RECEIVED = "Received"
    SYSTEM = "System"


class ExportFormat(Enum):
    """Log export formats"""
    HUMAN = "human"
    REPLAY = "replay"

    @classmethod
    def parse(cls, value: Any) -> "ExportFormat":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        raise ValueError(f"unknown export format: {value!r}")


@dataclass(frozen=True)
class LogEntry:
    """
    One log record

    Attributes:
        sequence: Per-log sequence number, strictly increasing from 0
        timestamp: Wall-clock time, non-decreasing within a log
        direction: Sent, Received or System
        payload: Bytes sent/received (None for System entries)
        note: Free text such as "connected" or "error: <cause>"
    """
    sequence: int
    timestamp: datetime
    direction: Direction
    payload: Optional[Payload] = None
    note: Optional[str] = None

    def format_line(self) -> str:
        """Render as one human export line"""
        stamp = self.timestamp.isoformat(timespec="milliseconds")
        if self.payload is None:
            return f"{stamp} {self.direction.value} {SYSTEM_ENCODING_LABEL} {self.note or ''}".rstrip()
        text = decode(self.payload)
        if self.payload.encoding == PayloadEncoding.ASCII:
            # Control characters would break the one-line-per-entry layout
            text = text.encode("unicode_escape").decode("ascii")
        line = f"{stamp} {self.direction.value} {self.payload.encoding.value} {text}"
        if self.note:
            line += f" ({self.note})"
        return line

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "direction": self.direction.value,
            "payload": self.payload.to_dict() if self.payload is not None else None,
            "note": self.note,
        }


@dataclass(frozen=True)
class ReplayEntry:
    """A scripted send and the wait before it"""
    payload: Payload
    delay_ms: int = 0

    def to_record(self) -> Dict[str, Any]:
        return {
            "delay_ms": self.delay_ms,
            "encoding": self.payload.encoding.value,
            "data": decode(self.payload),
        }


@dataclass
class ReplayScript:
    """
    Ordered sends derived from a log

    Only the operator's own sends are kept; received data and system events
    never become script input.
    """
    entries: List[ReplayEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ReplayEntry]:
        return iter(self.entries)

    def __getitem__(self, index: int) -> ReplayEntry:
        return self.entries[index]

    @property
    def total_delay_ms(self) -> int:
        return sum(e.delay_ms for e in self.entries)

    def to_records(self) -> List[Dict[str, Any]]:
        return [e.to_record() for e in self.entries]

    def to_json(self) -> str:
        return json.dumps(self.to_records(), indent=2)

    def to_bytes(self) -> bytes:
        return self.to_json().encode("utf-8")


class PacketLog:
    """
    Append-only log for one Session

    Appends are serialized with a lock so sequence numbers stay strictly
    increasing when the inbound and outbound paths race.
    """

    def __init__(self, owner: str = ""):
        self.owner = owner
        self._entries: List[LogEntry] = []
        self._lock = threading.Lock()
        self._sealed = False

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(self.entries)

    @property
    def entries(self) -> List[LogEntry]:
        """Snapshot of the entries in order"""
        with self._lock:
            return list(self._entries)

    @property
    def next_sequence(self) -> int:
        with self._lock:
            return self._entries[-1].sequence + 1 if self._entries else 0

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> None:
        """Refuse further appends (the owning session is terminal)"""
        self._sealed = True

    def append(self, entry: LogEntry) -> LogEntry:
        """
        Append a fully formed entry

        Raises:
            ValueError: sequence not greater than the last one, timestamp
                earlier than the last one, or the log is sealed
        """
        with self._lock:
            self._check_appendable(entry)
            self._entries.append(entry)
        return entry

    def record(
        self,
        direction: Direction,
        payload: Optional[Payload] = None,
        note: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> LogEntry:
        """Allocate the next sequence number and timestamp, then append"""
        with self._lock:
            if self._entries:
                last = self._entries[-1]
                sequence = last.sequence + 1
                now = timestamp or datetime.now()
                # Clock steps backwards are clamped to keep time non-decreasing
                if now < last.timestamp:
                    now = last.timestamp
            else:
                sequence = 0
                now = timestamp or datetime.now()
            entry = LogEntry(
                sequence=sequence,
                timestamp=now,
                direction=direction,
                payload=payload,
                note=note,
            )
            self._check_appendable(entry)
            self._entries.append(entry)
        logger.debug(f"[Log {self.owner}] #{entry.sequence} {direction.value} {note or ''}".rstrip())
        return entry

    def _check_appendable(self, entry: LogEntry) -> None:
        if self._sealed:
            raise ValueError(f"log {self.owner} is sealed")
        if self._entries:
            last = self._entries[-1]
            if entry.sequence <= last.sequence:
                raise ValueError(
                    f"sequence {entry.sequence} does not follow {last.sequence}"
                )
            if entry.timestamp < last.timestamp:
                raise ValueError("timestamp earlier than previous entry")
        elif entry.sequence < 0:
            raise ValueError(f"negative sequence {entry.sequence}")

    def sent_entries(self) -> List[LogEntry]:
        return [e for e in self.entries if e.direction == Direction.SENT]

    def received_entries(self) -> List[LogEntry]:
        return [e for e in self.entries if e.direction == Direction.RECEIVED]

    def export_human(self) -> str:
        """One line per entry, newline terminated"""
        lines = [entry.format_line() for entry in self.entries]
        return "\n".join(lines) + "\n" if lines else ""

    def export_replay(self) -> ReplayScript:
        """
        Derive the replay script

        Raises:
            EmptyScript: no Sent entries
        """
        sent = self.sent_entries()
        if not sent:
            raise EmptyScript()

        script = ReplayScript()
        previous: Optional[datetime] = None
        for entry in sent:
            if previous is None:
                delay_ms = 0
            else:
                delay_ms = max(0, round((entry.timestamp - previous).total_seconds() * 1000))
            script.entries.append(ReplayEntry(payload=entry.payload, delay_ms=delay_ms))
            previous = entry.timestamp
        return script

    def to_dict(self) -> Dict[str, Any]:
        entries = self.entries
        return {
            "owner": self.owner,
            "entry_count": len(entries),
            "sent": sum(1 for e in entries if e.direction == Direction.SENT),
            "received": sum(1 for e in entries if e.direction == Direction.RECEIVED),
            "sealed": self._sealed,
        }


def import_replay(raw: Union[bytes, str]) -> ReplayScript:
    """
    Parse a replay export

    Unknown record fields are ignored. The first offending field is named
    in the ParseError.

    Raises:
        ParseError: malformed JSON or record
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"not valid UTF-8: {e}")

    try:
        document = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON: {e.msg} at line {e.lineno} column {e.colno}")

    if not isinstance(document, list):
        raise ParseError(f"expected a list of records, got {type(document).__name__}")

    script = ReplayScript()
    for index, record in enumerate(document):
        script.entries.append(_parse_record(index, record))
    return script


def _parse_record(index: int, record: Any) -> ReplayEntry:
    where = f"records[{index}]"
    if not isinstance(record, dict):
        raise ParseError(f"expected an object, got {type(record).__name__}", where)

    for name in REPLAY_RECORD_FIELDS:
        if name not in record:
            raise ParseError("missing field", f"{where}.{name}")

    delay_ms = record["delay_ms"]
    if isinstance(delay_ms, bool) or not isinstance(delay_ms, int):
        raise ParseError(f"expected an integer, got {delay_ms!r}", f"{where}.delay_ms")
    if delay_ms < 0:
        raise ParseError(f"must be non-negative, got {delay_ms}", f"{where}.delay_ms")

    try:
        encoding = PayloadEncoding.parse(record["encoding"])
    except ValueError:
        raise ParseError(
            f"expected 'hex' or 'ascii', got {record['encoding']!r}", f"{where}.encoding"
        )

    data = record["data"]
    if not isinstance(data, str):
        raise ParseError(f"expected a string, got {type(data).__name__}", f"{where}.data")
    try:
        payload = encode(data, encoding)
    except CodecError as e:
        raise ParseError(e.reason, f"{where}.data")

    return ReplayEntry(payload=payload, delay_ms=delay_ms)


def load_replay_file(path: Union[str, Path]) -> ReplayScript:
    """Read and parse a replay export from disk"""
    path = Path(path)
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise ParseError(f"cannot read {path}: {e.strerror or e}")
    script = import_replay(raw)
    logger.info(f"[Log] Loaded {len(script)} scripted sends from {path.name}")
    return script
