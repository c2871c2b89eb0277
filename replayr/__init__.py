"""
Replayr - TCP/UDP session debugger and traffic replayer

Opens TCP or UDP sessions, sends hand-crafted hex or ascii payloads,
records everything sent and received, and replays the recorded sends
against any endpoint with the original timing.

Features:
- Independent concurrent sessions addressed by id
- Receive path runs independently of sends
- Human-readable and replayable log exports
- Replay with recorded, scaled or fixed timing, cancellable between sends
- Typed events for front ends (packet received, state changed, replay progress)

Usage:
    from replayr import SessionRegistry, Endpoint, Protocol, encode, PayloadEncoding

    registry = SessionRegistry()
    session_id = await registry.new_session(Endpoint(Protocol.TCP, "127.0.0.1", 7))
    await registry.send(session_id, encode("48 65 6C 6C 6F", PayloadEncoding.HEX))

    script = registry.get_session(session_id).log.export_replay()
    replay_id = registry.start_replay(script, Endpoint(Protocol.TCP, "10.0.0.5", 7))
    outcome = await registry.wait_replay(replay_id)
"""

from .codec import Payload, PayloadEncoding, encode, decode, payload_from_bytes
from .config import SessionConfig, config_from_dict, load_config, save_config
from .errors import (
    ReplayrError,
    CodecError,
    InvalidHex,
    InvalidAscii,
    TransportError,
    ConnectError,
    SendError,
    ReceiveError,
    PeerClosed,
    SendFailed,
    SessionStateError,
    UnknownSession,
    UnknownReplay,
    ParseError,
    EmptyScript,
    ConfigError,
)
from .events import (
    EventType,
    EventBus,
    PacketReceived,
    SessionStateChanged,
    ReplayProgress,
    ReplayFinished,
)
from .packet_log import (
    Direction,
    ExportFormat,
    LogEntry,
    PacketLog,
    ReplayEntry,
    ReplayScript,
    import_replay,
    load_replay_file,
)
from .registry import (
    RegistryConfig,
    SessionRegistry,
    get_session_registry,
    configure_session_registry,
)
from .replay import AbortReason, ReplayEngine, ReplayOptions, ReplayOutcome, ReplayState
from .session import Session, SessionState, SessionStats
from .transport import Endpoint, Protocol, Transport, TcpTransport, UdpTransport, create_transport

__version__ = "0.1.0"

__all__ = [
    # Codec
    "Payload",
    "PayloadEncoding",
    "encode",
    "decode",
    "payload_from_bytes",
    # Config
    "SessionConfig",
    "config_from_dict",
    "load_config",
    "save_config",
    # Errors
    "ReplayrError",
    "CodecError",
    "InvalidHex",
    "InvalidAscii",
    "TransportError",
    "ConnectError",
    "SendError",
    "ReceiveError",
    "PeerClosed",
    "SendFailed",
    "SessionStateError",
    "UnknownSession",
    "UnknownReplay",
    "ParseError",
    "EmptyScript",
    "ConfigError",
    # Events
    "EventType",
    "EventBus",
    "PacketReceived",
    "SessionStateChanged",
    "ReplayProgress",
    "ReplayFinished",
    # Log
    "Direction",
    "ExportFormat",
    "LogEntry",
    "PacketLog",
    "ReplayEntry",
    "ReplayScript",
    "import_replay",
    "load_replay_file",
    # Registry
    "RegistryConfig",
    "SessionRegistry",
    "get_session_registry",
    "configure_session_registry",
    # Replay
    "AbortReason",
    "ReplayEngine",
    "ReplayOptions",
    "ReplayOutcome",
    "ReplayState",
    # Session
    "Session",
    "SessionState",
    "SessionStats",
    # Transport
    "Endpoint",
    "Protocol",
    "Transport",
    "TcpTransport",
    "UdpTransport",
    "create_transport",
]
