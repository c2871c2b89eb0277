"""
Replayr Errors

Error taxonomy for the session and replay engine.

- CodecError: malformed operator input, rejected before any network effect
- TransportError: connect/send/receive failures raised by a transport adapter
- SendFailed: a Session send that drove the Session to Failed
- ParseError / EmptyScript: replay import/export problems
- SessionStateError: a command issued in a state that does not allow it
"""

from typing import Optional


class ReplayrError(Exception):
    """Base class for all engine errors"""


# Codec

class CodecError(ReplayrError):
    """Operator text could not be turned into bytes"""

    def __init__(self, text: str, reason: str):
        self.text = text
        self.reason = reason
        super().__init__(reason)


class InvalidHex(CodecError):
    """Odd digit count or non-hex characters"""


class InvalidAscii(CodecError):
    """Character not representable in a single byte"""


# Transport

class TransportError(ReplayrError):
    """Failure reported by a transport adapter"""

    def __init__(self, cause: str):
        self.cause = cause
        super().__init__(cause)


class ConnectError(TransportError):
    """Endpoint refused, unreachable, unresolvable or timed out"""


class SendError(TransportError):
    """Outbound write failed"""


class ReceiveError(TransportError):
    """Inbound read failed"""


class PeerClosed(TransportError):
    """Remote end closed the stream"""

    def __init__(self, cause: str = "peer closed"):
        super().__init__(cause)


# Session

class SendFailed(ReplayrError):
    """A send drove its Session to Failed"""

    def __init__(self, session_id: str, cause: str):
        self.session_id = session_id
        self.cause = cause
        super().__init__(f"send failed on {session_id}: {cause}")


class SessionStateError(ReplayrError):
    """Command is not valid in the session's current state"""

    def __init__(self, session_id: str, command: str, state: str):
        self.session_id = session_id
        self.command = command
        self.state = state
        super().__init__(f"{command} not allowed on {session_id} in state {state}")


class UnknownSession(ReplayrError):
    """No session with this id in the registry"""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"unknown session: {session_id}")


class UnknownReplay(ReplayrError):
    """No replay with this id in the registry"""

    def __init__(self, replay_id: str):
        self.replay_id = replay_id
        super().__init__(f"unknown replay: {replay_id}")


# Log / replay

class ParseError(ReplayrError):
    """Malformed replay import"""

    def __init__(self, reason: str, field: Optional[str] = None):
        self.reason = reason
        self.field = field
        super().__init__(f"{field}: {reason}" if field else reason)


class EmptyScript(ReplayrError):
    """Log holds no sent entries, nothing to replay"""

    def __init__(self, reason: str = "log contains no sent entries"):
        self.reason = reason
        super().__init__(reason)


# Configuration

class ConfigError(ReplayrError):
    """Invalid configuration value"""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"config {key}: {reason}")
