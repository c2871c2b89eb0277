"""
Replayr Constants

Defaults shared by the transport, session and replay layers.
"""

# Receive buffer sizes
TCP_RECV_BUFFER_SIZE = 1024            # Max bytes per inbound TCP chunk

# Timeouts (seconds)
DEFAULT_CONNECT_TIMEOUT = 5.0
CLOSE_TIMEOUT = 1.0                    # Wait for stream close to flush

# Default endpoint (matches a fresh config file)
DEFAULT_PROTOCOL = "tcp"
DEFAULT_ADDRESS = "127.0.0.1"
DEFAULT_PORT = 8080

# Port range
PORT_MIN = 1
PORT_MAX = 65535

# UDP local bind addresses (ephemeral port)
UDP_BIND_ADDRESS_V4 = "0.0.0.0"
UDP_BIND_ADDRESS_V6 = "::"

# Log export
HUMAN_EXPORT_SUFFIX = "_logs.txt"
REPLAY_EXPORT_SUFFIX = ".json"
SYSTEM_ENCODING_LABEL = "system"

# Log notes
NOTE_CONNECTING = "connecting"
NOTE_CONNECTED = "connected"
NOTE_CLOSED = "closed"
NOTE_PEER_CLOSED = "peer closed"

# Event history kept by the event bus
EVENT_HISTORY_SIZE = 1000

# Registry limits
MAX_SESSIONS_DEFAULT = 256
