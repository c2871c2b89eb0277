"""
Session Configuration

Key-value settings used to parametrize a new session:

    protocol: tcp            # tcp | udp
    address: 127.0.0.1
    port: 8080
    initial_payload: ""      # sent right after connecting when non-empty
    initial_payload_encoding: hex
    connect_timeout: 5.0

Stored as YAML. The engine only reads a SessionConfig; saving is left to
front ends such as the CLI.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .codec import Payload, PayloadEncoding, encode
from .constants import (
    DEFAULT_ADDRESS,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_PORT,
    DEFAULT_PROTOCOL,
    PORT_MAX,
    PORT_MIN,
)
from .errors import ConfigError
from .transport import Endpoint, Protocol

logger = logging.getLogger("Replayr.Config")

DEFAULT_CONFIG_FILE = "replayr.yaml"


@dataclass
class SessionConfig:
    """Settings for a new session"""
    protocol: Protocol = Protocol(DEFAULT_PROTOCOL)
    address: str = DEFAULT_ADDRESS
    port: int = DEFAULT_PORT
    initial_payload: str = ""
    initial_payload_encoding: PayloadEncoding = PayloadEncoding.HEX
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    def endpoint(self) -> Endpoint:
        return Endpoint(protocol=self.protocol, host=self.address, port=self.port)

    def initial_payload_value(self) -> Optional[Payload]:
        """
        Encoded initial payload, or None when empty

        Raises:
            CodecError: initial_payload is not valid in its encoding
        """
        if not self.initial_payload:
            return None
        return encode(self.initial_payload, self.initial_payload_encoding)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol.value,
            "address": self.address,
            "port": self.port,
            "initial_payload": self.initial_payload,
            "initial_payload_encoding": self.initial_payload_encoding.value,
            "connect_timeout": self.connect_timeout,
        }


def config_from_dict(data: Dict[str, Any]) -> SessionConfig:
    """
    Build a SessionConfig from plain values

    Unknown keys are ignored; missing keys take defaults.

    Raises:
        ConfigError: a value has the wrong type or range
    """
    config = SessionConfig()

    if "protocol" in data:
        try:
            config.protocol = Protocol.parse(data["protocol"])
        except ValueError:
            raise ConfigError("protocol", f"expected tcp or udp, got {data['protocol']!r}")

    if "address" in data:
        address = data["address"]
        if not isinstance(address, str) or not address.strip():
            raise ConfigError("address", f"expected a host name or IP, got {address!r}")
        config.address = address.strip()

    if "port" in data:
        port = data["port"]
        # Port may be written as a quoted string
        if isinstance(port, str) and port.strip().isdigit():
            port = int(port.strip())
        if isinstance(port, bool) or not isinstance(port, int):
            raise ConfigError("port", f"expected an integer, got {data['port']!r}")
        if not PORT_MIN <= port <= PORT_MAX:
            raise ConfigError("port", f"out of range {PORT_MIN}..{PORT_MAX}: {port}")
        config.port = port

    if data.get("initial_payload") is not None:
        if not isinstance(data["initial_payload"], str):
            raise ConfigError("initial_payload", "expected a string")
        config.initial_payload = data["initial_payload"]

    if "initial_payload_encoding" in data:
        try:
            config.initial_payload_encoding = PayloadEncoding.parse(data["initial_payload_encoding"])
        except ValueError:
            raise ConfigError(
                "initial_payload_encoding",
                f"expected hex or ascii, got {data['initial_payload_encoding']!r}",
            )

    if "connect_timeout" in data:
        timeout = data["connect_timeout"]
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError("connect_timeout", f"expected a positive number, got {timeout!r}")
        config.connect_timeout = float(timeout)

    return config


def load_config(path: Union[str, Path] = DEFAULT_CONFIG_FILE) -> SessionConfig:
    """
    Load configuration from a YAML file

    A missing file yields the defaults.

    Raises:
        ConfigError: unreadable/invalid YAML or invalid values
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"[Config] {path} not found, using defaults")
        return SessionConfig()

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(str(path), f"invalid YAML: {e}")
    except OSError as e:
        raise ConfigError(str(path), f"cannot read: {e.strerror or e}")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(str(path), "expected a mapping at top level")

    config = config_from_dict(data)
    logger.info(f"[Config] Loaded {path}: {config.protocol.value}://{config.address}:{config.port}")
    return config


def save_config(config: SessionConfig, path: Union[str, Path] = DEFAULT_CONFIG_FILE) -> Path:
    """Write configuration as YAML"""
    path = Path(path)
    path.write_text(
        yaml.safe_dump(config.to_dict(), default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    logger.debug(f"[Config] Saved {path}")
    return path
