"""
Configuration for the MAVLink UDP receiver and relay.

Engines receive these objects from the caller; nothing here reads
environment variables or other process-wide state.
"""

import json
import logging
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any, Dict, Union

logger = logging.getLogger(__name__)


DEFAULT_LISTEN_PORT = 14562
DEFAULT_SITL_PORT = 14550
MAX_DATAGRAM_SIZE = 65535


class _ConfigMixin:
    """from_dict/to_dict helpers shared by the config dataclasses."""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """
        Build a config from a dictionary, ignoring unknown keys.

        Args:
            data: Mapping of field name to value

        Returns:
            Config instance (validated)
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown {cls.__name__} keys: {', '.join(sorted(unknown))}")

        config = cls(**{k: v for k, v in data.items() if k in known})
        config.validate()
        return config

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self):
        pass


def check_port(name: str, value: int):
    if not isinstance(value, int) or not 0 <= value <= 65535:
        raise ValueError(f"{name} must be an integer between 0 and 65535, got {value!r}")


def check_positive(name: str, value: float):
    if not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"{name} must be a positive number, got {value!r}")


@dataclass
class ListenerConfig(_ConfigMixin):
    """
    UDP listener settings.

    Attributes:
        host: Local address to bind
        port: Local UDP port to bind (0 picks a free port)
        receive_timeout: Seconds each receive waits before re-checking for stop
        error_pause: Seconds to pause after a socket error
        stop_grace_period: Seconds stop() waits before force-closing the socket
        buffer_size: Maximum datagram size read per receive
        decode_packets: Run received datagrams through the decoder
    """
    host: str = '0.0.0.0'
    port: int = DEFAULT_LISTEN_PORT
    receive_timeout: float = 5.0
    error_pause: float = 1.0
    stop_grace_period: float = 0.1
    buffer_size: int = MAX_DATAGRAM_SIZE
    decode_packets: bool = True

    def validate(self):
        check_port('port', self.port)
        check_positive('receive_timeout', self.receive_timeout)
        check_positive('stop_grace_period', self.stop_grace_period)
        check_positive('buffer_size', self.buffer_size)
        if self.error_pause < 0:
            raise ValueError(f"error_pause must not be negative, got {self.error_pause!r}")


@dataclass
class RelayConfig(ListenerConfig):
    """
    UDP relay settings.

    Binds the SITL output port and forwards MAVLink datagrams to
    ``forward_host:forward_port``.

    Attributes:
        forward_host: Destination address
        forward_port: Destination port
        reconnect_delay: Seconds to pause after the source connection is lost
    """
    port: int = DEFAULT_SITL_PORT
    forward_host: str = '127.0.0.1'
    forward_port: int = DEFAULT_LISTEN_PORT
    reconnect_delay: float = 1.0
    decode_packets: bool = False

    @property
    def destination(self):
        return (self.forward_host, self.forward_port)

    def validate(self):
        super().validate()
        check_port('forward_port', self.forward_port)
        if self.forward_port == 0:
            raise ValueError("forward_port must not be 0")
        if self.reconnect_delay < 0:
            raise ValueError(f"reconnect_delay must not be negative, got {self.reconnect_delay!r}")


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a JSON configuration file.

    The file may contain ``listener``, ``relay``, ``monitor`` and
    ``packet_log`` sections; missing sections are returned as empty dicts.

    Args:
        path: Path to the JSON file

    Returns:
        Configuration dictionary

    Raises:
        OSError: File cannot be read
        ValueError: File is not valid JSON or not a JSON object
    """
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a JSON object")

    for section in ('listener', 'relay', 'monitor', 'packet_log'):
        data.setdefault(section, {})

    logger.info(f"Loaded configuration from {path}")
    return data
