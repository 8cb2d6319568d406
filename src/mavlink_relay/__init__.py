"""
MAVLink UDP receiver and relay.

Receives MAVLink v1/v2 datagrams on a UDP port, decodes them and
optionally forwards them unmodified to another address.
"""

from .config import ListenerConfig, RelayConfig, load_config
from .mavlink_decoder import (
    DecodedPacket, DecodeError, DecodeErrorKind, FrameHeader, MavlinkVersion,
    decode_packet, get_message_name, get_all_message_types, is_mavlink_frame
)
from .packet_events import ErrorKind, EventPublisher, PacketSubscriber
from .packet_log import PacketLog
from .packet_monitor import PacketMonitor, MonitorConfig
from .udp_listener import EngineState, UdpListener
from .udp_relay import UdpRelay

__version__ = "0.1.0"

__all__ = [
    'ListenerConfig', 'RelayConfig', 'load_config',
    'DecodedPacket', 'DecodeError', 'DecodeErrorKind', 'FrameHeader', 'MavlinkVersion',
    'decode_packet', 'get_message_name', 'get_all_message_types', 'is_mavlink_frame',
    'ErrorKind', 'EventPublisher', 'PacketSubscriber',
    'PacketLog', 'PacketMonitor', 'MonitorConfig',
    'EngineState', 'UdpListener', 'UdpRelay',
]
