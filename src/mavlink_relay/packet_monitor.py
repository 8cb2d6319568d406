"""
Packet Monitor Module

Console output for the UDP listener and relay: one line per decoded
packet with its version, message name and key fields, plus forwarded,
error and connection-lost notices. Display settings never affect decoding.
"""

import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional, Dict
import logging

from .mavlink_decoder import (
    DecodedPacket, DecodeErrorKind, HeartbeatPayload, SysStatusPayload,
    GpsRawIntPayload, RawImuPayload, RawPressurePayload, AttitudePayload,
    GlobalPositionIntPayload, VfrHudPayload, TimesyncPayload, UnknownPayload,
    hex_preview
)
from .packet_events import ErrorKind, PacketSubscriber

logger = logging.getLogger(__name__)


class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[31m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    CYAN = '\033[36m'


@dataclass
class MonitorConfig:
    """
    Configuration for the packet monitor.

    Attributes:
        show_timestamps: Include timestamps in output
        show_hex: Append a hex preview of the raw datagram
        hex_preview_length: Number of bytes in the hex preview
        show_forwarded: Print a line for every forwarded datagram
        verbose: Show header details (sequence, component, flags)
        color_enabled: Enable color output
    """
    show_timestamps: bool = True
    show_hex: bool = False
    hex_preview_length: int = 16
    show_forwarded: bool = False
    verbose: bool = False
    color_enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict) -> 'MonitorConfig':
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


class PacketMonitor(PacketSubscriber):
    """
    Prints received packets and engine events to the console.

    Subscribe it to a UdpListener or UdpRelay with ``decode_packets``
    enabled to get one line per datagram.
    """

    def __init__(self, config: Optional[MonitorConfig] = None):
        """
        Initialize the packet monitor.

        Args:
            config: Monitor configuration (uses defaults if None)
        """
        self.config = config or MonitorConfig()
        self.stats = {
            'packets_displayed': 0,
            'invalid_packets': 0,
            'packets_forwarded': 0,
            'errors': 0,
            'connection_lost': 0,
            'messages_by_type': defaultdict(int),
        }
        self._last_raw = None

        logger.info(
            f"Packet monitor initialized - "
            f"hex={'enabled' if self.config.show_hex else 'disabled'}, "
            f"verbose={'enabled' if self.config.verbose else 'disabled'}"
        )

    # ------------------------------------------------------------------
    # Subscriber callbacks
    # ------------------------------------------------------------------

    def on_packet_received(self, data: bytes, source_address, sequence_number: int):
        # Delivered just before on_packet_decoded for the same datagram
        self._last_raw = (sequence_number, data)

    def on_packet_decoded(self, packet: DecodedPacket, source_address, sequence_number: int):
        raw = None
        if self._last_raw is not None and self._last_raw[0] == sequence_number:
            raw = self._last_raw[1]
        self._last_raw = None
        print(self.format_packet(packet, sequence_number, raw=raw))

    def on_packet_forwarded(self, data: bytes):
        self.stats['packets_forwarded'] += 1
        if self.config.show_forwarded or self.config.verbose:
            print(self._line(f"FWD {len(data)} bytes", Colors.BLUE))

    def on_error(self, error_kind: ErrorKind, detail: str):
        self.stats['errors'] += 1
        print(self._line(f"ERROR {error_kind.name}: {detail}", Colors.RED))

    def on_connection_lost(self):
        self.stats['connection_lost'] += 1
        print(self._line("Connection lost", Colors.YELLOW))

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    def format_packet(self, packet: DecodedPacket, sequence_number: int,
                      raw: Optional[bytes] = None) -> str:
        """
        Format a decoded packet as a single console line.

        Args:
            packet: Decoded packet
            sequence_number: Receipt number assigned by the engine
            raw: Raw datagram for the hex preview (defaults to the payload)

        Returns:
            Formatted string for console output
        """
        parts = [f"#{sequence_number}"]

        if packet.header is not None:
            header = packet.header
            label = f"{header.version.value} (ID: {header.message_id})"
            name = packet.message_name
            if self.config.color_enabled:
                color = Colors.CYAN if packet.is_valid else Colors.YELLOW
                name = f"{Colors.BOLD}{color}{name}{Colors.RESET}"
            parts.append(label)
            parts.append(name)
            parts.append(f"SYS:{header.system_id}")
            if self.config.verbose:
                parts.append(f"COMP:{header.component_id} SEQ:{header.sequence} LEN:{header.payload_length}")
                if header.incompat_flags is not None:
                    parts.append(f"FLAGS:{header.incompat_flags:#04x}/{header.compat_flags:#04x}")
        elif packet.error is not None and packet.error.kind == DecodeErrorKind.INVALID_MAGIC:
            parts.append("Non-MAVLink Data")
        else:
            parts.append("Unknown MAVLink")

        parts.append(f"{packet.frame_length} bytes")

        if not packet.is_valid:
            self.stats['invalid_packets'] += 1
            parts.append(f"[{packet.error}]")
        elif packet.payload_error is not None:
            parts.append(f"[{packet.payload_error}]")
        else:
            key_fields = self._format_fields(packet.fields)
            if key_fields:
                parts.append(key_fields)

        if self.config.show_hex:
            data = raw if raw is not None else packet.payload
            preview = hex_preview(data, self.config.hex_preview_length)
            if len(data) > self.config.hex_preview_length:
                preview += "..."
            parts.append(f"| Hex: {preview}")

        self.stats['packets_displayed'] += 1
        if packet.message_name:
            self.stats['messages_by_type'][packet.message_name] += 1

        return self._line(" ".join(parts))

    def _format_fields(self, fields) -> str:
        """
        Extract key fields from a payload summary for display.

        Args:
            fields: Typed payload summary

        Returns:
            Formatted string with key fields
        """
        if fields is None:
            return ""

        if isinstance(fields, HeartbeatPayload):
            return (f"mode={fields.custom_mode} type={fields.type} autopilot={fields.autopilot} "
                    f"armed={'YES' if fields.armed else 'NO'} status={fields.system_status}")

        if isinstance(fields, SysStatusPayload):
            return f"bat={fields.voltage_v:.2f}V {fields.current_a:.2f}A {fields.battery_remaining}%"

        if isinstance(fields, GpsRawIntPayload):
            return (f"lat={fields.latitude:.6f} lon={fields.longitude:.6f} alt={fields.altitude_m:.1f}m "
                    f"fix={fields.fix_type} sats={fields.satellites_visible}")

        if isinstance(fields, RawImuPayload):
            return (f"acc=({fields.xacc},{fields.yacc},{fields.zacc}) "
                    f"gyro=({fields.xgyro},{fields.ygyro},{fields.zgyro})")

        if isinstance(fields, RawPressurePayload):
            return f"press={fields.press_abs} diff={fields.press_diff1} temp={fields.temperature_c:.2f}C"

        if isinstance(fields, AttitudePayload):
            return f"roll={fields.roll:.1f}° pitch={fields.pitch:.1f}° yaw={fields.yaw:.1f}°"

        if isinstance(fields, GlobalPositionIntPayload):
            return (f"lat={fields.latitude:.6f} lon={fields.longitude:.6f} "
                    f"alt={fields.alt / 1000.0:.1f}m rel={fields.relative_altitude_m:.1f}m")

        if isinstance(fields, VfrHudPayload):
            return (f"air={fields.airspeed:.1f}m/s gnd={fields.groundspeed:.1f}m/s hdg={fields.heading} "
                    f"thr={fields.throttle}% alt={fields.alt:.1f}m climb={fields.climb:.1f}m/s")

        if isinstance(fields, TimesyncPayload):
            return f"tc1={fields.tc1} ts1={fields.ts1}"

        if isinstance(fields, UnknownPayload):
            return f"payload={fields.payload_length}B [{fields.hex_preview}]"

        return ""

    def _line(self, text: str, color: Optional[str] = None) -> str:
        if color and self.config.color_enabled:
            text = f"{color}{text}{Colors.RESET}"
        if self.config.show_timestamps:
            now = time.time()
            stamp = time.strftime('%H:%M:%S', time.localtime(now)) + f".{int(now * 1000) % 1000:03d}"
            text = f"[{stamp}] {text}"
        return text

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def display_statistics(self, engine_status: Optional[Dict] = None):
        """
        Print monitor statistics and, optionally, engine status.

        Args:
            engine_status: Dictionary from UdpListener.get_status()
        """
        print(f"\n{'=' * 70}")
        print("PACKET STATISTICS")
        print(f"{'=' * 70}")

        if engine_status:
            print(f"  State:             {engine_status.get('state')}")
            print(f"  Packets received:  {engine_status.get('packets_received', 0)}")
            if 'packets_forwarded' in engine_status:
                print(f"  Packets forwarded: {engine_status['packets_forwarded']}")
                print(f"  Packets dropped:   {engine_status.get('packets_dropped', 0)}")

        print(f"  Packets displayed: {self.stats['packets_displayed']}")
        print(f"  Invalid packets:   {self.stats['invalid_packets']}")
        print(f"  Errors:            {self.stats['errors']}")

        top = sorted(self.stats['messages_by_type'].items(), key=lambda x: x[1], reverse=True)[:10]
        if top:
            print("  Messages (top 10):")
            for name, count in top:
                print(f"    {name:30s}: {count:6d}")

        print(f"{'=' * 70}\n")

    def get_stats(self) -> Dict:
        stats = self.stats.copy()
        stats['messages_by_type'] = dict(self.stats['messages_by_type'])
        return stats

    def reset_stats(self):
        """Reset monitor statistics."""
        self.stats = {
            'packets_displayed': 0,
            'invalid_packets': 0,
            'packets_forwarded': 0,
            'errors': 0,
            'connection_lost': 0,
            'messages_by_type': defaultdict(int),
        }
        logger.info("Packet monitor statistics reset")
