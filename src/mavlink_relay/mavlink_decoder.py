"""
MAVLink Frame Decoder

This module decodes single MAVLink v1/v2 frames received as UDP datagrams.
It validates the frame header and length, resolves the message name and
extracts a typed summary for a handful of well-known telemetry messages.

Frame layouts:
- v1: 0xFE, len, seq, sysid, compid, msgid (8-bit), payload, checksum (2)
- v2: 0xFD, len, incompat_flags, compat_flags, seq, sysid, compid,
      msgid (24-bit little-endian), payload, checksum (2), signature (13, optional)

Checksums and signatures are not verified; they are only counted when
computing the expected frame length.
"""

import math
import struct
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional, Dict, Any, Union

from pymavlink.dialects.v20 import ardupilotmega as mavlink_dialect


# Protocol constants
MAVLINK_V1_MAGIC = 0xFE
MAVLINK_V2_MAGIC = 0xFD
MIN_FRAME_LENGTH = 8
V1_HEADER_LENGTH = 6
V2_HEADER_LENGTH = 10
CHECKSUM_LENGTH = 2
SIGNATURE_LENGTH = 13
INCOMPAT_FLAG_SIGNED = 0x01
FALLBACK_HEX_PREVIEW_LENGTH = 20

# Message id -> name, built once from the dialect definitions.
# Ids are 24-bit so v1 and v2 frames share the same table.
MESSAGE_NAMES: Dict[int, str] = {
    msg_id: msg_class.msgname
    for msg_id, msg_class in mavlink_dialect.mavlink_map.items()
}


class MavlinkVersion(Enum):
    """MAVLink wire protocol version, identified by the magic byte."""
    V1 = "MAVLink v1.0"
    V2 = "MAVLink v2.0"


class DecodeErrorKind(Enum):
    """Reasons a frame (or its payload) could not be decoded."""
    INVALID_MAGIC = 1
    TRUNCATED = 2
    INVALID_PAYLOAD = 3


@dataclass(frozen=True)
class DecodeError:
    """
    Describes why a frame or payload failed to decode.

    Only the attributes relevant to the error kind are populated:
    ``magic`` for INVALID_MAGIC, ``expected``/``actual`` for TRUNCATED and
    ``message_id`` for INVALID_PAYLOAD.
    """
    kind: DecodeErrorKind
    message: str
    expected: Optional[int] = None
    actual: Optional[int] = None
    magic: Optional[int] = None
    message_id: Optional[int] = None

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class FrameHeader:
    """
    Decoded MAVLink frame header.

    Attributes:
        version: Protocol version (V1 or V2)
        payload_length: Payload length field (0-255)
        sequence: Packet sequence number (0-255)
        system_id: Source system ID
        component_id: Source component ID
        message_id: Message ID (8-bit for v1, 24-bit for v2)
        incompat_flags: v2 incompatibility flags, None for v1
        compat_flags: v2 compatibility flags, None for v1
    """
    version: MavlinkVersion
    payload_length: int
    sequence: int
    system_id: int
    component_id: int
    message_id: int
    incompat_flags: Optional[int] = None
    compat_flags: Optional[int] = None

    @property
    def is_signed(self) -> bool:
        """True when a v2 frame carries a signature block."""
        return self.incompat_flags is not None and bool(self.incompat_flags & INCOMPAT_FLAG_SIGNED)

    @property
    def header_length(self) -> int:
        return V1_HEADER_LENGTH if self.version == MavlinkVersion.V1 else V2_HEADER_LENGTH

    @property
    def expected_length(self) -> int:
        """Minimum number of bytes the complete frame occupies."""
        length = self.header_length + self.payload_length + CHECKSUM_LENGTH
        if self.is_signed:
            length += SIGNATURE_LENGTH
        return length


# ---------------------------------------------------------------------------
# Payload summaries
# ---------------------------------------------------------------------------

class PayloadSummary:
    """Base class for typed payload summaries."""

    MIN_LENGTH = 0

    @classmethod
    def _check_length(cls, data: bytes):
        if len(data) < cls.MIN_LENGTH:
            raise ValueError(f"{cls.__name__} requires {cls.MIN_LENGTH} bytes, got {len(data)}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class HeartbeatPayload(PayloadSummary):
    """HEARTBEAT (id 0)."""
    custom_mode: int             # uint32 @0
    type: int                    # uint8 @4
    autopilot: int               # uint8 @5
    base_mode: int               # uint8 @6
    system_status: int           # uint8 @7

    MIN_LENGTH = 9

    @classmethod
    def from_bytes(cls, data: bytes) -> 'HeartbeatPayload':
        """Parse HeartbeatPayload from payload bytes"""
        cls._check_length(data)
        custom_mode, mav_type, autopilot, base_mode, system_status = struct.unpack_from('<IBBBB', data, 0)
        return cls(custom_mode, mav_type, autopilot, base_mode, system_status)

    @property
    def armed(self) -> bool:
        return bool(self.base_mode & 0x80)


@dataclass(frozen=True)
class SysStatusPayload(PayloadSummary):
    """SYS_STATUS (id 1) battery fields."""
    voltage_battery: int         # uint16 mV @12
    current_battery: int         # int16 cA @14
    battery_remaining: int       # int8 % @16

    MIN_LENGTH = 31

    @classmethod
    def from_bytes(cls, data: bytes) -> 'SysStatusPayload':
        """Parse SysStatusPayload from payload bytes"""
        cls._check_length(data)
        voltage = struct.unpack_from('<H', data, 12)[0]
        current = struct.unpack_from('<h', data, 14)[0]
        remaining = struct.unpack_from('<b', data, 16)[0]
        return cls(voltage, current, remaining)

    @property
    def voltage_v(self) -> float:
        return self.voltage_battery / 1000.0

    @property
    def current_a(self) -> float:
        return self.current_battery / 100.0


@dataclass(frozen=True)
class GpsRawIntPayload(PayloadSummary):
    """GPS_RAW_INT (id 24)."""
    lat: int                     # int32 1e-7 deg @8
    lon: int                     # int32 1e-7 deg @12
    alt: int                     # int32 mm @16
    fix_type: int                # uint8 @24
    satellites_visible: int      # uint8 @25

    MIN_LENGTH = 30

    @classmethod
    def from_bytes(cls, data: bytes) -> 'GpsRawIntPayload':
        """Parse GpsRawIntPayload from payload bytes"""
        cls._check_length(data)
        lat, lon, alt = struct.unpack_from('<iii', data, 8)
        fix_type, satellites = struct.unpack_from('<BB', data, 24)
        return cls(lat, lon, alt, fix_type, satellites)

    @property
    def latitude(self) -> float:
        return self.lat / 1e7

    @property
    def longitude(self) -> float:
        return self.lon / 1e7

    @property
    def altitude_m(self) -> float:
        return self.alt / 1000.0


@dataclass(frozen=True)
class RawImuPayload(PayloadSummary):
    """RAW_IMU (id 27) raw sensor counts."""
    xacc: int
    yacc: int
    zacc: int
    xgyro: int
    ygyro: int
    zgyro: int
    xmag: int
    ymag: int
    zmag: int

    MIN_LENGTH = 26

    @classmethod
    def from_bytes(cls, data: bytes) -> 'RawImuPayload':
        """Parse RawImuPayload from payload bytes (nine int16 values from offset 8)"""
        cls._check_length(data)
        return cls(*struct.unpack_from('<9h', data, 8))


@dataclass(frozen=True)
class RawPressurePayload(PayloadSummary):
    """RAW_PRESSURE (id 28, also decoded for id 29)."""
    press_abs: int               # int16 @8
    press_diff1: int             # int16 @10
    temperature: int             # int16 centi-degC @14

    MIN_LENGTH = 16

    @classmethod
    def from_bytes(cls, data: bytes) -> 'RawPressurePayload':
        """Parse RawPressurePayload from payload bytes"""
        cls._check_length(data)
        press_abs, press_diff1 = struct.unpack_from('<hh', data, 8)
        temperature = struct.unpack_from('<h', data, 14)[0]
        return cls(press_abs, press_diff1, temperature)

    @property
    def temperature_c(self) -> float:
        return self.temperature / 100.0


@dataclass(frozen=True)
class AttitudePayload(PayloadSummary):
    """ATTITUDE (id 30), angles converted from radians to degrees."""
    roll: float                  # float @4
    pitch: float                 # float @8
    yaw: float                   # float @12

    MIN_LENGTH = 28

    @classmethod
    def from_bytes(cls, data: bytes) -> 'AttitudePayload':
        """Parse AttitudePayload from payload bytes"""
        cls._check_length(data)
        roll, pitch, yaw = struct.unpack_from('<fff', data, 4)
        return cls(math.degrees(roll), math.degrees(pitch), math.degrees(yaw))


@dataclass(frozen=True)
class GlobalPositionIntPayload(PayloadSummary):
    """GLOBAL_POSITION_INT (id 33)."""
    lat: int                     # int32 1e-7 deg @4
    lon: int                     # int32 1e-7 deg @8
    alt: int                     # int32 mm @12
    relative_alt: int            # int32 mm @16

    MIN_LENGTH = 28

    @classmethod
    def from_bytes(cls, data: bytes) -> 'GlobalPositionIntPayload':
        """Parse GlobalPositionIntPayload from payload bytes"""
        cls._check_length(data)
        return cls(*struct.unpack_from('<iiii', data, 4))

    @property
    def latitude(self) -> float:
        return self.lat / 1e7

    @property
    def longitude(self) -> float:
        return self.lon / 1e7

    @property
    def relative_altitude_m(self) -> float:
        return self.relative_alt / 1000.0


@dataclass(frozen=True)
class VfrHudPayload(PayloadSummary):
    """VFR_HUD (id 74)."""
    airspeed: float              # float m/s @0
    groundspeed: float           # float m/s @4
    heading: int                 # int16 deg @8
    throttle: int                # uint16 % @10
    alt: float                   # float m @12
    climb: float                 # float m/s @16

    MIN_LENGTH = 20

    @classmethod
    def from_bytes(cls, data: bytes) -> 'VfrHudPayload':
        """Parse VfrHudPayload from payload bytes"""
        cls._check_length(data)
        airspeed, groundspeed = struct.unpack_from('<ff', data, 0)
        heading, throttle = struct.unpack_from('<hH', data, 8)
        alt, climb = struct.unpack_from('<ff', data, 12)
        return cls(airspeed, groundspeed, heading, throttle, alt, climb)


@dataclass(frozen=True)
class TimesyncPayload(PayloadSummary):
    """TIMESYNC (id 111)."""
    tc1: int                     # int64 @0
    ts1: int                     # int64 @8

    MIN_LENGTH = 16

    @classmethod
    def from_bytes(cls, data: bytes) -> 'TimesyncPayload':
        """Parse TimesyncPayload from payload bytes"""
        cls._check_length(data)
        return cls(*struct.unpack_from('<qq', data, 0))


@dataclass(frozen=True)
class UnknownPayload(PayloadSummary):
    """Fallback summary for messages without a dedicated layout."""
    message_id: int
    payload_length: int
    hex_preview: str

    @classmethod
    def from_message(cls, message_id: int, data: bytes) -> 'UnknownPayload':
        return cls(message_id, len(data), hex_preview(data, FALLBACK_HEX_PREVIEW_LENGTH))


PAYLOAD_TYPES = {
    0: HeartbeatPayload,
    1: SysStatusPayload,
    24: GpsRawIntPayload,
    27: RawImuPayload,
    28: RawPressurePayload,
    29: RawPressurePayload,
    30: AttitudePayload,
    33: GlobalPositionIntPayload,
    74: VfrHudPayload,
    111: TimesyncPayload,
}

FieldSummary = Union[
    HeartbeatPayload, SysStatusPayload, GpsRawIntPayload, RawImuPayload,
    RawPressurePayload, AttitudePayload, GlobalPositionIntPayload,
    VfrHudPayload, TimesyncPayload, UnknownPayload
]


@dataclass(frozen=True)
class DecodedPacket:
    """
    Result of decoding one datagram.

    ``is_valid`` reflects the frame header and length checks only. A valid
    frame whose payload is too short for its message layout keeps
    ``is_valid=True`` and reports the problem in ``payload_error``.

    Attributes:
        header: Decoded header, None if the magic byte or minimum length check failed
        payload: Payload bytes (exactly ``payload_length`` bytes when valid)
        message_name: Resolved message name, None when no header was decoded
        fields: Typed payload summary, None when not decoded
        is_valid: True if the header decoded and the frame length is sufficient
        error: Frame-level decode error
        payload_error: Payload-level decode error (INVALID_PAYLOAD)
        frame_length: Number of bytes that were decoded
    """
    header: Optional[FrameHeader]
    payload: bytes = b''
    message_name: Optional[str] = None
    fields: Optional[FieldSummary] = None
    is_valid: bool = False
    error: Optional[DecodeError] = None
    payload_error: Optional[DecodeError] = None
    frame_length: int = 0

    @property
    def message_id(self) -> Optional[int]:
        return self.header.message_id if self.header else None

    @property
    def version(self) -> Optional[MavlinkVersion]:
        return self.header.version if self.header else None


def get_message_name(message_id: int) -> str:
    """
    Resolve a message name from its numeric ID.

    Args:
        message_id: 8-bit (v1) or 24-bit (v2) message ID

    Returns:
        Message name, or ``UNKNOWN_MSG_<id>`` for unmapped IDs
    """
    name = MESSAGE_NAMES.get(message_id)
    if name is None:
        return f"UNKNOWN_MSG_{message_id}"
    return name


def get_all_message_types() -> Dict[int, str]:
    """Return a copy of the message id -> name table."""
    return dict(MESSAGE_NAMES)


def is_mavlink_frame(data: bytes) -> bool:
    """Check whether data starts with a MAVLink v1 or v2 magic byte."""
    return bool(data) and data[0] in (MAVLINK_V1_MAGIC, MAVLINK_V2_MAGIC)


def hex_preview(data: bytes, length: int) -> str:
    """Upper-case, space separated hex of at most ``length`` bytes."""
    return ' '.join(f'{byte:02X}' for byte in data[:max(length, 0)])


def _parse_header(data: bytes) -> Union[FrameHeader, DecodeError]:
    magic = data[0]

    if magic == MAVLINK_V1_MAGIC:
        return FrameHeader(
            version=MavlinkVersion.V1,
            payload_length=data[1],
            sequence=data[2],
            system_id=data[3],
            component_id=data[4],
            message_id=data[5],
        )

    if magic == MAVLINK_V2_MAGIC:
        if len(data) < V2_HEADER_LENGTH:
            # Message id bytes are missing, so no header can be reported
            expected = V2_HEADER_LENGTH + data[1] + CHECKSUM_LENGTH
            if data[2] & INCOMPAT_FLAG_SIGNED:
                expected += SIGNATURE_LENGTH
            return DecodeError(
                kind=DecodeErrorKind.TRUNCATED,
                message=f"Packet too short: expected {expected}, got {len(data)}",
                expected=expected,
                actual=len(data),
            )
        return FrameHeader(
            version=MavlinkVersion.V2,
            payload_length=data[1],
            incompat_flags=data[2],
            compat_flags=data[3],
            sequence=data[4],
            system_id=data[5],
            component_id=data[6],
            message_id=data[7] | (data[8] << 8) | (data[9] << 16),
        )

    return DecodeError(
        kind=DecodeErrorKind.INVALID_MAGIC,
        message=f"Invalid magic byte: 0x{magic:02X}",
        magic=magic,
    )


def decode_payload(message_id: int, payload: bytes):
    """
    Decode a payload into its typed summary.

    Args:
        message_id: Message ID selecting the payload layout
        payload: Payload bytes

    Returns:
        Tuple of (summary or None, DecodeError or None)
    """
    payload_type = PAYLOAD_TYPES.get(message_id)
    if payload_type is None:
        return UnknownPayload.from_message(message_id, payload), None

    try:
        return payload_type.from_bytes(payload), None
    except (ValueError, struct.error) as e:
        return None, DecodeError(
            kind=DecodeErrorKind.INVALID_PAYLOAD,
            message=f"Invalid payload for message {message_id}: {e}",
            message_id=message_id,
        )


def decode_packet(data: bytes) -> DecodedPacket:
    """
    Decode a single MAVLink frame.

    Never raises for malformed input; problems are reported through
    ``is_valid``, ``error`` and ``payload_error`` on the returned packet.

    Args:
        data: Raw datagram bytes

    Returns:
        DecodedPacket describing the frame
    """
    data = bytes(data or b'')
    length = len(data)

    if length < MIN_FRAME_LENGTH:
        return DecodedPacket(
            header=None,
            error=DecodeError(
                kind=DecodeErrorKind.TRUNCATED,
                message=f"Packet too short: expected {MIN_FRAME_LENGTH}, got {length}",
                expected=MIN_FRAME_LENGTH,
                actual=length,
            ),
            frame_length=length,
        )

    header = _parse_header(data)
    if isinstance(header, DecodeError):
        return DecodedPacket(header=None, error=header, frame_length=length)

    message_name = get_message_name(header.message_id)
    expected = header.expected_length

    if length < expected:
        return DecodedPacket(
            header=header,
            message_name=message_name,
            error=DecodeError(
                kind=DecodeErrorKind.TRUNCATED,
                message=f"Packet too short: expected {expected}, got {length}",
                expected=expected,
                actual=length,
            ),
            frame_length=length,
        )

    start = header.header_length
    payload = data[start:start + header.payload_length]
    fields, payload_error = decode_payload(header.message_id, payload)

    return DecodedPacket(
        header=header,
        payload=payload,
        message_name=message_name,
        fields=fields,
        is_valid=True,
        payload_error=payload_error,
        frame_length=length,
    )
