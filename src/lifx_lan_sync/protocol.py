"""LIFX LAN packet encoding and decoding.

LIFX uses a binary UDP protocol on port 56700 with the HSBK colour model.
Protocol documentation: https://lan.developer.lifx.com/

Only the messages needed to discover bulbs, read their state and set their
colour are implemented here.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Dict, Optional

from .color import Hsbk

HEADER_SIZE = 36
HEADER_FORMAT = "<HHI8s6sBB8sH2s"

PROTOCOL_VERSION = 1024
DEFAULT_SOURCE = 0x4C494658  # "LIFX"

SERVICE_UDP = 1

# SetColor carries its transition time as a uint32 of milliseconds.
MAX_DURATION_MS = 0xFFFFFFFF

PRODUCTS: Dict[int, str] = {
    1: "LIFX Original 1000",
    3: "LIFX Color 650",
    10: "LIFX White 800",
    11: "LIFX White 800",
    18: "LIFX White 900 BR30",
    20: "LIFX Color 1000 BR30",
    22: "LIFX Color 1000",
    27: "LIFX A19",
    28: "LIFX BR30",
    29: "LIFX+ A19",
    30: "LIFX+ BR30",
    31: "LIFX Z",
}


class MessageType:
    """LIFX message type identifiers."""

    GET_SERVICE = 2
    STATE_SERVICE = 3
    GET_VERSION = 32
    STATE_VERSION = 33
    ACKNOWLEDGEMENT = 45
    LIGHT_GET = 101
    LIGHT_SET_COLOR = 102
    LIGHT_STATE = 107


class ProtocolError(ValueError):
    """Raised when a packet cannot be encoded or decoded."""


@dataclass(frozen=True)
class Packet:
    """Decoded LIFX packet header plus raw payload."""

    msg_type: int
    target: str
    source: int
    sequence: int
    tagged: bool
    ack_required: bool
    res_required: bool
    payload: bytes


@dataclass(frozen=True)
class LightState:
    """Full light state as reported by ``Light::State``."""

    hue: int
    saturation: int
    brightness: int
    kelvin: int
    power: bool
    label: str

    @property
    def hsbk(self) -> Hsbk:
        return Hsbk(self.hue, self.saturation, self.brightness, self.kelvin)

    def as_dict(self) -> Dict[str, object]:
        return {
            "hue": self.hue,
            "saturation": self.saturation,
            "brightness": self.brightness,
            "kelvin": self.kelvin,
            "power": self.power,
            "label": self.label,
        }


@dataclass(frozen=True)
class DeviceVersion:
    """Hardware identity reported by ``Device::StateVersion``."""

    vendor: int
    product: int
    version: int

    @property
    def product_name(self) -> str:
        return PRODUCTS.get(self.product, f"LIFX product {self.product}")


def mac_to_bytes(address: str) -> bytes:
    """Convert ``D0:73:D5:01:02:03`` into its 6 raw bytes."""

    parts = address.replace("-", ":").split(":")
    if len(parts) != 6:
        raise ProtocolError(f"MAC address must have 6 octets, got {address!r}")
    try:
        return bytes(int(part, 16) for part in parts)
    except ValueError as exc:
        raise ProtocolError(f"Invalid MAC address {address!r}") from exc


def bytes_to_mac(raw: bytes) -> str:
    return ":".join(f"{b:02X}" for b in raw[:6])


def _decode_label(raw: bytes) -> str:
    try:
        return raw.split(b"\x00", 1)[0].decode("utf-8")
    except UnicodeDecodeError:
        return ""


class LifxCodec:
    """Builds outgoing LIFX packets and parses replies.

    Packet layout:
    - 36-byte little-endian header (frame, frame address, protocol header)
    - variable payload depending on message type
    """

    def __init__(self, source: int = DEFAULT_SOURCE) -> None:
        self.source = source
        self._sequence = 0

    def next_sequence(self) -> int:
        """Get next sequence number and increment."""
        seq = self._sequence
        self._sequence = (self._sequence + 1) % 256
        return seq

    def build_packet(
        self,
        msg_type: int,
        payload: bytes = b"",
        *,
        target: Optional[str] = None,
        sequence: int = 0,
        ack_required: bool = False,
        res_required: bool = False,
    ) -> bytes:
        """Build a complete packet; ``target=None`` addresses every bulb."""

        tagged = target is None
        protocol_flags = PROTOCOL_VERSION | (1 << 12)  # addressable
        if tagged:
            protocol_flags |= 1 << 13
        target_field = b"\x00" * 8 if tagged else mac_to_bytes(target) + b"\x00\x00"

        flags = 0
        if res_required:
            flags |= 0x01
        if ack_required:
            flags |= 0x02

        header = struct.pack(
            HEADER_FORMAT,
            HEADER_SIZE + len(payload),
            protocol_flags,
            self.source,
            target_field,
            b"\x00" * 6,
            flags,
            sequence,
            b"\x00" * 8,
            msg_type,
            b"\x00" * 2,
        )
        return header + payload

    def decode(self, data: bytes) -> Packet:
        if len(data) < HEADER_SIZE:
            raise ProtocolError(f"Packet too short: {len(data)} bytes")
        (size, protocol_flags, source, target, _reserved6,
         flags, sequence, _reserved8, msg_type, _reserved2) = struct.unpack(
            HEADER_FORMAT, data[:HEADER_SIZE]
        )
        if protocol_flags & 0xFFF != PROTOCOL_VERSION:
            raise ProtocolError(f"Unexpected protocol number {protocol_flags & 0xFFF}")
        return Packet(
            msg_type=msg_type,
            target=bytes_to_mac(target),
            source=source,
            sequence=sequence,
            tagged=bool((protocol_flags >> 13) & 0x1),
            ack_required=bool(flags & 0x02),
            res_required=bool(flags & 0x01),
            payload=data[HEADER_SIZE:size] if size <= len(data) else data[HEADER_SIZE:],
        )

    # ===== Message Builders =====

    def get_service(self) -> bytes:
        return self.build_packet(MessageType.GET_SERVICE)

    def get_version(self, target: str, sequence: int) -> bytes:
        return self.build_packet(
            MessageType.GET_VERSION, target=target, sequence=sequence, res_required=True
        )

    def get_light_state(self, target: str, sequence: int) -> bytes:
        return self.build_packet(
            MessageType.LIGHT_GET, target=target, sequence=sequence, res_required=True
        )

    def set_color(self, target: str, sequence: int, color: Hsbk, duration_ms: int) -> bytes:
        if not 0 <= duration_ms <= MAX_DURATION_MS:
            raise ProtocolError(
                f"Transition duration must be between 0 and {MAX_DURATION_MS} ms; got {duration_ms}"
            )
        # reserved (1) + hue (2) + sat (2) + bri (2) + kelvin (2) + duration (4)
        payload = struct.pack(
            "<BHHHHI",
            0,
            color.hue,
            color.saturation,
            color.brightness,
            color.kelvin,
            duration_ms,
        )
        return self.build_packet(
            MessageType.LIGHT_SET_COLOR,
            payload,
            target=target,
            sequence=sequence,
            ack_required=True,
        )

    # ===== Message Parsers =====

    def parse_state_service(self, payload: bytes) -> tuple[int, int]:
        """Return ``(service, port)`` from a ``StateService`` payload."""
        if len(payload) < 5:
            raise ProtocolError(f"Invalid StateService payload size: {len(payload)}")
        service, port = struct.unpack("<BI", payload[:5])
        return service, port

    def parse_state_version(self, payload: bytes) -> DeviceVersion:
        if len(payload) < 12:
            raise ProtocolError(f"Invalid StateVersion payload size: {len(payload)}")
        vendor, product, version = struct.unpack("<III", payload[:12])
        return DeviceVersion(vendor=vendor, product=product, version=version)

    def parse_light_state(self, payload: bytes) -> LightState:
        if len(payload) < 52:
            raise ProtocolError(f"Invalid State payload size: {len(payload)}")
        (hue, sat, bri, kelvin, _reserved1, power,
         label_bytes, _reserved2) = struct.unpack("<HHHHhH32sQ", payload[:52])
        return LightState(
            hue=hue,
            saturation=sat,
            brightness=bri,
            kelvin=kelvin,
            power=power == 65535,
            label=_decode_label(label_bytes),
        )
