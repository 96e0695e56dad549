"""Colour values and conversion to the LIFX 16-bit HSBK model."""

from __future__ import annotations

import colorsys
import string
from dataclasses import dataclass
from typing import Tuple

U16_MAX = 65535


def rescale(value: float, minimum: float, maximum: float) -> int:
    """Linearly map ``value`` from ``[minimum, maximum]`` onto ``[0, 65535]``."""

    if maximum <= minimum:
        raise ValueError("maximum must be greater than minimum")
    scaled = (value - minimum) * U16_MAX / (maximum - minimum)
    return max(0, min(U16_MAX, int(round(scaled))))


@dataclass(frozen=True)
class Color:
    """8-bit RGB colour as supplied by the application."""

    red: int
    green: int
    blue: int

    def __post_init__(self) -> None:
        for name in ("red", "green", "blue"):
            value = getattr(self, name)
            if not 0 <= value <= 255:
                raise ValueError(f"{name} must be between 0 and 255; got {value}.")

    @classmethod
    def from_hex(cls, value: str) -> "Color":
        """Parse ``ff3366``, ``#ff3366`` or the short ``#f36`` form."""

        normalized = value.strip().lstrip("#")
        if len(normalized) == 3:
            normalized = "".join(ch * 2 for ch in normalized)
        if len(normalized) != 6 or any(ch not in string.hexdigits for ch in normalized):
            raise ValueError(f"Colour must be a hex value like ff3366; got {value!r}.")
        return cls(
            int(normalized[0:2], 16),
            int(normalized[2:4], 16),
            int(normalized[4:6], 16),
        )

    def to_hex(self) -> str:
        return f"#{self.red:02x}{self.green:02x}{self.blue:02x}"

    def hsv(self) -> Tuple[float, float, float]:
        """Return hue in degrees ``[0, 360)`` with saturation and value in ``[0, 1]``."""

        h, s, v = colorsys.rgb_to_hsv(self.red / 255.0, self.green / 255.0, self.blue / 255.0)
        return h * 360.0, s, v


@dataclass(frozen=True)
class Hsbk:
    """Raw LIFX colour: 16-bit hue, saturation, brightness plus kelvin."""

    hue: int
    saturation: int
    brightness: int
    kelvin: int

    def __post_init__(self) -> None:
        # Bulbs report kelvin as a raw uint16, so snapshots may fall outside 1500-9000.
        for name in ("hue", "saturation", "brightness", "kelvin"):
            value = getattr(self, name)
            if not 0 <= value <= U16_MAX:
                raise ValueError(f"{name} must be between 0 and {U16_MAX}; got {value}.")

    @classmethod
    def from_color(cls, color: Color, kelvin: int) -> "Hsbk":
        """Convert an RGB colour, taking brightness from its HSV value."""

        hue, saturation, value = color.hsv()
        return cls(
            hue=rescale(hue, 0.0, 360.0),
            saturation=rescale(saturation, 0.0, 1.0),
            brightness=rescale(value, 0.0, 1.0),
            kelvin=kelvin,
        )

    @classmethod
    def from_color_brightness(cls, color: Color, brightness: int, kelvin: int) -> "Hsbk":
        """Take hue and saturation from ``color`` and use an explicit 16-bit brightness."""

        hue, saturation, _ = color.hsv()
        return cls(
            hue=rescale(hue, 0.0, 360.0),
            saturation=rescale(saturation, 0.0, 1.0),
            brightness=brightness,
            kelvin=kelvin,
        )
