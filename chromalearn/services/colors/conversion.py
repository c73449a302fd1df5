"""
Color Representation

Conversion between hex, RGB, HSL and CIE-LAB plus the perceptual distance
primitives used by every other component. A color is always carried as a
single immutable ``ColorSample``; loose inputs are rejected at the boundary.
"""

import colorsys
import math
import re
import warnings
from dataclasses import dataclass
from typing import Any, List, NamedTuple, Union

import numpy as np
from skimage.color import deltaE_ciede2000, lab2rgb, rgb2lab

from chromalearn.errors import ColorValidationError

_HEX_RE = re.compile(r"^#?([0-9A-Fa-f]{6}|[0-9A-Fa-f]{3})$")


class RGB(NamedTuple):
    r: int
    g: int
    b: int


class HSL(NamedTuple):
    """Hue in degrees [0, 360), saturation and lightness as fractions [0, 1]."""
    h: float
    s: float
    l: float


class LAB(NamedTuple):
    L: float
    a: float
    b: float


def is_valid_hex(value: Any) -> bool:
    """Return True for ``#RRGGBB``/``#RGB`` strings (leading ``#`` optional)."""
    return isinstance(value, str) and bool(_HEX_RE.match(value.strip()))


def normalize_hex(value: Any) -> str:
    """
    Normalize a hex color to upper-case ``#RRGGBB``.

    Raises:
        ColorValidationError: If the value is not a hex color string
    """
    if not is_valid_hex(value):
        raise ColorValidationError(f"Invalid hex color: {value!r}")
    digits = value.strip().lstrip("#")
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return f"#{digits.upper()}"


def hex_to_rgb(hex_color: str) -> RGB:
    """Convert hex color string to an RGB tuple."""
    digits = normalize_hex(hex_color)[1:]
    return RGB(*(int(digits[i:i + 2], 16) for i in (0, 2, 4)))


def rgb_to_hex(r: int, g: int, b: int) -> str:
    """Convert 0-255 channel values to a hex color string."""
    r, g, b = (int(np.clip(round(float(v)), 0, 255)) for v in (r, g, b))
    return f"#{r:02X}{g:02X}{b:02X}"


def normalize_hsl(h: float, s: float, l: float) -> HSL:
    """
    Replace undefined HSL components with 0.

    Grayscale colors have no hue (and black/white no saturation); some
    converters report NaN for those. Every HSL value in the engine passes
    through here immediately after conversion.
    """
    h = 0.0 if h is None or math.isnan(h) else float(h) % 360.0
    s = 0.0 if s is None or math.isnan(s) else float(s)
    l = 0.0 if l is None or math.isnan(l) else float(l)
    return HSL(h, s, l)


def rgb_to_hsl(r: int, g: int, b: int) -> HSL:
    """Convert 0-255 RGB to normalized HSL."""
    h, l, s = colorsys.rgb_to_hls(r / 255.0, g / 255.0, b / 255.0)
    return normalize_hsl(h * 360.0, s, l)


def rgb_array_to_lab(pixels_rgb_u8: np.ndarray) -> np.ndarray:
    """Convert an (N, 3) uint8 RGB array to an (N, 3) float64 LAB array."""
    if len(pixels_rgb_u8) == 0:
        return np.zeros((0, 3), dtype=np.float64)
    rgb01 = pixels_rgb_u8.reshape(-1, 1, 3).astype(np.float64) / 255.0
    return rgb2lab(rgb01).reshape(-1, 3)


def lab_array_to_rgb(lab: np.ndarray) -> np.ndarray:
    """Convert an (N, 3) LAB array to (N, 3) uint8 RGB, clipping out-of-gamut values."""
    if len(lab) == 0:
        return np.zeros((0, 3), dtype=np.uint8)
    with warnings.catch_warnings():
        # lab2rgb warns when it clips negative Z; clipping is the intent here
        warnings.simplefilter("ignore")
        rgb01 = lab2rgb(np.asarray(lab, dtype=np.float64).reshape(-1, 1, 3)).reshape(-1, 3)
    return np.clip(np.round(rgb01 * 255.0), 0, 255).astype(np.uint8)


@dataclass(frozen=True)
class ColorSample:
    """A color with its derived RGB, HSL and LAB representations."""
    hex: str
    rgb: RGB
    hsl: HSL
    lab: LAB

    @classmethod
    def from_hex(cls, hex_color: str) -> "ColorSample":
        hex_norm = normalize_hex(hex_color)
        return cls.from_rgb(*hex_to_rgb(hex_norm))

    @classmethod
    def from_rgb(cls, r: int, g: int, b: int) -> "ColorSample":
        for channel in (r, g, b):
            if isinstance(channel, bool) or not isinstance(channel, (int, np.integer)) or not 0 <= channel <= 255:
                raise ColorValidationError(f"RGB channels must be integers in 0-255, got {(r, g, b)}")
        rgb = RGB(int(r), int(g), int(b))
        lab = rgb_array_to_lab(np.array([rgb], dtype=np.uint8))[0]
        return cls(
            hex=rgb_to_hex(*rgb),
            rgb=rgb,
            hsl=rgb_to_hsl(*rgb),
            lab=LAB(float(lab[0]), float(lab[1]), float(lab[2])),
        )

    @classmethod
    def from_lab(cls, L: float, a: float, b: float) -> "ColorSample":
        """Build a sample from LAB; the result is snapped to the nearest sRGB color."""
        rgb = lab_array_to_rgb(np.array([[L, a, b]]))[0]
        return cls.from_rgb(int(rgb[0]), int(rgb[1]), int(rgb[2]))

    def adjusted(self, dL: float, da: float, db: float) -> "ColorSample":
        """Return this color shifted by a LAB delta."""
        return ColorSample.from_lab(self.lab.L + dL, self.lab.a + da, self.lab.b + db)

    @property
    def is_achromatic(self) -> bool:
        return self.hsl.s == 0.0

    def features(self) -> List[float]:
        """Nine normalized scalars: RGB, HSL, LAB each scaled to roughly [0, 1]."""
        return [
            self.rgb.r / 255.0, self.rgb.g / 255.0, self.rgb.b / 255.0,
            self.hsl.h / 360.0, self.hsl.s, self.hsl.l,
            self.lab.L / 100.0, (self.lab.a + 128.0) / 255.0, (self.lab.b + 128.0) / 255.0,
        ]

    def to_dict(self) -> dict:
        return {
            "hex": self.hex,
            "rgb": {"r": self.rgb.r, "g": self.rgb.g, "b": self.rgb.b},
            "hsl": {"h": self.hsl.h, "s": self.hsl.s, "l": self.hsl.l},
            "lab": {"L": self.lab.L, "a": self.lab.a, "b": self.lab.b},
        }


ColorInput = Union[str, ColorSample]


def parse_color(value: ColorInput) -> ColorSample:
    """
    Coerce a boundary input into a ColorSample.

    Only hex strings and existing samples are accepted; anything else is
    ambiguous and rejected.
    """
    if isinstance(value, ColorSample):
        return value
    if isinstance(value, str):
        return ColorSample.from_hex(value)
    raise ColorValidationError(f"Unsupported color input type: {type(value).__name__}")


def delta_e(color1: ColorSample, color2: ColorSample) -> float:
    """CIEDE2000 color difference between two samples."""
    lab1 = np.array(color1.lab, dtype=np.float64)
    lab2 = np.array(color2.lab, dtype=np.float64)
    return float(deltaE_ciede2000(lab1, lab2))


def lab_distance(color1: ColorSample, color2: ColorSample) -> float:
    """Euclidean distance in LAB space (CIE76)."""
    return float(math.sqrt(sum((p - q) ** 2 for p, q in zip(color1.lab, color2.lab))))


def hue_distance(h1: float, h2: float) -> float:
    """Circular hue difference normalized to [0, 1]."""
    diff = abs(h1 - h2) % 360.0
    return min(diff, 360.0 - diff) / 180.0
