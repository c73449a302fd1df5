"""
Weighted Distance Matcher

Multi-component color distance (CIEDE2000, LAB Euclidean, circular hue,
saturation, lightness) with tunable weights, and nearest-reference search
that honours learned correction patterns from the knowledge base.
"""

import time
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence, Tuple

import numpy as np
from loguru import logger
from skimage.color import deltaE_ciede2000

from chromalearn.config import config
from chromalearn.errors import EmptyPaletteError
from chromalearn.utils.metrics import get_metrics
from .conversion import ColorInput, ColorSample, delta_e, parse_color
from .palettes import PaletteKind, ReferenceColor, find_by_name

if TYPE_CHECKING:
    from chromalearn.services.learning.knowledge_base import KnowledgeBase

# Persisted (camelCase) name -> attribute name, in component order
_WEIGHT_KEYS = {
    "deltaEWeight": "delta_e_weight",
    "labWeight": "lab_weight",
    "hueWeight": "hue_weight",
    "saturationWeight": "saturation_weight",
    "lightnessWeight": "lightness_weight",
}


@dataclass
class WeightVector:
    """Coefficients of the weighted distance metric."""
    delta_e_weight: float = 0.7
    lab_weight: float = 0.3
    hue_weight: float = 1.0
    saturation_weight: float = 1.0
    lightness_weight: float = 1.0

    BOUNDS = {
        "delta_e_weight": (0.1, 0.9),
        "lab_weight": (0.1, 0.9),
        "hue_weight": (0.1, 3.0),
        "saturation_weight": (0.1, 3.0),
        "lightness_weight": (0.1, 3.0),
    }

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    def as_array(self) -> np.ndarray:
        return np.array([getattr(self, name) for name in self.field_names()], dtype=np.float64)

    @classmethod
    def from_array(cls, values: Sequence[float]) -> "WeightVector":
        return cls(*(float(v) for v in values))

    def within_bounds(self) -> bool:
        return all(lo <= getattr(self, name) <= hi for name, (lo, hi) in self.BOUNDS.items())

    def clamped(self) -> "WeightVector":
        return WeightVector(**{
            name: float(min(hi, max(lo, getattr(self, name))))
            for name, (lo, hi) in self.BOUNDS.items()
        })

    def to_dict(self) -> Dict[str, float]:
        """Serialize with the persisted camelCase keys."""
        values = asdict(self)
        return {key: values[attr] for key, attr in _WEIGHT_KEYS.items()}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "WeightVector":
        """Load from persisted keys; missing keys take the defaults."""
        defaults = cls()
        data = data or {}
        return cls(**{
            attr: float(data.get(key, getattr(defaults, attr)))
            for key, attr in _WEIGHT_KEYS.items()
        })


class MatchMethod(str, Enum):
    MATHEMATICAL = "mathematical"
    PATTERN = "pattern"
    ML_CORRECTION = "ml_correction"


@dataclass
class MatchResult:
    """Outcome of matching one color against a palette."""
    reference_color: ReferenceColor
    index: int
    distance: float
    confidence: float
    method: MatchMethod = MatchMethod.MATHEMATICAL
    weighted_distance: Optional[float] = None
    overridden: bool = False
    adjusted_color: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "referenceColor": self.reference_color.to_dict(),
            "index": self.index,
            "distance": self.distance,
            "confidence": self.confidence,
            "method": self.method.value,
            "overridden": self.overridden,
        }
        if self.weighted_distance is not None:
            data["weightedDistance"] = self.weighted_distance
        if self.adjusted_color is not None:
            data["adjustedColor"] = self.adjusted_color
        return data


def confidence_from_distance(distance: float, threshold: float = None) -> float:
    """
    Map a distance to a 0-100 confidence, rounded to 2 decimals.

    Zero distance gives 100; ``threshold`` and beyond give 0.
    """
    if threshold is None:
        threshold = config.CONFIDENCE_DISTANCE_THRESHOLD
    score = max(0.0, 100.0 - (distance / threshold) * 100.0)
    return round(min(100.0, score), 2)


def distance_components(color1: ColorSample, color2: ColorSample) -> np.ndarray:
    """
    Unweighted distance components between two colors.

    Returns:
        [deltaE2000, LAB euclidean, hue (0-1), |saturation diff|, |lightness diff|]
    """
    return palette_distance_components(color1, [color2])[0]


def palette_distance_components(color: ColorSample, targets: Sequence[ColorSample]) -> np.ndarray:
    """Distance components from one color to each target, shape (M, 5)."""
    if len(targets) == 0:
        return np.zeros((0, 5), dtype=np.float64)

    lab_targets = np.array([t.lab for t in targets], dtype=np.float64)
    hsl_targets = np.array([t.hsl for t in targets], dtype=np.float64)
    lab = np.array(color.lab, dtype=np.float64)

    delta_e2000 = deltaE_ciede2000(np.tile(lab, (len(lab_targets), 1)), lab_targets)
    lab_euclid = np.sqrt(np.sum((lab_targets - lab) ** 2, axis=1))

    hue_diff = np.abs(hsl_targets[:, 0] - color.hsl.h) % 360.0
    hue = np.minimum(hue_diff, 360.0 - hue_diff) / 180.0
    saturation = np.abs(hsl_targets[:, 1] - color.hsl.s)
    lightness = np.abs(hsl_targets[:, 2] - color.hsl.l)

    return np.column_stack([delta_e2000, lab_euclid, hue, saturation, lightness])


def weighted_distance(color1: ColorSample, color2: ColorSample, weights: WeightVector = None) -> float:
    """Weighted sum of the five distance components."""
    weights = weights or WeightVector()
    return float(distance_components(color1, color2) @ weights.as_array())


def nearest_reference(color: ColorSample,
                      palette: Sequence[ReferenceColor],
                      weights: WeightVector = None) -> Tuple[int, float]:
    """
    Index of the palette entry with the smallest weighted distance, and that distance.

    Ties resolve to the earliest entry.

    Raises:
        EmptyPaletteError: If the palette is empty
    """
    if not palette:
        raise EmptyPaletteError("Cannot match against an empty reference palette")
    weights = weights or WeightVector()
    components = palette_distance_components(color, [ref.sample for ref in palette])
    distances = components @ weights.as_array()
    index = int(np.argmin(distances))
    return index, float(distances[index])


def match(color: ColorInput,
          palette: Sequence[ReferenceColor],
          knowledge_base: Optional["KnowledgeBase"] = None,
          kind: PaletteKind = PaletteKind.REFERENCE,
          threshold: float = None,
          record_metrics: bool = True) -> MatchResult:
    """
    Find the closest palette entry to a color.

    Against a reference palette, a qualifying hue/saturation/lightness pattern
    shifts the color in LAB before the search. Against a parent palette, a
    qualifying parent pattern names the answer directly. Otherwise the nearest
    entry by weighted distance wins.

    Args:
        color: Hex string or ColorSample
        palette: Non-empty reference palette
        knowledge_base: Source of weights and patterns (defaults when None)
        kind: Which pattern family applies
        threshold: Distance at which confidence drops to 0
        record_metrics: Count the request and its timing in the metrics collector

    Returns:
        MatchResult whose ``distance`` is CIEDE2000 from the input color

    Raises:
        EmptyPaletteError: If the palette is empty
        ColorValidationError: If the color is malformed
    """
    if not palette:
        raise EmptyPaletteError("Cannot match against an empty reference palette")

    start_time = time.time()
    sample = parse_color(color)
    weights = knowledge_base.parameters if knowledge_base is not None else WeightVector()

    result = None
    if knowledge_base is not None and kind == PaletteKind.PARENT:
        result = _match_parent_override(sample, palette, knowledge_base, threshold)

    if result is None:
        search_color = sample
        method = MatchMethod.MATHEMATICAL
        adjusted_hex = None

        if knowledge_base is not None and kind == PaletteKind.REFERENCE:
            pattern = knowledge_base.find_correction_pattern(sample)
            if pattern is not None and pattern.correction is not None:
                search_color = sample.adjusted(*pattern.correction)
                method = MatchMethod.PATTERN
                adjusted_hex = search_color.hex
                logger.debug(f"Pattern {pattern.type.value} adjusted {sample.hex} -> {adjusted_hex}")

        index, weighted = nearest_reference(search_color, palette, weights)
        reference = palette[index]
        distance = delta_e(sample, reference.sample)
        result = MatchResult(
            reference_color=reference,
            index=index,
            distance=distance,
            confidence=confidence_from_distance(distance, threshold),
            method=method,
            weighted_distance=weighted,
            adjusted_color=adjusted_hex,
        )

    if record_metrics:
        metrics = get_metrics()
        metrics.increment_match_method(result.method.value)
        metrics.record_timing("matching", (time.time() - start_time) * 1000)
    return result


def _match_parent_override(sample: ColorSample,
                           palette: Sequence[ReferenceColor],
                           knowledge_base: "KnowledgeBase",
                           threshold: Optional[float]) -> Optional[MatchResult]:
    pattern = knowledge_base.find_parent_pattern(sample)
    if pattern is None or not pattern.correct_parent:
        return None

    index = find_by_name(palette, pattern.correct_parent)
    if index is None:
        logger.warning(f"Parent pattern names '{pattern.correct_parent}' which is not in the palette")
        return None

    reference = palette[index]
    distance = delta_e(sample, reference.sample)
    return MatchResult(
        reference_color=reference,
        index=index,
        distance=distance,
        confidence=confidence_from_distance(distance, threshold),
        method=MatchMethod.PATTERN,
        weighted_distance=weighted_distance(sample, reference.sample, knowledge_base.parameters),
        overridden=True,
    )
