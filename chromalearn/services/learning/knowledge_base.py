"""
Pattern Knowledge Base

Versioned store of learned correction rules. Two independent families:

- ``patterns``: hue / saturation / lightness range rules carrying a LAB
  correction applied before matching against the reference palette.
- ``parent_patterns``: ``color_properties`` neighborhood rules naming the
  parent color a matching color should map to.

Rules grow from feedback: reinforcement adds 5 confidence, contradiction
removes 10, and confidence always stays within [0, 100].
"""

import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
from loguru import logger

from chromalearn.config import config
from chromalearn.services.colors.conversion import ColorInput, ColorSample, hue_distance, parse_color
from chromalearn.services.colors.matching import MatchResult, WeightVector
from chromalearn.services.colors.palettes import PaletteKind
from .feedback import FeedbackEntry, Verdict

REINFORCE_STEP = 5.0
CONTRADICT_STEP = 10.0
CONFIRMED_CONFIDENCE = 60.0
SUPERVISED_CONFIDENCE = 70.0
CORRECTION_LEARNING_RATE = 0.1

# Bucket edges for pattern mining
HUE_BUCKETS = [(0, 30), (30, 60), (60, 90), (90, 150), (150, 210), (210, 270), (270, 330), (330, 360)]
FRACTION_BUCKETS = [(0.0, 0.2), (0.2, 0.4), (0.4, 0.6), (0.6, 0.8), (0.8, 1.0)]
MIN_MINED_CORRECTION = 5.0


class PatternType(str, Enum):
    HUE = "hue"
    SATURATION = "saturation"
    LIGHTNESS = "lightness"
    COLOR_PROPERTIES = "color_properties"


class LabDelta(NamedTuple):
    """Correction applied to a color in LAB space."""
    l: float = 0.0
    a: float = 0.0
    b: float = 0.0

    @property
    def is_zero(self) -> bool:
        return self.l == 0.0 and self.a == 0.0 and self.b == 0.0


@dataclass
class RangeCondition:
    """Closed interval on one HSL dimension. For hue, ``low > high`` wraps through 0/360."""
    low: float
    high: float

    def contains(self, value: float, circular: bool = False) -> bool:
        if circular and self.low > self.high:
            return value >= self.low or value <= self.high
        return self.low <= value <= self.high

    def to_dict(self) -> Dict[str, float]:
        return {"min": self.low, "max": self.high}

    @classmethod
    def from_dict(cls, data: Union[Dict[str, Any], Sequence[float]]) -> "RangeCondition":
        if isinstance(data, dict):
            return cls(float(data["min"]), float(data["max"]))
        low, high = data
        return cls(float(low), float(high))


@dataclass
class NeighborhoodCondition:
    """HSL center with one tolerance per dimension; all three must hold."""
    hue: float
    saturation: float
    lightness: float
    hue_tolerance: float
    saturation_tolerance: float
    lightness_tolerance: float

    @classmethod
    def around(cls, sample: ColorSample) -> "NeighborhoodCondition":
        return cls(
            hue=sample.hsl.h,
            saturation=sample.hsl.s,
            lightness=sample.hsl.l,
            hue_tolerance=config.HUE_TOLERANCE,
            saturation_tolerance=config.SATURATION_TOLERANCE,
            lightness_tolerance=config.LIGHTNESS_TOLERANCE,
        )

    def contains(self, sample: ColorSample) -> bool:
        return (
            hue_distance(sample.hsl.h, self.hue) * 180.0 <= self.hue_tolerance
            and abs(sample.hsl.s - self.saturation) <= self.saturation_tolerance
            and abs(sample.hsl.l - self.lightness) <= self.lightness_tolerance
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "hue": self.hue,
            "hueRange": self.hue_tolerance,
            "saturation": self.saturation,
            "saturationRange": self.saturation_tolerance,
            "lightness": self.lightness,
            "lightnessRange": self.lightness_tolerance,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NeighborhoodCondition":
        return cls(
            hue=float(data["hue"]),
            saturation=float(data["saturation"]),
            lightness=float(data["lightness"]),
            hue_tolerance=float(data.get("hueRange", config.HUE_TOLERANCE)),
            saturation_tolerance=float(data.get("saturationRange", config.SATURATION_TOLERANCE)),
            lightness_tolerance=float(data.get("lightnessRange", config.LIGHTNESS_TOLERANCE)),
        )


Condition = Union[RangeCondition, NeighborhoodCondition]


def _clamp_confidence(value: float) -> float:
    return float(min(100.0, max(0.0, value)))


@dataclass
class Pattern:
    """A learned correction rule."""
    type: PatternType
    condition: Condition
    correction: LabDelta = field(default_factory=LabDelta)
    correct_parent: Optional[str] = None
    confidence: float = CONFIRMED_CONFIDENCE
    usage_count: int = 1
    sample_size: Optional[int] = None

    def __post_init__(self):
        self.confidence = _clamp_confidence(self.confidence)
        self.usage_count = max(0, int(self.usage_count))

    def covers(self, sample: ColorSample) -> bool:
        if self.type == PatternType.COLOR_PROPERTIES:
            return self.condition.contains(sample)
        if self.type == PatternType.HUE:
            # Grayscale hue is normalized to 0 and would otherwise land in red windows
            if sample.is_achromatic:
                return False
            return self.condition.contains(sample.hsl.h, circular=True)
        if self.type == PatternType.SATURATION:
            return self.condition.contains(sample.hsl.s)
        return self.condition.contains(sample.hsl.l)

    def reinforce(self, step: float = REINFORCE_STEP):
        self.confidence = _clamp_confidence(self.confidence + step)
        self.usage_count += 1

    def contradict(self, step: float = CONTRADICT_STEP):
        self.confidence = _clamp_confidence(self.confidence - step)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type.value,
            "condition": self.condition.to_dict(),
            "confidence": self.confidence,
            "usageCount": self.usage_count,
        }
        if self.type == PatternType.COLOR_PROPERTIES:
            data["correctParent"] = self.correct_parent
        else:
            data["correction"] = {"lab": self.correction._asdict()}
        if self.sample_size is not None:
            data["sampleSize"] = self.sample_size
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pattern":
        pattern_type = PatternType(data["type"])
        raw_condition = data["condition"]
        if pattern_type == PatternType.COLOR_PROPERTIES:
            condition = NeighborhoodCondition.from_dict(raw_condition)
        else:
            # Older records keep the range under "<dimension>Range"
            legacy_key = f"{pattern_type.value}Range"
            condition = RangeCondition.from_dict(raw_condition.get(legacy_key, raw_condition))

        lab = (data.get("correction") or {}).get("lab") or {}
        return cls(
            type=pattern_type,
            condition=condition,
            correction=LabDelta(float(lab.get("l", 0.0)), float(lab.get("a", 0.0)), float(lab.get("b", 0.0))),
            correct_parent=data.get("correctParent"),
            confidence=float(data.get("confidence", CONFIRMED_CONFIDENCE)),
            usage_count=int(data.get("usageCount", 0)),
            sample_size=data.get("sampleSize"),
        )


def _best_covering(patterns: Sequence[Pattern], sample: ColorSample,
                   min_confidence: Optional[float] = None) -> Optional[Pattern]:
    best = None
    for pattern in patterns:
        if not pattern.covers(sample):
            continue
        if min_confidence is not None and pattern.confidence <= min_confidence:
            continue
        if best is None or pattern.confidence > best.confidence:
            best = pattern
    return best


@dataclass
class KnowledgeBase:
    """Learned patterns plus the distance weights, versioned as one unit."""
    patterns: List[Pattern] = field(default_factory=list)
    parent_patterns: List[Pattern] = field(default_factory=list)
    parameters: WeightVector = field(default_factory=WeightVector)
    version: int = 1
    last_updated: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def default(cls) -> "KnowledgeBase":
        """Empty knowledge base with the default weights at version 1."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted JSON shape."""
        return {
            "patterns": [p.to_dict() for p in self.patterns],
            "parentPatterns": [p.to_dict() for p in self.parent_patterns],
            "parameters": self.parameters.to_dict(),
            "version": self.version,
            "lastUpdated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "KnowledgeBase":
        if not data:
            return cls.default()

        last_updated = data.get("lastUpdated")
        if isinstance(last_updated, str):
            last_updated = datetime.fromisoformat(last_updated.replace("Z", "+00:00"))

        return cls(
            patterns=[Pattern.from_dict(p) for p in data.get("patterns", [])],
            parent_patterns=[Pattern.from_dict(p) for p in data.get("parentPatterns", [])],
            parameters=WeightVector.from_dict(data.get("parameters")),
            version=int(math.floor(float(data.get("version", 1)))),
            last_updated=last_updated or datetime.utcnow(),
        )

    def find_correction_pattern(self, color: ColorInput,
                                threshold: Optional[float] = None) -> Optional[Pattern]:
        """
        Highest-confidence reference pattern covering the color with a non-zero
        correction and confidence above the threshold.
        """
        if threshold is None:
            threshold = config.PATTERN_CONFIDENCE_THRESHOLD
        sample = parse_color(color)
        candidates = [p for p in self.patterns if not p.correction.is_zero]
        return _best_covering(candidates, sample, threshold)

    def find_parent_pattern(self, color: ColorInput,
                            threshold: Optional[float] = None) -> Optional[Pattern]:
        """Highest-confidence parent pattern covering the color that names a parent."""
        if threshold is None:
            threshold = config.PATTERN_CONFIDENCE_THRESHOLD
        sample = parse_color(color)
        candidates = [p for p in self.parent_patterns if p.correct_parent]
        return _best_covering(candidates, sample, threshold)

    def mark_updated(self):
        """Record an accepted structural update."""
        self.version += 1
        self.last_updated = datetime.utcnow()


# ============================================================================
# FEEDBACK RULES
# ============================================================================

def _new_reference_pattern(sample: ColorSample, correction: LabDelta, confidence: float) -> Pattern:
    if sample.is_achromatic:
        tol = config.LIGHTNESS_TOLERANCE
        l = sample.hsl.l
        return Pattern(
            type=PatternType.LIGHTNESS,
            condition=RangeCondition(max(0.0, l - tol), min(1.0, l + tol)),
            correction=correction,
            confidence=confidence,
        )

    tol = config.HUE_TOLERANCE
    h = sample.hsl.h
    return Pattern(
        type=PatternType.HUE,
        condition=RangeCondition((h - tol) % 360.0, (h + tol) % 360.0),
        correction=correction,
        confidence=confidence,
    )


def update_reference_patterns(knowledge_base: KnowledgeBase,
                              sample: ColorSample,
                              verdict: Verdict,
                              target: Optional[ColorSample] = None) -> Optional[Pattern]:
    """
    Fold one reference-palette judgement into ``knowledge_base.patterns``.

    Returns the pattern that was touched, if any.
    """
    existing = _best_covering(knowledge_base.patterns, sample)

    if verdict == Verdict.GOOD:
        if existing is not None:
            existing.reinforce()
            return existing
        pattern = _new_reference_pattern(sample, LabDelta(), CONFIRMED_CONFIDENCE)
        knowledge_base.patterns.append(pattern)
        return pattern

    if target is None:
        if existing is not None:
            existing.contradict()
        return existing

    delta = LabDelta(
        target.lab.L - sample.lab.L,
        target.lab.a - sample.lab.a,
        target.lab.b - sample.lab.b,
    )
    if existing is not None:
        existing.correction = LabDelta(*(
            current + CORRECTION_LEARNING_RATE * step
            for current, step in zip(existing.correction, delta)
        ))
        existing.reinforce()
        return existing

    pattern = _new_reference_pattern(sample, delta, SUPERVISED_CONFIDENCE)
    knowledge_base.patterns.append(pattern)
    return pattern


def update_parent_patterns(knowledge_base: KnowledgeBase,
                           sample: ColorSample,
                           verdict: Verdict,
                           matched_parent: Optional[str] = None,
                           corrected_parent: Optional[str] = None) -> Optional[Pattern]:
    """
    Fold one parent-palette judgement into ``knowledge_base.parent_patterns``.

    Returns the pattern that was touched, if any.
    """
    existing = _best_covering(knowledge_base.parent_patterns, sample)

    if verdict == Verdict.GOOD:
        if existing is not None:
            existing.reinforce()
            return existing
        if not matched_parent:
            return None
        pattern = Pattern(
            type=PatternType.COLOR_PROPERTIES,
            condition=NeighborhoodCondition.around(sample),
            correct_parent=matched_parent,
            confidence=CONFIRMED_CONFIDENCE,
        )
        knowledge_base.parent_patterns.append(pattern)
        return pattern

    if not corrected_parent:
        if existing is not None:
            existing.contradict()
        return existing

    if existing is not None:
        existing.correct_parent = corrected_parent
        existing.reinforce()
        return existing

    pattern = Pattern(
        type=PatternType.COLOR_PROPERTIES,
        condition=NeighborhoodCondition.around(sample),
        correct_parent=corrected_parent,
        confidence=SUPERVISED_CONFIDENCE,
    )
    knowledge_base.parent_patterns.append(pattern)
    return pattern


def apply_feedback(knowledge_base: KnowledgeBase,
                   original_color: ColorInput,
                   match_result: Optional[MatchResult],
                   feedback: Union[Verdict, str],
                   correction: Optional[Union[ColorInput, str]] = None,
                   kind: PaletteKind = PaletteKind.REFERENCE) -> KnowledgeBase:
    """
    Apply a single judgement of a match to the knowledge base.

    Args:
        knowledge_base: Knowledge base to update (mutated and returned)
        original_color: The color that was matched
        match_result: The match being judged
        feedback: "good" or "bad"
        correction: For the reference family, the color the user wanted;
            for the parent family, the name of the correct parent color
        kind: Which pattern family to update

    Returns:
        The updated knowledge base. The version is not bumped here; batch
        processing bumps it once per fold.
    """
    verdict = Verdict(feedback)
    sample = parse_color(original_color)

    if kind == PaletteKind.PARENT:
        matched = match_result.reference_color.name if match_result is not None else None
        update_parent_patterns(knowledge_base, sample, verdict, matched, correction)
    else:
        target = parse_color(correction) if correction is not None else None
        update_reference_patterns(knowledge_base, sample, verdict, target)
    return knowledge_base


def _parent_verdict(entry: FeedbackEntry) -> Optional[Verdict]:
    if entry.parent_feedback is not None:
        return entry.parent_feedback
    if entry.parent_correction:
        return Verdict.BAD
    return None


def process_feedback_queue(knowledge_base: KnowledgeBase, queue: List[FeedbackEntry]) -> int:
    """
    Fold a queue of feedback entries through the pattern rules.

    Bumps the version once when anything was processed and clears ``queue``
    in place so the same entries cannot be applied twice.

    Returns:
        Number of entries processed
    """
    processed = 0
    for entry in queue:
        sample = entry.original_sample
        target = entry.user_correction.sample if entry.corrected else None
        update_reference_patterns(knowledge_base, sample, entry.reference_verdict, target)

        parent_verdict = _parent_verdict(entry)
        if parent_verdict is not None:
            update_parent_patterns(
                knowledge_base, sample, parent_verdict,
                matched_parent=entry.parent_match,
                corrected_parent=entry.parent_correction,
            )
        processed += 1

    queue.clear()
    if processed:
        knowledge_base.mark_updated()
        logger.bind(processed=processed, version=knowledge_base.version).info(
            f"Folded {processed} feedback entries into knowledge base"
        )
    return processed


# ============================================================================
# PATTERN MINING
# ============================================================================

def _bucket_of(value: float, buckets: Sequence[Tuple[float, float]]) -> Optional[Tuple[float, float]]:
    for low, high in buckets:
        if low <= value < high:
            return low, high
    # The top edge belongs to the last bucket
    if buckets and value == buckets[-1][1]:
        return buckets[-1]
    return None


def _mine_bucket(pattern_type: PatternType, bucket: Tuple[float, float],
                 entries: List[FeedbackEntry]) -> Optional[Pattern]:
    diffs = np.array([entry.metrics.lab_diff for entry in entries], dtype=np.float64)
    average = diffs.mean(axis=0)
    if not np.any(np.abs(average) > MIN_MINED_CORRECTION):
        return None

    avg_variance = float(np.mean(np.sum((diffs - average) ** 2, axis=1)))
    confidence = min(100.0, max(0.0, 100.0 - 5.0 * math.sqrt(avg_variance)))

    return Pattern(
        type=pattern_type,
        condition=RangeCondition(float(bucket[0]), float(bucket[1])),
        correction=LabDelta(float(average[0]), float(average[1]), float(average[2])),
        confidence=confidence,
        usage_count=0,
        sample_size=len(entries),
    )


def recognize_patterns(entries: Sequence[FeedbackEntry],
                       min_entries: Optional[int] = None) -> List[Pattern]:
    """
    Mine range patterns from consistent corrections across feedback entries.

    Entries are bucketed by hue, saturation and lightness of the original
    color. A bucket with enough entries whose average LAB correction exceeds
    5 in any channel becomes a pattern; tighter agreement gives higher
    confidence.

    Returns:
        Patterns sorted by confidence, highest first
    """
    if min_entries is None:
        min_entries = config.MIN_ENTRIES_FOR_PATTERN

    groups: Dict[Tuple[PatternType, Tuple[float, float]], List[FeedbackEntry]] = defaultdict(list)
    for entry in entries:
        hsl = entry.metrics.original_hsl
        if hsl.s > 0.0:
            hue_bucket = _bucket_of(hsl.h, HUE_BUCKETS)
            if hue_bucket is not None:
                groups[(PatternType.HUE, hue_bucket)].append(entry)
        saturation_bucket = _bucket_of(hsl.s, FRACTION_BUCKETS)
        if saturation_bucket is not None:
            groups[(PatternType.SATURATION, saturation_bucket)].append(entry)
        lightness_bucket = _bucket_of(hsl.l, FRACTION_BUCKETS)
        if lightness_bucket is not None:
            groups[(PatternType.LIGHTNESS, lightness_bucket)].append(entry)

    patterns = []
    for (pattern_type, bucket), bucket_entries in groups.items():
        if len(bucket_entries) < min_entries:
            continue
        pattern = _mine_bucket(pattern_type, bucket, bucket_entries)
        if pattern is not None:
            patterns.append(pattern)

    patterns.sort(key=lambda p: -p.confidence)
    return patterns


def merge_mined_patterns(knowledge_base: KnowledgeBase, mined: Sequence[Pattern]) -> int:
    """
    Merge mined patterns into ``knowledge_base.patterns``.

    A mined pattern replaces any existing pattern of the same type over the
    same range. The merged list is re-sorted by confidence.
    """
    if not mined:
        return 0

    def key(pattern: Pattern):
        return pattern.type, pattern.condition.low, pattern.condition.high

    mined_keys = {key(p) for p in mined}
    kept = [
        p for p in knowledge_base.patterns
        if p.type == PatternType.COLOR_PROPERTIES or key(p) not in mined_keys
    ]
    knowledge_base.patterns = sorted(kept + list(mined), key=lambda p: -p.confidence)
    return len(mined)
