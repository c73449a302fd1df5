"""
Feedback records.

A FeedbackEntry is the append-only source of truth for both pattern learning
and weight optimization. Entries carry precomputed distance and component
metrics so batch jobs never have to re-derive them. Entries that name an
explicit parent correction also yield a TrainingExample for the hybrid model.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from loguru import logger

from chromalearn.schemas import FeedbackSubmission, parse_payload
from chromalearn.services.colors.conversion import HSL, LAB, ColorSample, delta_e
from chromalearn.services.colors.palettes import ReferenceColor, find_by_name
from chromalearn.utils.ids import generate_request_id


class Verdict(str, Enum):
    GOOD = "good"
    BAD = "bad"


def _lab_dict(lab: LAB) -> Dict[str, float]:
    return {"l": lab.L, "a": lab.a, "b": lab.b}


def _lab_from(data: Mapping[str, float]) -> LAB:
    return LAB(float(data["l"]), float(data["a"]), float(data["b"]))


def _hsl_dict(hsl: HSL) -> Dict[str, float]:
    return {"h": hsl.h, "s": hsl.s, "l": hsl.l}


def _hsl_from(data: Mapping[str, float]) -> HSL:
    return HSL(float(data["h"]), float(data["s"]), float(data["l"]))


@dataclass
class FeedbackMetrics:
    """Pairwise distances and component diffs recorded with each feedback entry."""
    system_distance: float      # original <-> system match
    user_distance: float        # original <-> user correction
    correction_distance: float  # system match <-> user correction
    original_lab: LAB
    system_lab: LAB
    user_lab: LAB
    lab_diff: LAB               # user - system
    original_hsl: HSL
    system_hsl: HSL
    user_hsl: HSL
    hsl_diff: HSL               # user - system, hue wrapped to [-180, 180)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "distances": {
                "system": self.system_distance,
                "user": self.user_distance,
                "correction": self.correction_distance,
            },
            "lab": {
                "original": _lab_dict(self.original_lab),
                "system": _lab_dict(self.system_lab),
                "user": _lab_dict(self.user_lab),
                "diff": _lab_dict(self.lab_diff),
            },
            "hsl": {
                "original": _hsl_dict(self.original_hsl),
                "system": _hsl_dict(self.system_hsl),
                "user": _hsl_dict(self.user_hsl),
                "diff": _hsl_dict(self.hsl_diff),
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedbackMetrics":
        distances, lab, hsl = data["distances"], data["lab"], data["hsl"]
        return cls(
            system_distance=float(distances["system"]),
            user_distance=float(distances["user"]),
            correction_distance=float(distances["correction"]),
            original_lab=_lab_from(lab["original"]),
            system_lab=_lab_from(lab["system"]),
            user_lab=_lab_from(lab["user"]),
            lab_diff=_lab_from(lab["diff"]),
            original_hsl=_hsl_from(hsl["original"]),
            system_hsl=_hsl_from(hsl["system"]),
            user_hsl=_hsl_from(hsl["user"]),
            hsl_diff=_hsl_from(hsl["diff"]),
        )


def compute_feedback_metrics(original: ColorSample,
                             system: ColorSample,
                             user: ColorSample) -> FeedbackMetrics:
    """Compute the distances and component diffs for one piece of feedback."""
    hue_diff = (user.hsl.h - system.hsl.h + 180.0) % 360.0 - 180.0
    return FeedbackMetrics(
        system_distance=delta_e(original, system),
        user_distance=delta_e(original, user),
        correction_distance=delta_e(system, user),
        original_lab=original.lab,
        system_lab=system.lab,
        user_lab=user.lab,
        lab_diff=LAB(user.lab.L - system.lab.L, user.lab.a - system.lab.a, user.lab.b - system.lab.b),
        original_hsl=original.hsl,
        system_hsl=system.hsl,
        user_hsl=user.hsl,
        hsl_diff=HSL(hue_diff, user.hsl.s - system.hsl.s, user.hsl.l - system.hsl.l),
    )


@dataclass
class FeedbackEntry:
    """One user judgement of a match, with its precomputed metrics."""
    original_color: str
    system_match: ReferenceColor
    user_correction: ReferenceColor
    metrics: FeedbackMetrics
    timestamp: datetime = field(default_factory=datetime.utcnow)
    id: str = field(default_factory=lambda: generate_request_id("fb"))
    feedback: Optional[Verdict] = None
    parent_feedback: Optional[Verdict] = None
    parent_match: Optional[str] = None
    parent_correction: Optional[str] = None

    @property
    def original_sample(self) -> ColorSample:
        return ColorSample.from_hex(self.original_color)

    @property
    def corrected(self) -> bool:
        """True when the user picked a different reference color than the system."""
        return self.user_correction.hex != self.system_match.hex

    @property
    def reference_verdict(self) -> Verdict:
        """Explicit verdict, or inferred from whether the user changed the match."""
        if self.feedback is not None:
            return self.feedback
        return Verdict.BAD if self.corrected else Verdict.GOOD

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "originalColor": self.original_color,
            "systemMatch": self.system_match.to_dict(),
            "userCorrection": self.user_correction.to_dict(),
            "metrics": self.metrics.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }
        if self.feedback is not None:
            data["feedback"] = self.feedback.value
        if self.parent_feedback is not None:
            data["parentFeedback"] = self.parent_feedback.value
        if self.parent_match:
            data["parentMatch"] = self.parent_match
        if self.parent_correction:
            data["parentCorrection"] = self.parent_correction
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedbackEntry":
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        return cls(
            id=data.get("id") or generate_request_id("fb"),
            original_color=data["originalColor"],
            system_match=ReferenceColor.from_dict(data["systemMatch"]),
            user_correction=ReferenceColor.from_dict(data["userCorrection"]),
            metrics=FeedbackMetrics.from_dict(data["metrics"]),
            timestamp=timestamp or datetime.utcnow(),
            feedback=Verdict(data["feedback"]) if data.get("feedback") else None,
            parent_feedback=Verdict(data["parentFeedback"]) if data.get("parentFeedback") else None,
            parent_match=data.get("parentMatch"),
            parent_correction=data.get("parentCorrection"),
        )


def validate_submission(payload: Dict[str, Any]) -> FeedbackSubmission:
    """
    Validate a raw submission payload.

    Raises:
        ColorValidationError: If originalColor, systemMatch.hex or userCorrection.hex
            are missing or malformed
    """
    return parse_payload(FeedbackSubmission, payload)


def create_feedback_entry(submission: FeedbackSubmission) -> FeedbackEntry:
    """Build a FeedbackEntry with computed metrics from a validated submission."""
    system = submission.system_match.to_reference()
    user = submission.user_correction.to_reference()
    original = ColorSample.from_hex(submission.original_color)

    return FeedbackEntry(
        original_color=original.hex,
        system_match=system,
        user_correction=user,
        metrics=compute_feedback_metrics(original, system.sample, user.sample),
        feedback=Verdict(submission.feedback) if submission.feedback else None,
        parent_feedback=Verdict(submission.parent_feedback) if submission.parent_feedback else None,
        parent_match=submission.parent_match,
        parent_correction=submission.parent_correction,
    )


@dataclass
class TrainingExample:
    """Supervised example for the hybrid correction model."""
    target_color: str
    correct_parent_index: int
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "targetColor": self.target_color,
            "correctParentColorIndex": self.correct_parent_index,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrainingExample":
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        return cls(
            target_color=data["targetColor"],
            correct_parent_index=int(data["correctParentColorIndex"]),
            timestamp=timestamp or datetime.utcnow(),
        )


def derive_training_example(entry: FeedbackEntry,
                            parent_palette: Sequence[ReferenceColor]) -> Optional[TrainingExample]:
    """
    Turn an explicit parent correction into a TrainingExample.

    Returns None when the entry has no parent correction or the named color
    is not in the parent palette.
    """
    if not entry.parent_correction:
        return None
    index = find_by_name(parent_palette, entry.parent_correction)
    if index is None:
        logger.warning(f"Parent correction '{entry.parent_correction}' is not in the parent palette")
        return None
    return TrainingExample(target_color=entry.original_color, correct_parent_index=index,
                           timestamp=entry.timestamp)


def entries_from_dicts(records: List[Dict[str, Any]]) -> List[FeedbackEntry]:
    """Deserialize stored entries, skipping malformed records."""
    entries = []
    for record in records:
        try:
            entries.append(FeedbackEntry.from_dict(record))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed feedback record: {e}")
    return entries
