"""
Hybrid Correction Model

A small neural classifier over the parent palette that may override the
deterministic parent match. Its input pairs the target color with the
deterministic match, so it learns when the metric picks wrong rather than
classifying colors in isolation.

The neural-network backend is capability-gated by
``config.ENABLE_NEURAL_NETWORK``. Unavailable and untrained behave the same:
matching falls back to the deterministic result.
"""

import io
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import joblib
import numpy as np
from loguru import logger

from chromalearn.config import config
from chromalearn.services.colors.conversion import ColorInput, ColorSample, delta_e, parse_color
from chromalearn.services.colors.matching import (
    MatchMethod, MatchResult, WeightVector, match, weighted_distance,
)
from chromalearn.services.colors.palettes import PaletteKind, ReferenceColor
from chromalearn.utils.metrics import get_metrics
from .feedback import TrainingExample
from .knowledge_base import KnowledgeBase

HIDDEN_LAYERS = (32, 24)
FEATURE_COUNT = 18


@dataclass
class TrainingStats:
    """Running statistics over training runs."""
    total_trainings: int = 0
    examples_trained: int = 0
    last_training_duration_ms: Optional[float] = None
    last_training_date: Optional[datetime] = None
    last_loss: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalTrainings": self.total_trainings,
            "examplesTrained": self.examples_trained,
            "lastTrainingDurationMs": self.last_training_duration_ms,
            "lastTrainingDate": self.last_training_date.isoformat() if self.last_training_date else None,
            "lastLoss": self.last_loss,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TrainingStats":
        data = data or {}
        date = data.get("lastTrainingDate")
        return cls(
            total_trainings=int(data.get("totalTrainings", 0)),
            examples_trained=int(data.get("examplesTrained", 0)),
            last_training_duration_ms=data.get("lastTrainingDurationMs"),
            last_training_date=datetime.fromisoformat(date) if date else None,
            last_loss=data.get("lastLoss"),
        )


def build_features(target: ColorSample, reference: ColorSample) -> np.ndarray:
    """18 normalized scalars: target color features then deterministic-match features."""
    return np.array(target.features() + reference.features(), dtype=np.float64)


class HybridCorrectionModel:
    """Deterministic parent matching with an optional learned override."""

    def __init__(self,
                 parent_palette: Sequence[ReferenceColor],
                 enabled: bool = None,
                 correction_threshold: float = None,
                 epochs: int = None,
                 batch_size: int = None,
                 learning_rate: float = None,
                 rng_seed: Optional[int] = None):
        self.parent_palette = list(parent_palette)
        self.enabled = config.ENABLE_NEURAL_NETWORK if enabled is None else enabled
        self.correction_threshold = (
            config.CORRECTION_THRESHOLD if correction_threshold is None else correction_threshold
        )
        self.epochs = epochs or config.TRAINING_EPOCHS
        self.batch_size = batch_size or config.TRAINING_BATCH_SIZE
        self.learning_rate = learning_rate or config.LEARNING_RATE
        self.rng_seed = config.RANDOM_SEED if rng_seed is None else rng_seed

        self.stats = TrainingStats()
        self.examples: List[TrainingExample] = []
        self._classifier = None

    def is_available(self) -> bool:
        """Whether the neural backend is enabled for this deployment."""
        return bool(self.enabled)

    @property
    def is_trained(self) -> bool:
        return self._classifier is not None

    def _build_classifier(self, batch_size: int):
        # Heavy import deferred until the capability is actually used
        from sklearn.neural_network import MLPClassifier

        return MLPClassifier(
            hidden_layer_sizes=HIDDEN_LAYERS,
            activation="relu",
            solver="adam",
            learning_rate_init=self.learning_rate,
            batch_size=batch_size,
            random_state=self.rng_seed,
        )

    def _deterministic_match(self, sample: ColorSample,
                             knowledge_base: Optional[KnowledgeBase],
                             threshold: float = None,
                             record_metrics: bool = True) -> MatchResult:
        return match(sample, self.parent_palette, knowledge_base, PaletteKind.PARENT,
                     threshold, record_metrics=record_metrics)

    def _feature_matrix(self, examples: Sequence[TrainingExample],
                        knowledge_base: Optional[KnowledgeBase]) -> np.ndarray:
        # Same deterministic match the override gate sees at inference
        rows = []
        for example in examples:
            target = ColorSample.from_hex(example.target_color)
            deterministic = self._deterministic_match(target, knowledge_base, record_metrics=False)
            rows.append(build_features(target, deterministic.reference_color.sample))
        return np.array(rows, dtype=np.float64).reshape(-1, FEATURE_COUNT)

    def train(self, examples: Sequence[TrainingExample],
              knowledge_base: Optional[KnowledgeBase] = None) -> Optional[TrainingStats]:
        """
        Train on examples labelled with the correct parent index.

        Features pair each target with its deterministic parent match under
        ``knowledge_base``, parent patterns included.

        Returns None without training when the model is unavailable, there are
        no usable examples or the parent palette is empty.
        """
        if not self.is_available():
            logger.debug("Hybrid model unavailable, skipping training")
            return None
        if not self.parent_palette:
            logger.warning("Cannot train hybrid model without a parent palette")
            return None

        palette_size = len(self.parent_palette)
        usable = [e for e in examples if 0 <= e.correct_parent_index < palette_size]
        if len(usable) < len(examples):
            logger.warning(f"Dropped {len(examples) - len(usable)} examples with out-of-range parent indices")
        if not usable:
            logger.info("No training examples, skipping hybrid model training")
            return None

        start_time = time.time()
        X = self._feature_matrix(usable, knowledge_base)
        y = np.array([e.correct_parent_index for e in usable], dtype=np.int64)
        classes = np.arange(palette_size)

        classifier = self._build_classifier(min(self.batch_size, len(usable)))
        rng = np.random.default_rng(self.rng_seed)
        for _ in range(self.epochs):
            order = rng.permutation(len(usable))
            classifier.partial_fit(X[order], y[order], classes=classes)

        self._classifier = classifier
        self.examples = list(usable)

        duration_ms = (time.time() - start_time) * 1000
        self.stats.total_trainings += 1
        self.stats.examples_trained += len(usable)
        self.stats.last_training_duration_ms = duration_ms
        self.stats.last_training_date = datetime.utcnow()
        self.stats.last_loss = float(classifier.loss_)

        metrics = get_metrics()
        metrics.increment_counter("model_trainings_total")
        metrics.record_timing("training", duration_ms)
        logger.bind(examples=len(usable), loss=self.stats.last_loss).info(
            f"Trained hybrid model in {duration_ms:.1f}ms"
        )
        return self.stats

    def predict(self, target: ColorSample, math_index: int) -> np.ndarray:
        """Probability over every parent color, indexed like the parent palette."""
        features = build_features(target, self.parent_palette[math_index].sample)[None, :]
        proba = self._classifier.predict_proba(features)[0]
        distribution = np.zeros(len(self.parent_palette), dtype=np.float64)
        distribution[np.asarray(self._classifier.classes_, dtype=np.int64)] = proba
        return distribution

    def match(self, color: ColorInput,
              knowledge_base: Optional[KnowledgeBase] = None,
              threshold: float = None) -> MatchResult:
        """
        Match against the parent palette, letting the model override only when
        it is confident and disagrees with the deterministic choice.
        """
        sample = parse_color(color)
        deterministic = self._deterministic_match(sample, knowledge_base, threshold)

        if not (self.is_available() and self.is_trained):
            return deterministic

        distribution = self.predict(sample, deterministic.index)
        ml_index = int(np.argmax(distribution))
        ml_confidence = float(distribution[ml_index])

        if ml_confidence <= self.correction_threshold or ml_index == deterministic.index:
            return deterministic

        reference = self.parent_palette[ml_index]
        weights = knowledge_base.parameters if knowledge_base is not None else WeightVector()
        get_metrics().record_override(MatchMethod.ML_CORRECTION.value)
        logger.debug(
            f"Hybrid model overrode {deterministic.reference_color.name} with {reference.name} "
            f"({ml_confidence:.2f})"
        )
        return MatchResult(
            reference_color=reference,
            index=ml_index,
            distance=delta_e(sample, reference.sample),
            confidence=round(ml_confidence * 100.0, 2),
            method=MatchMethod.ML_CORRECTION,
            weighted_distance=weighted_distance(sample, reference.sample, weights),
            overridden=True,
        )

    def to_blob(self) -> bytes:
        """Serialize classifier, examples and statistics for external storage."""
        payload = {
            "palette": [color.name for color in self.parent_palette],
            "classifier": self._classifier,
            "examples": [e.to_dict() for e in self.examples],
            "stats": self.stats.to_dict(),
        }
        buffer = io.BytesIO()
        joblib.dump(payload, buffer)
        return buffer.getvalue()

    def load_blob(self, blob: Optional[bytes]) -> bool:
        """
        Restore state saved by ``to_blob``.

        A blob trained against a different parent palette restores examples
        and statistics but leaves the model untrained.
        """
        if not blob:
            return False

        payload = joblib.load(io.BytesIO(blob))
        self.examples = [TrainingExample.from_dict(e) for e in payload.get("examples", [])]
        self.stats = TrainingStats.from_dict(payload.get("stats"))

        palette_names = [color.name for color in self.parent_palette]
        if payload.get("palette") != palette_names:
            logger.warning("Stored hybrid model was trained on a different parent palette, ignoring weights")
            self._classifier = None
            return False

        self._classifier = payload.get("classifier")
        return self.is_trained
