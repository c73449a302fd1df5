"""
Unit tests for the hybrid correction model.

The override gate is exercised with a stub classifier so the tests do not
depend on what a small network happens to learn.
"""
import numpy as np
import pytest

from chromalearn.services.colors.conversion import ColorSample
from chromalearn.services.colors.matching import MatchMethod, match
from chromalearn.services.colors.palettes import PaletteKind, build_palette
from chromalearn.services.learning.feedback import TrainingExample
from chromalearn.services.learning.hybrid import (
    FEATURE_COUNT, HybridCorrectionModel, TrainingStats, build_features,
)
from chromalearn.services.learning.knowledge_base import KnowledgeBase, apply_feedback


class StubClassifier:
    """Returns a fixed distribution for every input."""

    def __init__(self, distribution):
        self.distribution = np.asarray(distribution, dtype=np.float64)
        self.classes_ = np.arange(len(self.distribution))

    def predict_proba(self, X):
        return np.tile(self.distribution, (len(X), 1))


def examples():
    return [
        TrainingExample(target_color="#CC3333", correct_parent_index=0),
        TrainingExample(target_color="#3333CC", correct_parent_index=1),
        TrainingExample(target_color="#33AA33", correct_parent_index=2),
        TrainingExample(target_color="#777777", correct_parent_index=3),
        TrainingExample(target_color="#AA2020", correct_parent_index=0),
    ]


@pytest.fixture
def model(parent_palette):
    return HybridCorrectionModel(parent_palette, enabled=True, rng_seed=42)


class TestFeatures:
    """Test the classifier input"""

    def test_feature_vector(self):
        features = build_features(ColorSample.from_hex("#112233"), ColorSample.from_hex("#0000CC"))
        assert features.shape == (FEATURE_COUNT,)
        assert np.all(features >= -0.01) and np.all(features <= 1.01)


class TestOverrideGate:
    """Test when the model may replace the deterministic match"""

    def test_agreeing_model_keeps_deterministic(self, model):
        model._classifier = StubClassifier([0.02, 0.95, 0.02, 0.01])
        result = model.match("#0000CC")
        assert result.index == 1
        assert result.method == MatchMethod.MATHEMATICAL
        assert result.overridden is False

    def test_confident_agreement_on_third_entry(self, model):
        model._classifier = StubClassifier([0.01, 0.02, 0.95, 0.02])
        result = model.match("#00AA00")
        assert result.index == 2
        assert result.reference_color.name == "Green"
        assert result.method == MatchMethod.MATHEMATICAL

    def test_confident_disagreement_overrides(self, model, reset_metrics):
        model._classifier = StubClassifier([0.95, 0.02, 0.02, 0.01])
        result = model.match("#0000CC")

        assert result.index == 0
        assert result.reference_color.name == "Red"
        assert result.method == MatchMethod.ML_CORRECTION
        assert result.confidence == 95.0
        assert result.overridden is True
        assert result.distance > 0
        assert reset_metrics.get_counters()["match_method_total_ml_correction"] == 1

    def test_threshold_is_exclusive(self, model):
        model._classifier = StubClassifier([0.7, 0.1, 0.1, 0.1])
        result = model.match("#0000CC")
        assert result.index == 1
        assert result.method == MatchMethod.MATHEMATICAL

    def test_unavailable_model_is_deterministic(self, parent_palette):
        disabled = HybridCorrectionModel(parent_palette, enabled=False)
        disabled._classifier = StubClassifier([0.95, 0.02, 0.02, 0.01])
        assert disabled.match("#0000CC").index == 1

    def test_untrained_model_is_deterministic(self, model):
        assert not model.is_trained
        result = model.match("#0000CC")
        assert result.reference_color.name == "Blue"
        assert result.method == MatchMethod.MATHEMATICAL


class TestTraining:
    """Test training and prediction with the neural backend"""

    def test_unavailable_skips_training(self, parent_palette):
        disabled = HybridCorrectionModel(parent_palette, enabled=False)
        assert disabled.train(examples()) is None
        assert not disabled.is_trained

    def test_no_examples(self, model):
        assert model.train([]) is None
        assert not model.is_trained

    def test_empty_palette(self):
        assert HybridCorrectionModel([], enabled=True).train(examples()) is None

    def test_out_of_range_examples_dropped(self, model):
        bad = [TrainingExample(target_color="#123456", correct_parent_index=9)]
        assert model.train(bad) is None

    def test_train_and_predict(self, model, reset_metrics):
        model.epochs = 5
        stats = model.train(examples())

        assert model.is_trained
        assert stats.total_trainings == 1
        assert stats.examples_trained == 5
        assert stats.last_loss is not None
        assert reset_metrics.get_counters()["model_trainings_total"] == 1

        distribution = model.predict(ColorSample.from_hex("#CC3333"), 0)
        assert distribution.shape == (4,)
        assert distribution.sum() == pytest.approx(1.0)
        assert np.all(distribution >= 0)

    def test_stats_accumulate(self, model):
        model.epochs = 2
        model.train(examples())
        stats = model.train(examples()[:2])
        assert stats.total_trainings == 2
        assert stats.examples_trained == 7

    def test_features_follow_parent_patterns(self, model, parent_palette, reset_metrics):
        kb = KnowledgeBase.default()
        before = match("#112233", parent_palette, kb, PaletteKind.PARENT)
        apply_feedback(kb, "#112233", before, "bad", correction="Red", kind=PaletteKind.PARENT)
        reset_metrics.reset()

        target = ColorSample.from_hex("#112233")
        inference = match(target, parent_palette, kb, PaletteKind.PARENT, record_metrics=False)
        assert inference.method == MatchMethod.PATTERN
        assert inference.reference_color.name == "Red"

        example = TrainingExample(target_color="#112233", correct_parent_index=0)
        rows = model._feature_matrix([example], kb)
        np.testing.assert_allclose(rows[0], build_features(target, parent_palette[0].sample))
        assert "match_requests_total" not in reset_metrics.get_counters()

    def test_trains_against_knowledge_base(self, model, parent_palette):
        kb = KnowledgeBase.default()
        before = match("#112233", parent_palette, kb, PaletteKind.PARENT)
        apply_feedback(kb, "#112233", before, "bad", correction="Red", kind=PaletteKind.PARENT)
        model.epochs = 2
        assert model.train(examples(), kb) is not None
        assert model.is_trained


class TestPersistence:
    """Test the opaque model blob"""

    def test_blob_round_trip(self, model, parent_palette):
        model.epochs = 3
        model.train(examples())
        blob = model.to_blob()

        restored = HybridCorrectionModel(parent_palette, enabled=True)
        assert restored.load_blob(blob) is True
        assert restored.is_trained
        assert len(restored.examples) == 5
        assert restored.stats.total_trainings == 1

        target = ColorSample.from_hex("#33AA33")
        np.testing.assert_allclose(restored.predict(target, 2), model.predict(target, 2))

    def test_different_palette_ignores_weights(self, model):
        model.epochs = 2
        model.train(examples())
        other = HybridCorrectionModel(build_palette([{"name": "Only", "hex": "#123456"}]), enabled=True)
        assert other.load_blob(model.to_blob()) is False
        assert not other.is_trained
        assert len(other.examples) == 5

    def test_empty_blob(self, model):
        assert model.load_blob(None) is False
        assert model.load_blob(b"") is False

    def test_stats_round_trip(self):
        stats = TrainingStats(total_trainings=2, examples_trained=10, last_loss=0.5)
        assert TrainingStats.from_dict(stats.to_dict()) == stats
