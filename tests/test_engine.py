"""
Integration tests for the engine flows: query, submission, image analysis
and the batch learning cycle.
"""
from dataclasses import replace
from unittest.mock import AsyncMock, patch

import pytest

from chromalearn.errors import ColorValidationError, EmptyPaletteError, PersistenceError
from chromalearn.services.colors.matching import MatchMethod, match
from chromalearn.services.colors.palettes import StaticPaletteProvider
from chromalearn.services.engine import ColorMatchingEngine, method_breakdown
from chromalearn.services.learning.hybrid import HybridCorrectionModel
from conftest import PARENT_COLORS, make_rgba, to_png_bytes


CORRECTIONS = [
    ("#112233", {"name": "Jet Black", "hex": "#000000"}, {"name": "Navy Peony", "hex": "#1F4E79"}),
    ("#CC3333", {"name": "Classic Red", "hex": "#FF0000"}, {"name": "Classic Red", "hex": "#FF0000"}),
    ("#D0B090", {"name": "Bright White", "hex": "#FFFFFF"}, {"name": "Camel", "hex": "#D3B58F"}),
    ("#307060", {"name": "Navy Peony", "hex": "#1F4E79"}, {"name": "Teal Green", "hex": "#2D7560"}),
    ("#202020", {"name": "Navy Peony", "hex": "#1F4E79"}, {"name": "Jet Black", "hex": "#000000"}),
]


def submissions(with_parent=False):
    payloads = []
    for original, system, user in CORRECTIONS:
        payload = {"originalColor": original, "systemMatch": system, "userCorrection": user}
        if with_parent:
            payload["parentCorrection"] = "Blue" if original == "#112233" else "Gray"
        payloads.append(payload)
    return payloads


@pytest.fixture
def engine(palettes, store, parent_palette):
    return ColorMatchingEngine(
        palettes,
        store=store,
        hybrid_model=HybridCorrectionModel(parent_palette, enabled=False),
        rng_seed=42,
    )


class TestQueryInterface:
    """Test single-color matching"""

    @pytest.mark.asyncio
    async def test_reference_match(self, engine):
        response = await engine.handle_match({"color": "#ff0000"})
        assert response.match.reference_color.name == "Classic Red"
        assert response.match.confidence == 100.0
        assert response.match.method == "mathematical"
        assert response.knowledge_base_version == 1

    @pytest.mark.asyncio
    async def test_parent_match(self, engine):
        response = await engine.handle_match({"color": "#1010C0", "palette": "parent"})
        assert response.match.reference_color.name == "Blue"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"color": "#GGGGGG"},
        {"color": "#112233", "palette": "pantone"},
        {"palette": "reference"},
        {"color": "#112233", "feedback": "maybe"},
    ])
    async def test_invalid_request(self, engine, payload):
        with pytest.raises(ColorValidationError):
            await engine.handle_match(payload)

    @pytest.mark.asyncio
    async def test_empty_reference_palette(self, store):
        empty = ColorMatchingEngine(StaticPaletteProvider(parent=PARENT_COLORS), store=store)
        with pytest.raises(EmptyPaletteError):
            await empty.handle_match({"color": "#112233"})

    @pytest.mark.asyncio
    async def test_inline_feedback_commits_new_version(self, engine, store):
        response = await engine.handle_match({"color": "#112233", "feedback": "good"})
        assert response.knowledge_base_version == 1

        kb = await store.load_knowledge_base()
        assert kb.version == 2
        assert len(kb.patterns) == 1

        follow_up = await engine.handle_match({"color": "#112233"})
        assert follow_up.knowledge_base_version == 2

    @pytest.mark.asyncio
    async def test_inline_parent_correction(self, engine, store):
        await engine.handle_match({"color": "#112233", "parentCorrection": "Blue"})
        kb = await store.load_knowledge_base()
        assert kb.parent_patterns[0].correct_parent == "Blue"
        assert kb.parent_patterns[0].confidence == 70.0

        response = await engine.handle_match({"color": "#112233", "palette": "parent"})
        assert response.match.reference_color.name == "Blue"
        assert response.match.overridden is True

    @pytest.mark.asyncio
    async def test_inline_feedback_save_failure(self, engine, store):
        with patch.object(store, "save_knowledge_base", AsyncMock(return_value=False)):
            with pytest.raises(PersistenceError):
                await engine.handle_match({"color": "#112233", "feedback": "good"})


class TestSubmissionInterface:
    """Test queuing feedback"""

    @pytest.mark.asyncio
    async def test_valid_submission(self, engine, store, reset_metrics):
        receipt = await engine.handle_feedback_submission(submissions()[0])

        assert receipt.stored is True
        assert receipt.pending_entries == 1
        assert receipt.training_example_created is False
        assert receipt.id.startswith("fb-")
        assert reset_metrics.get_counters()["feedback_submitted_total"] == 1

        entries = await store.get_feedback_entries()
        assert entries[0].original_color == "#112233"

    @pytest.mark.asyncio
    async def test_parent_correction_creates_training_example(self, engine, store):
        receipt = await engine.handle_feedback_submission(submissions(with_parent=True)[0])
        assert receipt.training_example_created is True

        examples = await store.get_training_examples()
        assert examples[0].correct_parent_index == 1
        assert examples[0].target_color == "#112233"

    @pytest.mark.asyncio
    async def test_invalid_submission_rejected(self, engine, store, reset_metrics):
        payload = submissions()[0]
        payload["userCorrection"] = {"name": "Broken"}
        with pytest.raises(ColorValidationError):
            await engine.handle_feedback_submission(payload)

        assert reset_metrics.get_counters()["feedback_rejected_total"] == 1
        assert await store.get_feedback_entries() == []


class TestLearningCycle:
    """Test the batch learning job"""

    @pytest.mark.asyncio
    async def test_empty_queue(self, engine, store):
        summary = await engine.run_learning_cycle()
        assert summary.processed == 0
        assert summary.optimized is False
        assert summary.version == 1
        assert (await store.load_knowledge_base()).version == 1

    @pytest.mark.asyncio
    async def test_full_cycle(self, engine, store, reset_metrics):
        for payload in submissions():
            await engine.handle_feedback_submission(payload)

        summary = await engine.run_learning_cycle()

        assert summary.processed == 5
        assert summary.optimized is True
        assert summary.best_fitness > 0
        assert summary.model_trained is False
        assert summary.version == 2
        assert summary.saved is True

        kb = await store.load_knowledge_base()
        assert kb.version == 2
        assert kb.parameters.within_bounds()
        assert kb.patterns
        assert await store.get_feedback_entries() == []
        assert reset_metrics.get_counters()["feedback_processed_total"] == 5

    @pytest.mark.asyncio
    async def test_second_cycle_does_not_reapply(self, engine, store):
        for payload in submissions():
            await engine.handle_feedback_submission(payload)
        await engine.run_learning_cycle()

        summary = await engine.run_learning_cycle()
        assert summary.processed == 0
        assert (await store.load_knowledge_base()).version == 2

    @pytest.mark.asyncio
    async def test_feedback_across_cycles_reaches_optimizer(self, engine, store):
        payloads = submissions() + submissions()[:1]
        optimized = []
        for batch in (payloads[:3], payloads[3:]):
            for payload in batch:
                await engine.handle_feedback_submission(payload)
            summary = await engine.run_learning_cycle()
            optimized.append(summary.optimized)

        assert optimized == [False, True]
        assert await store.get_feedback_entries() == []
        assert len(await store.get_feedback_history()) == 6
        assert (await store.load_knowledge_base()).version == 3

    @pytest.mark.asyncio
    async def test_save_failure_keeps_queue(self, engine, store):
        for payload in submissions():
            await engine.handle_feedback_submission(payload)

        with patch.object(store, "save_knowledge_base", AsyncMock(return_value=False)):
            with pytest.raises(PersistenceError):
                await engine.run_learning_cycle()

        assert len(await store.get_feedback_entries()) == 5
        assert (await store.load_knowledge_base()).version == 1

    @pytest.mark.asyncio
    async def test_hybrid_model_trained_and_restored(self, palettes, store, parent_palette):
        hybrid = HybridCorrectionModel(parent_palette, enabled=True, epochs=3, rng_seed=1)
        engine = ColorMatchingEngine(palettes, store=store, hybrid_model=hybrid)
        for payload in submissions(with_parent=True):
            await engine.handle_feedback_submission(payload)

        summary = await engine.run_learning_cycle()
        assert summary.model_trained is True
        assert await store.get_model_blob() is not None

        restarted = ColorMatchingEngine(
            palettes, store=store,
            hybrid_model=HybridCorrectionModel(parent_palette, enabled=True),
        )
        assert await restarted.initialize() is True
        stats = restarted.get_training_stats()
        assert stats["trained"] is True
        assert stats["examples"] == 5
        assert stats["totalTrainings"] == 1


class TestImageAnalysis:
    """Test the image analysis flow"""

    @pytest.mark.asyncio
    async def test_solid_image(self, engine, reset_metrics):
        png = to_png_bytes(make_rgba(20, 20, color=(45, 117, 96)))
        response = await engine.analyze_image(png, {"k": 1})

        assert response.request_id.startswith("an-")
        assert len(response.colors) == 1
        color = response.colors[0]
        assert color.color == "#2D7560"
        assert color.percentage == pytest.approx(100.0)
        assert color.reference_match.reference_color.name == "Teal Green"
        assert color.reference_match.confidence == 100.0
        assert color.parent_match is not None

        stats = response.statistics
        assert stats.total_colors == 1
        assert stats.method_breakdown["mathematical"] == 2
        expected = round((100.0 + color.parent_match.confidence) / 2.0, 2)
        assert stats.average_confidence == pytest.approx(expected)
        assert response.hybrid_model_used is False
        assert reset_metrics.get_counters()["analysis_requests_total"] == 1

    @pytest.mark.asyncio
    async def test_problematic_threshold(self, engine):
        png = to_png_bytes(make_rgba(20, 20, color=(45, 117, 96)))
        strict = await engine.analyze_image(png, {"k": 1, "confidenceThreshold": 100.0})
        lenient = await engine.analyze_image(png, {"k": 1, "confidenceThreshold": 0.0})
        assert strict.statistics.problematic_matches == (
            1 if strict.colors[0].parent_match.confidence < 100.0 else 0
        )
        assert lenient.statistics.problematic_matches == 0

    @pytest.mark.asyncio
    async def test_transparent_image(self, engine):
        png = to_png_bytes(make_rgba(16, 16, alpha=0))
        response = await engine.analyze_image(png)
        assert response.colors == []
        assert response.statistics.total_colors == 0
        assert response.statistics.average_confidence == 0.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("settings", [{"colorSpace": "rgb"}, {"k": 0}, {"maxImageSize": 1}])
    async def test_invalid_settings(self, engine, settings):
        png = to_png_bytes(make_rgba(8, 8))
        with pytest.raises(ColorValidationError):
            await engine.analyze_image(png, settings)


class TestMethodBreakdown:
    """Test match method counting"""

    def test_counts(self, reference_palette):
        plain = match("#FF0000", reference_palette)
        overridden = replace(plain, method=MatchMethod.PATTERN, overridden=True)
        corrected = replace(plain, method=MatchMethod.ML_CORRECTION, overridden=True)

        assert method_breakdown([plain, plain, overridden, corrected]) == {
            "mathematical": 2, "pattern": 1, "ml_correction": 1, "overridden": 2,
        }

    def test_empty(self):
        assert method_breakdown([]) == {
            "mathematical": 0, "pattern": 0, "ml_correction": 0, "overridden": 0,
        }
