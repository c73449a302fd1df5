"""
ChromaLearn Engine
Orchestrates the query, submission, image analysis and learning-cycle flows
on top of the matcher, knowledge base, optimizer and hybrid model.

The engine holds no durable state of its own: every call loads the last
committed knowledge base from the store, and every mutation is flushed back
explicitly.
"""
import time
from typing import Any, Dict, List, Optional, Union

from chromalearn.config import config
from chromalearn.errors import ColorValidationError, PersistenceError
from chromalearn.schemas import (
    AnalysisResponse, AnalysisSettings, AnalysisStatistics, ColorAnalysis, FeedbackReceipt,
    LearningCycleSummary, MatchRequest, MatchResponse, MatchResultModel, parse_payload,
)
from chromalearn.services.colors.extraction import ImageInput, get_image_colors
from chromalearn.services.colors.matching import MatchMethod, MatchResult, match
from chromalearn.services.colors.palettes import PaletteKind, PaletteProvider
from chromalearn.services.learning.feedback import (
    create_feedback_entry, derive_training_example, validate_submission,
)
from chromalearn.services.learning.genetic import GeneticOptimizer, OptimizationResult
from chromalearn.services.learning.hybrid import HybridCorrectionModel
from chromalearn.services.learning.knowledge_base import (
    KnowledgeBase, apply_feedback, merge_mined_patterns, process_feedback_queue, recognize_patterns,
)
from chromalearn.services.storage import KnowledgeStore, create_store
from chromalearn.utils.ids import generate_request_id
from chromalearn.utils.logging import get_logger
from chromalearn.utils.metrics import get_metrics


class ColorMatchingEngine:
    """Adaptive color matching engine."""

    def __init__(self,
                 palettes: PaletteProvider,
                 store: Optional[KnowledgeStore] = None,
                 hybrid_model: Optional[HybridCorrectionModel] = None,
                 rng_seed: Optional[int] = None):
        self.palettes = palettes
        self.store = store or create_store()
        self.hybrid_model = hybrid_model or HybridCorrectionModel(palettes.get_parent_colors())
        self.rng_seed = config.RANDOM_SEED if rng_seed is None else rng_seed
        self.logger = get_logger("engine")

    async def initialize(self) -> bool:
        """Restore the hybrid model from the store. Returns True when a trained model was loaded."""
        blob = await self.store.get_model_blob()
        loaded = self.hybrid_model.load_blob(blob)
        self.logger.info("Engine initialized", extra={"hybrid_model_loaded": loaded})
        return loaded

    def _match_parent(self, color, knowledge_base: KnowledgeBase,
                      use_hybrid: bool = True) -> Optional[MatchResult]:
        parent_palette = self.hybrid_model.parent_palette
        if not parent_palette:
            return None
        if use_hybrid:
            return self.hybrid_model.match(color, knowledge_base)
        return match(color, parent_palette, knowledge_base, PaletteKind.PARENT)

    # ------------------------------------------------------------------
    # Query interface
    # ------------------------------------------------------------------

    async def handle_match(self, payload: Union[MatchRequest, Dict[str, Any]]) -> MatchResponse:
        """
        Match one color and optionally learn from inline feedback.

        Inline feedback is applied immediately and committed as a new
        knowledge-base version; the response reports the version that
        produced the match.

        Raises:
            ColorValidationError: If the request is malformed
            EmptyPaletteError: If the requested palette is empty
            PersistenceError: If inline feedback could not be committed
        """
        request = parse_payload(MatchRequest, payload)
        knowledge_base = await self.store.load_knowledge_base()
        version_used = knowledge_base.version

        if request.palette == PaletteKind.PARENT:
            result = self.hybrid_model.match(request.color, knowledge_base)
        else:
            result = match(request.color, self.palettes.get_reference_colors(), knowledge_base)

        if request.feedback or request.parent_feedback or request.parent_correction:
            await self._apply_inline_feedback(request, result, knowledge_base)

        return MatchResponse(
            match=MatchResultModel.from_result(result),
            knowledge_base_version=version_used,
        )

    async def _apply_inline_feedback(self, request: MatchRequest, result: MatchResult,
                                     knowledge_base: KnowledgeBase):
        if request.feedback:
            if request.palette == PaletteKind.REFERENCE:
                apply_feedback(knowledge_base, request.color, result, request.feedback)
            else:
                apply_feedback(knowledge_base, request.color, result, request.feedback, kind=PaletteKind.PARENT)

        if request.parent_feedback or request.parent_correction:
            parent_result = result if request.palette == PaletteKind.PARENT else self._match_parent(
                request.color, knowledge_base, use_hybrid=False
            )
            verdict = request.parent_feedback or ("bad" if request.parent_correction else "good")
            apply_feedback(
                knowledge_base, request.color, parent_result, verdict,
                correction=request.parent_correction, kind=PaletteKind.PARENT,
            )

        knowledge_base.mark_updated()
        if not await self.store.save_knowledge_base(knowledge_base):
            raise PersistenceError(f"Failed to save knowledge base version {knowledge_base.version}")
        self.logger.info("Applied inline feedback", extra={"version": knowledge_base.version})

    # ------------------------------------------------------------------
    # Submission interface
    # ------------------------------------------------------------------

    async def handle_feedback_submission(self, payload: Dict[str, Any]) -> FeedbackReceipt:
        """
        Validate and queue one feedback submission.

        Storage failures are reported through ``stored=False``.

        Raises:
            ColorValidationError: If required colors are missing or malformed
        """
        metrics = get_metrics()
        try:
            submission = validate_submission(payload)
        except ColorValidationError:
            metrics.increment_counter("feedback_rejected_total")
            raise

        entry = create_feedback_entry(submission)
        stored = await self.store.append_feedback_entry(entry)

        example = derive_training_example(entry, self.hybrid_model.parent_palette)
        example_stored = False
        if example is not None:
            example_stored = await self.store.append_training_example(example)

        pending = len(await self.store.get_feedback_entries())
        metrics.increment_counter("feedback_submitted_total")
        self.logger.info(
            f"Feedback received for {entry.original_color}",
            extra={"feedback_id": entry.id, "stored": stored, "pending": pending},
        )

        return FeedbackReceipt(
            id=entry.id,
            stored=stored,
            training_example_created=example_stored,
            pending_entries=pending,
        )

    # ------------------------------------------------------------------
    # Image analysis
    # ------------------------------------------------------------------

    async def analyze_image(self, image: ImageInput,
                            settings: Union[AnalysisSettings, Dict[str, Any], None] = None) -> AnalysisResponse:
        """
        Extract dominant colors and match each against both palettes.

        Raises:
            ColorValidationError: If settings are invalid (e.g. a non-LAB color space)
            EmptyPaletteError: If the reference palette is empty and colors were found
            ValueError: If the image cannot be decoded
        """
        settings = parse_payload(AnalysisSettings, settings)
        request_id = generate_request_id("an")
        start_time = time.time()
        get_metrics().increment_counter("analysis_requests_total")

        knowledge_base = await self.store.load_knowledge_base()
        reference_palette = self.palettes.get_reference_colors()
        use_hybrid = settings.use_hybrid_model and self.hybrid_model.is_available() and self.hybrid_model.is_trained

        centroids = await get_image_colors(
            image,
            k=settings.k,
            sample_size=settings.sample_size,
            max_iterations=settings.max_iterations,
            max_image_size=settings.max_image_size,
            rng_seed=settings.rng_seed,
        )

        colors = []
        matches: List[MatchResult] = []
        confidences = []
        for centroid in centroids:
            reference_match = match(centroid.color, reference_palette, knowledge_base)
            parent_match = self._match_parent(centroid.color, knowledge_base, use_hybrid)

            matches.append(reference_match)
            if parent_match is not None:
                matches.append(parent_match)
                confidences.append((reference_match.confidence + parent_match.confidence) / 2.0)
            else:
                confidences.append(reference_match.confidence)

            problematic = reference_match.confidence < settings.confidence_threshold or (
                parent_match is not None and parent_match.confidence < settings.confidence_threshold
            )
            colors.append(ColorAnalysis(
                color=centroid.color.hex,
                percentage=centroid.percentage,
                reference_match=MatchResultModel.from_result(reference_match),
                parent_match=MatchResultModel.from_result(parent_match) if parent_match else None,
                problematic=problematic,
            ))

        statistics = AnalysisStatistics(
            total_colors=len(colors),
            problematic_matches=sum(1 for c in colors if c.problematic),
            average_confidence=round(sum(confidences) / len(confidences), 2) if confidences else 0.0,
            method_breakdown=method_breakdown(matches),
        )

        self.logger.info(
            f"Analyzed image in {(time.time() - start_time) * 1000:.1f}ms",
            extra={"request_id": request_id, "colors": len(colors), "version": knowledge_base.version},
        )
        return AnalysisResponse(
            request_id=request_id,
            colors=colors,
            statistics=statistics,
            knowledge_base_version=knowledge_base.version,
            hybrid_model_used=use_hybrid,
        )

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    async def run_learning_cycle(self) -> LearningCycleSummary:
        """
        Fold pending feedback, mine patterns, optimize weights and retrain.

        Pending entries are folded once; mining and optimization read the
        full feedback history so entries keep counting after the queue is
        drained. The queue is drained only after the updated knowledge base
        is saved.

        Raises:
            PersistenceError: If the knowledge base could not be saved
        """
        knowledge_base = await self.store.load_knowledge_base()
        queue = await self.store.get_feedback_entries()
        history = await self.store.get_feedback_history()
        recorded = {entry.id for entry in history}
        history.extend(entry for entry in queue if entry.id not in recorded)

        processed = process_feedback_queue(knowledge_base, queue)
        patterns_found = 0
        optimization = OptimizationResult(success=False, error="no pending feedback")
        if processed:
            patterns_found = merge_mined_patterns(knowledge_base, recognize_patterns(history))
            optimization = GeneticOptimizer(rng_seed=self.rng_seed).optimize(history, knowledge_base)

        examples = await self.store.get_training_examples()
        model_trained = self.hybrid_model.train(examples, knowledge_base) is not None

        saved = True
        if processed:
            saved = await self.store.save_knowledge_base(knowledge_base)
            if not saved:
                raise PersistenceError(f"Failed to save knowledge base version {knowledge_base.version}")
            if not await self.store.save_feedback_entries(queue):
                self.logger.warning("Knowledge base saved but feedback queue could not be drained")
            get_metrics().increment_counter("feedback_processed_total", processed)

        if model_trained and not await self.store.save_model_blob(self.hybrid_model.to_blob()):
            self.logger.warning("Hybrid model trained but its blob could not be saved")

        summary = LearningCycleSummary(
            processed=processed,
            patterns_found=patterns_found,
            optimized=optimization.success,
            best_fitness=optimization.fitness,
            model_trained=model_trained,
            version=knowledge_base.version,
            saved=saved,
        )
        self.logger.info("Learning cycle complete", extra=summary.model_dump())
        return summary

    def get_training_stats(self) -> Dict[str, Any]:
        stats = self.hybrid_model.stats.to_dict()
        stats["available"] = self.hybrid_model.is_available()
        stats["trained"] = self.hybrid_model.is_trained
        stats["examples"] = len(self.hybrid_model.examples)
        return stats


def method_breakdown(matches: List[MatchResult]) -> Dict[str, int]:
    """Count matches per method, plus how many were overridden."""
    breakdown = {method.value: 0 for method in MatchMethod}
    breakdown["overridden"] = 0
    for result in matches:
        breakdown[result.method.value] += 1
        if result.overridden:
            breakdown["overridden"] += 1
    return breakdown
