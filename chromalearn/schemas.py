"""
ChromaLearn Schemas
Pydantic models for match queries, feedback submissions and image analysis.
"""
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from chromalearn.config import config
from chromalearn.errors import ColorValidationError
from chromalearn.services.colors.conversion import normalize_hex
from chromalearn.services.colors.matching import MatchResult
from chromalearn.services.colors.palettes import PaletteKind, ReferenceColor

Verdict = Literal["good", "bad"]
ModelT = TypeVar("ModelT", bound=BaseModel)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def parse_payload(model: Type[ModelT], payload: Any) -> ModelT:
    """
    Validate a raw payload against a schema.

    Raises:
        ColorValidationError: With one message per failing field
    """
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload if payload is not None else {})
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or 'body'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ColorValidationError(f"Invalid {model.__name__}", errors=errors) from e


# ============================================================================
# COLORS
# ============================================================================

class ColorRef(_CamelModel):
    """A palette color as submitted by a client."""
    name: Optional[str] = Field(None, description="Palette entry name")
    hex: str = Field(..., description="Hex color code, #RRGGBB (leading # optional)")
    code: Optional[str] = Field(None, description="Catalog code (e.g. Pantone code)")

    @field_validator("hex")
    @classmethod
    def _normalize_hex(cls, value: str) -> str:
        return normalize_hex(value)

    def to_reference(self) -> ReferenceColor:
        return ReferenceColor(name=self.name or self.hex, hex=self.hex, code=self.code)

    @classmethod
    def from_reference(cls, reference: ReferenceColor) -> "ColorRef":
        return cls(name=reference.name, hex=reference.hex, code=reference.code)


class MatchResultModel(_CamelModel):
    """Serialized MatchResult."""
    reference_color: ColorRef = Field(..., alias="referenceColor")
    distance: float = Field(..., ge=0.0, description="CIEDE2000 distance from the input color")
    weighted_distance: Optional[float] = Field(None, alias="weightedDistance")
    confidence: float = Field(..., ge=0.0, le=100.0)
    method: Literal["mathematical", "pattern", "ml_correction"]
    overridden: bool = False
    adjusted_color: Optional[str] = Field(
        None,
        alias="adjustedColor",
        description="Color after pattern correction, when a pattern applied",
    )

    @classmethod
    def from_result(cls, result: MatchResult) -> "MatchResultModel":
        return cls(
            reference_color=ColorRef.from_reference(result.reference_color),
            distance=result.distance,
            weighted_distance=result.weighted_distance,
            confidence=result.confidence,
            method=result.method.value,
            overridden=result.overridden,
            adjusted_color=result.adjusted_color,
        )


# ============================================================================
# QUERY INTERFACE
# ============================================================================

class MatchRequest(_CamelModel):
    """Match one color against a palette."""
    color: str = Field(..., description="Hex color to match")
    palette: PaletteKind = Field(PaletteKind.REFERENCE, description="'reference' or 'parent'")
    feedback: Optional[Verdict] = None
    parent_feedback: Optional[Verdict] = Field(None, alias="parentFeedback")
    parent_correction: Optional[str] = Field(None, alias="parentCorrection")

    @field_validator("color")
    @classmethod
    def _normalize_color(cls, value: str) -> str:
        return normalize_hex(value)


class MatchResponse(_CamelModel):
    """Match result plus the knowledge-base version that produced it."""
    match: MatchResultModel
    knowledge_base_version: int = Field(..., alias="knowledgeBaseVersion")


# ============================================================================
# SUBMISSION INTERFACE
# ============================================================================

class FeedbackSubmission(_CamelModel):
    """User feedback on a match."""
    original_color: str = Field(..., alias="originalColor")
    system_match: ColorRef = Field(..., alias="systemMatch")
    user_correction: ColorRef = Field(..., alias="userCorrection")
    feedback: Optional[Verdict] = None
    parent_feedback: Optional[Verdict] = Field(None, alias="parentFeedback")
    parent_match: Optional[str] = Field(
        None,
        alias="parentMatch",
        description="Name of the parent color the system proposed",
    )
    parent_correction: Optional[str] = Field(
        None,
        alias="parentCorrection",
        description="Name of the parent color the user says is correct",
    )

    @field_validator("original_color")
    @classmethod
    def _normalize_original(cls, value: str) -> str:
        return normalize_hex(value)


class FeedbackReceipt(_CamelModel):
    id: str
    stored: bool
    training_example_created: bool = Field(False, alias="trainingExampleCreated")
    pending_entries: int = Field(..., alias="pendingEntries")


# ============================================================================
# IMAGE ANALYSIS
# ============================================================================

class AnalysisSettings(_CamelModel):
    """Clustering and reporting parameters for one analysis call."""
    sample_size: int = Field(default_factory=lambda: config.SAMPLE_SIZE, alias="sampleSize")
    k: int = Field(default_factory=lambda: config.DEFAULT_K)
    max_iterations: int = Field(default_factory=lambda: config.MAX_ITERATIONS, alias="maxIterations")
    max_image_size: int = Field(default_factory=lambda: config.MAX_IMAGE_SIZE, alias="maxImageSize")
    color_space: str = Field("lab", alias="colorSpace", description="Clustering space; only 'lab'")
    confidence_threshold: float = Field(
        default_factory=lambda: config.PROBLEMATIC_CONFIDENCE,
        alias="confidenceThreshold",
        ge=0.0,
        le=100.0,
        description="Matches below this confidence are reported as problematic",
    )
    use_hybrid_model: bool = Field(True, alias="useHybridModel")
    rng_seed: Optional[int] = Field(default_factory=lambda: config.RANDOM_SEED, alias="rngSeed")

    @field_validator("k")
    @classmethod
    def _check_k(cls, value: int) -> int:
        if not config.validate_k(value):
            raise ValueError(f"k must be between 1 and 64, got {value}")
        return value

    @field_validator("sample_size")
    @classmethod
    def _check_sample_size(cls, value: int) -> int:
        if not config.validate_sample_size(value):
            raise ValueError(f"sample_size out of range: {value}")
        return value

    @field_validator("max_iterations")
    @classmethod
    def _check_max_iterations(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_iterations must be positive")
        return value

    @field_validator("max_image_size")
    @classmethod
    def _check_max_image_size(cls, value: int) -> int:
        if not config.validate_max_image_size(value):
            raise ValueError(f"max_image_size out of range: {value}")
        return value

    @field_validator("color_space")
    @classmethod
    def _check_color_space(cls, value: str) -> str:
        if not config.validate_color_space(value):
            raise ValueError(f"Unsupported color space '{value}', only LAB clustering is available")
        return value.lower()


class ColorAnalysis(_CamelModel):
    """One extracted color with its palette matches."""
    color: str
    percentage: float = Field(..., ge=0.0, le=100.0)
    reference_match: MatchResultModel = Field(..., alias="referenceMatch")
    parent_match: Optional[MatchResultModel] = Field(None, alias="parentMatch")
    problematic: bool = False


class AnalysisStatistics(_CamelModel):
    total_colors: int = Field(..., alias="totalColors")
    problematic_matches: int = Field(..., alias="problematicMatches")
    average_confidence: float = Field(..., alias="averageConfidence")
    method_breakdown: Dict[str, int] = Field(..., alias="methodBreakdown")


class AnalysisResponse(_CamelModel):
    """Full result of analyzing one image."""
    request_id: str = Field(..., alias="requestId")
    colors: List[ColorAnalysis]
    statistics: AnalysisStatistics
    knowledge_base_version: int = Field(..., alias="knowledgeBaseVersion")
    hybrid_model_used: bool = Field(False, alias="hybridModelUsed")


# ============================================================================
# LEARNING
# ============================================================================

class LearningCycleSummary(_CamelModel):
    """Outcome of one batch learning run."""
    processed: int
    patterns_found: int = Field(..., alias="patternsFound")
    optimized: bool
    best_fitness: Optional[float] = Field(None, alias="bestFitness")
    model_trained: bool = Field(..., alias="modelTrained")
    version: int
    saved: bool
