"""
ChromaLearn Configuration
Manages environment variables and defaults for extraction, matching and learning.
"""
import os
from typing import Literal

from dotenv import load_dotenv

load_dotenv()


class Config:
    """Configuration class for ChromaLearn services."""

    # Image sampling and clustering
    MAX_IMAGE_SIZE: int = int(os.environ.get("CHROMALEARN_MAX_IMAGE_SIZE", "800"))
    SAMPLE_SIZE: int = int(os.environ.get("CHROMALEARN_SAMPLE_SIZE", "10000"))
    DEFAULT_K: int = int(os.environ.get("CHROMALEARN_DEFAULT_K", "13"))
    MAX_ITERATIONS: int = int(os.environ.get("CHROMALEARN_MAX_ITERATIONS", "30"))
    KMEANS_TOLERANCE: float = float(os.environ.get("CHROMALEARN_KMEANS_TOLERANCE", "1e-6"))
    ALPHA_THRESHOLD: int = int(os.environ.get("CHROMALEARN_ALPHA_THRESHOLD", "25"))
    CHUNK_SIZE: int = int(os.environ.get("CHROMALEARN_CHUNK_SIZE", "100000"))
    RANDOM_SEED: int = int(os.environ.get("CHROMALEARN_RANDOM_SEED", "42"))

    # Matching
    CONFIDENCE_DISTANCE_THRESHOLD: float = float(
        os.environ.get("CHROMALEARN_CONFIDENCE_DISTANCE_THRESHOLD", "20")
    )
    PROBLEMATIC_CONFIDENCE: float = float(os.environ.get("CHROMALEARN_PROBLEMATIC_CONFIDENCE", "20"))

    # Pattern knowledge base
    PATTERN_CONFIDENCE_THRESHOLD: float = float(
        os.environ.get("CHROMALEARN_PATTERN_CONFIDENCE_THRESHOLD", "50")
    )
    HUE_TOLERANCE: float = float(os.environ.get("CHROMALEARN_HUE_TOLERANCE", "15"))
    SATURATION_TOLERANCE: float = float(os.environ.get("CHROMALEARN_SATURATION_TOLERANCE", "0.15"))
    LIGHTNESS_TOLERANCE: float = float(os.environ.get("CHROMALEARN_LIGHTNESS_TOLERANCE", "0.15"))
    MIN_ENTRIES_FOR_PATTERN: int = int(os.environ.get("CHROMALEARN_MIN_ENTRIES_FOR_PATTERN", "3"))

    # Genetic algorithm
    GA_POPULATION_SIZE: int = int(os.environ.get("CHROMALEARN_GA_POPULATION_SIZE", "20"))
    GA_GENERATIONS: int = int(os.environ.get("CHROMALEARN_GA_GENERATIONS", "10"))
    GA_MUTATION_RATE: float = float(os.environ.get("CHROMALEARN_GA_MUTATION_RATE", "0.1"))
    GA_ELITISM: int = int(os.environ.get("CHROMALEARN_GA_ELITISM", "2"))
    GA_TOURNAMENT_SIZE: int = int(os.environ.get("CHROMALEARN_GA_TOURNAMENT_SIZE", "3"))
    GA_MIN_FEEDBACK: int = int(os.environ.get("CHROMALEARN_GA_MIN_FEEDBACK", "5"))

    # Hybrid correction model
    ENABLE_NEURAL_NETWORK: bool = bool(int(os.environ.get("CHROMALEARN_ENABLE_NEURAL_NETWORK", "0")))
    CORRECTION_THRESHOLD: float = float(os.environ.get("CHROMALEARN_CORRECTION_THRESHOLD", "0.7"))
    TRAINING_EPOCHS: int = int(os.environ.get("CHROMALEARN_TRAINING_EPOCHS", "100"))
    TRAINING_BATCH_SIZE: int = int(os.environ.get("CHROMALEARN_TRAINING_BATCH_SIZE", "16"))
    LEARNING_RATE: float = float(os.environ.get("CHROMALEARN_LEARNING_RATE", "0.001"))

    # Storage
    STORAGE_MODE: Literal["memory", "file"] = os.environ.get("CHROMALEARN_STORAGE_MODE", "memory")
    DATA_DIR: str = os.environ.get("CHROMALEARN_DATA_DIR", "./data")

    # Logging
    LOG_LEVEL: str = os.environ.get("CHROMALEARN_LOG_LEVEL", "INFO")

    # Color spaces accepted by the clustering settings layer
    SUPPORTED_COLOR_SPACES = ["lab"]

    @classmethod
    def validate_k(cls, k: int) -> bool:
        """Validate cluster count."""
        return 1 <= k <= 64

    @classmethod
    def validate_sample_size(cls, sample_size: int) -> bool:
        """Validate pixel sample size."""
        return 1 <= sample_size <= 1_000_000

    @classmethod
    def validate_max_image_size(cls, max_image_size: int) -> bool:
        """Validate long-edge bound."""
        return 16 <= max_image_size <= 4096

    @classmethod
    def validate_color_space(cls, color_space: str) -> bool:
        """Only LAB clustering is supported."""
        return color_space.lower() in cls.SUPPORTED_COLOR_SPACES

    @classmethod
    def validate_storage_mode(cls, mode: str) -> bool:
        return mode in ["memory", "file"]


# Global config instance
config = Config()
