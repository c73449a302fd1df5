"""
Test configuration and fixtures for ChromaLearn tests.
"""
import io

import numpy as np
import pytest
from PIL import Image

from chromalearn.services.colors.conversion import ColorSample
from chromalearn.services.colors.palettes import ReferenceColor, StaticPaletteProvider, build_palette
from chromalearn.services.learning.feedback import FeedbackEntry, compute_feedback_metrics
from chromalearn.services.learning.knowledge_base import KnowledgeBase
from chromalearn.services.storage import InMemoryStore
from chromalearn.utils.metrics import get_metrics, reset_metrics as _reset_metrics


REFERENCE_COLORS = [
    {"name": "Classic Red", "hex": "#FF0000", "code": "18-1664"},
    {"name": "Navy Peony", "hex": "#1F4E79", "code": "19-4029"},
    {"name": "Camel", "hex": "#D3B58F", "code": "16-1334"},
    {"name": "Teal Green", "hex": "#2D7560", "code": "18-5619"},
    {"name": "Bright White", "hex": "#FFFFFF", "code": "11-0601"},
    {"name": "Jet Black", "hex": "#000000", "code": "19-0303"},
]

PARENT_COLORS = [
    {"name": "Red", "hex": "#CC0000"},
    {"name": "Blue", "hex": "#0000CC"},
    {"name": "Green", "hex": "#00AA00"},
    {"name": "Gray", "hex": "#808080"},
]


@pytest.fixture(autouse=True)
def reset_metrics():
    """Reset metrics before each test."""
    _reset_metrics()
    yield get_metrics()


@pytest.fixture
def reference_palette():
    return build_palette(REFERENCE_COLORS)


@pytest.fixture
def parent_palette():
    return build_palette(PARENT_COLORS)


@pytest.fixture
def palettes():
    return StaticPaletteProvider(reference=REFERENCE_COLORS, parent=PARENT_COLORS)


@pytest.fixture
def knowledge_base():
    return KnowledgeBase.default()


@pytest.fixture
def store():
    return InMemoryStore()


def make_entry(original: str, system_hex: str, user_hex: str, **kwargs) -> FeedbackEntry:
    """Build a feedback entry with computed metrics."""
    system = ReferenceColor(name=kwargs.pop("system_name", system_hex), hex=system_hex)
    user = ReferenceColor(name=kwargs.pop("user_name", user_hex), hex=user_hex)
    sample = ColorSample.from_hex(original)
    return FeedbackEntry(
        original_color=sample.hex,
        system_match=system,
        user_correction=user,
        metrics=compute_feedback_metrics(sample, system.sample, user.sample),
        **kwargs,
    )


def make_rgba(height: int, width: int, color=(255, 0, 0), alpha: int = 255) -> np.ndarray:
    """Solid RGBA image."""
    img = np.zeros((height, width, 4), dtype=np.uint8)
    img[:, :, :3] = color
    img[:, :, 3] = alpha
    return img


def to_png_bytes(rgba: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(rgba, mode="RGBA").save(buffer, format="PNG")
    return buffer.getvalue()
