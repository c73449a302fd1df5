"""
Reference Palettes

Read-only reference color catalogs (a standardized library such as a
Pantone-like list, and a smaller "parent" palette) supplied by an external
catalog. The engine only ever reads them.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from loguru import logger

from chromalearn.errors import ColorValidationError
from .conversion import ColorSample, normalize_hex


class PaletteKind(str, Enum):
    """Which pattern family applies when matching against a palette."""
    REFERENCE = "reference"
    PARENT = "parent"


@dataclass(frozen=True)
class ReferenceColor:
    """One entry of a reference palette."""
    name: str
    hex: str
    code: Optional[str] = None
    sample: ColorSample = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        hex_norm = normalize_hex(self.hex)
        object.__setattr__(self, "hex", hex_norm)
        if self.sample is None:
            object.__setattr__(self, "sample", ColorSample.from_hex(hex_norm))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReferenceColor":
        """
        Build from a catalog record.

        Accepts ``hex`` with or without ``#`` and the code under either
        ``code`` or ``pantone``.
        """
        if not isinstance(data, dict) or not data.get("name") or not data.get("hex"):
            raise ColorValidationError(f"Reference color needs 'name' and 'hex': {data!r}")
        code = data.get("code") or data.get("pantone")
        return cls(name=str(data["name"]), hex=str(data["hex"]), code=code)

    def to_dict(self) -> Dict[str, Any]:
        data = {"name": self.name, "hex": self.hex}
        if self.code:
            data["code"] = self.code
        return data


PaletteInput = Union[ReferenceColor, Dict[str, Any]]


def build_palette(entries: Iterable[PaletteInput]) -> List[ReferenceColor]:
    """Coerce catalog records into ReferenceColor entries, preserving order."""
    palette = []
    for entry in entries:
        palette.append(entry if isinstance(entry, ReferenceColor) else ReferenceColor.from_dict(entry))
    return palette


def find_by_name(palette: Sequence[ReferenceColor], name: str) -> Optional[int]:
    """Index of the palette entry with this name (case-insensitive), or None."""
    wanted = name.strip().lower()
    for index, color in enumerate(palette):
        if color.name.lower() == wanted:
            return index
    return None


class PaletteProvider(ABC):
    """Reference palette collaborator."""

    @abstractmethod
    def get_reference_colors(self) -> List[ReferenceColor]:
        """Standardized reference library."""

    @abstractmethod
    def get_parent_colors(self) -> List[ReferenceColor]:
        """Smaller parent palette."""


class StaticPaletteProvider(PaletteProvider):
    """Palettes held in memory."""

    def __init__(self, reference: Iterable[PaletteInput] = (), parent: Iterable[PaletteInput] = ()):
        self._reference = build_palette(reference)
        self._parent = build_palette(parent)

    def get_reference_colors(self) -> List[ReferenceColor]:
        return list(self._reference)

    def get_parent_colors(self) -> List[ReferenceColor]:
        return list(self._parent)


class JsonPaletteProvider(PaletteProvider):
    """Palettes loaded once from JSON files holding ``[{name, hex, code?}]`` lists."""

    def __init__(self, reference_path: Union[str, Path], parent_path: Optional[Union[str, Path]] = None):
        self._reference = self._load(Path(reference_path))
        self._parent = self._load(Path(parent_path)) if parent_path else []

    @staticmethod
    def _load(path: Path) -> List[ReferenceColor]:
        with path.open("r", encoding="utf-8") as fh:
            records = json.load(fh)
        palette = build_palette(records)
        logger.info(f"Loaded {len(palette)} palette colors from {path}")
        return palette

    def get_reference_colors(self) -> List[ReferenceColor]:
        return list(self._reference)

    def get_parent_colors(self) -> List[ReferenceColor]:
        return list(self._parent)
