"""
ChromaLearn error taxonomy.

Validation problems are raised at the boundary and never retried. Missing
data (no feedback, no model, no patterns) is not an error anywhere in the
engine; components degrade to the next simpler strategy instead.
"""


class ChromaLearnError(Exception):
    """Base class for engine errors."""


class ColorValidationError(ChromaLearnError, ValueError):
    """Malformed color or missing required feedback fields."""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = list(errors or [message])


class EmptyPaletteError(ChromaLearnError, ValueError):
    """Matching was requested against an empty reference palette."""


class PersistenceError(ChromaLearnError):
    """A storage collaborator reported failure for a required write."""
