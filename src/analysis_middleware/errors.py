"""Exceptions raised by the analysis middleware.

Only adapter-level failures propagate. Degraded extraction and advisory
conditions are encoded in results instead.
"""

from __future__ import annotations


class AnalysisError(Exception):
    """Base class for analysis middleware errors."""


class TokenizerLoadError(AnalysisError):
    """A tokenizer could not be loaded for the requested model."""

    def __init__(self, model_name: str, reason: str) -> None:
        super().__init__(f"Failed to load tokenizer {model_name!r}: {reason}")
        self.model_name = model_name


class ModelComparisonError(AnalysisError):
    """No model survived a multi-model comparison."""
