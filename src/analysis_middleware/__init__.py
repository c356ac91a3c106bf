"""Analysis middleware package."""

from .config import MiddlewareConfig
from .errors import AnalysisError, ModelComparisonError, TokenizerLoadError
from .middleware import AnalysisMiddleware

__all__ = [
    "AnalysisError",
    "AnalysisMiddleware",
    "MiddlewareConfig",
    "ModelComparisonError",
    "TokenizerLoadError",
]
