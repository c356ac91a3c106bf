"""Configuration models for the analysis middleware."""

from __future__ import annotations

from pydantic import BaseModel, Field

from analysis_middleware.types import ModelType

DEFAULT_PRIMARY_MODEL = "Xenova/bert-base-multilingual-cased"


class CaptureConfig(BaseModel):
    """Configures tokenization replay in the decision capture engine."""

    prefer_offset_mapping: bool = True
    default_vocab_size: int = Field(default=30000, ge=1)
    continuation_prefixes: tuple[str, ...] = ("##", "▁")


class DensityConfig(BaseModel):
    """Configures per-token heat scoring."""

    char_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    byte_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    information_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    char_normalizer: float = Field(default=10.0, gt=0.0)
    byte_normalizer: float = Field(default=10.0, gt=0.0)
    information_normalizer: float = Field(default=2.0, gt=0.0)
    high_density_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    low_density_threshold: float = Field(default=0.3, ge=0.0, le=1.0)


class RetrievalMapperConfig(BaseModel):
    """Configures token-level retrieval attribution."""

    min_similarity: float = Field(default=0.3, ge=0.0, le=1.0)
    strong_match: float = Field(default=0.7, ge=0.0, le=1.0)
    matrix_limit: int = Field(default=100, ge=1)
    key_path_limit: int = Field(default=20, ge=1)
    key_token_factor: float = Field(default=1.5, gt=0.0)
    estimate_alignment_weight: float = Field(default=0.3, ge=0.0, le=1.0)


class WarningConfig(BaseModel):
    """Configures which advisory conditions are reported on a trace."""

    fragmentation_threshold: float = Field(default=0.3, ge=0.0, le=1.0)


class MiddlewareConfig(BaseModel):
    """Top-level configuration for `AnalysisMiddleware`."""

    primary_model: str = Field(default=DEFAULT_PRIMARY_MODEL, min_length=1)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    density: DensityConfig = Field(default_factory=DensityConfig)
    retrieval: RetrievalMapperConfig = Field(default_factory=RetrievalMapperConfig)
    warnings: WarningConfig = Field(default_factory=WarningConfig)


class ModelProfile(BaseModel):
    name: str
    type: ModelType
    description: str


SUPPORTED_MODELS: tuple[ModelProfile, ...] = (
    ModelProfile(
        name="Xenova/bert-base-multilingual-cased",
        type="bert",
        description="Multilingual BERT",
    ),
    ModelProfile(name="Xenova/xlm-roberta-base", type="bert", description="XLM-RoBERTa"),
    ModelProfile(name="Xenova/bge-small-zh-v1.5", type="bge", description="BGE Chinese"),
    ModelProfile(name="Xenova/all-MiniLM-L6-v2", type="minilm", description="MiniLM"),
    ModelProfile(name="Xenova/bert-base-uncased", type="bert", description="BERT English"),
    ModelProfile(
        name="Xenova/distilbert-base-uncased", type="bert", description="DistilBERT"
    ),
    ModelProfile(name="Xenova/gpt2", type="gpt", description="GPT-2"),
)


def model_type_for(model_name: str) -> ModelType:
    for profile in SUPPORTED_MODELS:
        if profile.name == model_name:
            return profile.type
    return "other"
