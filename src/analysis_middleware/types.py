"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

DecisionType = Literal["merge", "split", "fallback", "direct"]
StageLevel = Literal["bytes", "characters", "subwords", "fullwords"]
StabilityLevel = Literal["stable", "moderate", "unstable", "critical"]
CoverageLevel = Literal["expert", "familiar", "basic", "unfamiliar", "unknown"]
HeatType = Literal["hot", "warm", "neutral", "cold"]
DifferenceType = Literal["split_difference", "merge_difference", "unknown_handling"]
Significance = Literal["low", "medium", "high"]
ModelType = Literal["bert", "gpt", "bge", "minilm", "other"]
WarningType = Literal[
    "low_density",
    "high_fragmentation",
    "unstable_decision",
    "low_coverage",
    "model_comparison",
    "embedding",
]
WarningSeverity = Literal["info", "warning", "error"]
ProgressEventType = Literal["stage_complete", "analysis_complete"]


# Token decisions


@dataclass(slots=True)
class PathLogic:
    depth: int
    hit_count: int
    rank_conflicts: list[int] = field(default_factory=list)
    selected_path_index: int = 0
    alternative_paths: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SemanticEntropy:
    entropy_contribution: float
    entropy_ratio: float
    frequency: float
    idf: float


@dataclass(slots=True)
class ByteRange:
    """Character span of a token in the source text plus its size in bytes."""

    start: int
    end: int
    byte_length: int
    char_length: int
    original_text: str


@dataclass(slots=True)
class TokenDecisionMetadata:
    token_id: int
    token: str
    path_logic: PathLogic
    semantic_entropy: SemanticEntropy
    byte_range: ByteRange
    decision_type: DecisionType
    confidence: float


@dataclass(slots=True)
class MergeSide:
    token: str
    token_id: int
    rank: int


@dataclass(slots=True)
class DiscardedAlternative:
    left: str
    right: str
    rank: int
    reason: str


@dataclass(slots=True)
class MergeOperation:
    """A synthetic BPE-style merge step recorded during subword replay."""

    step: int
    left: MergeSide
    right: MergeSide
    merged: MergeSide
    discarded_alternatives: list[DiscardedAlternative]
    timestamp: float


@dataclass(slots=True)
class WaterfallStage:
    level: StageLevel
    tokens: list[TokenDecisionMetadata]
    merge_operations: list[MergeOperation]
    processing_time: float
    entropy: float


@dataclass(slots=True)
class LogicWaterfallData:
    input: str
    stages: list[WaterfallStage]
    total_time: float
    final_token_count: int
    compression_ratio: float


@dataclass(slots=True)
class StabilityMetrics:
    coefficient: float
    top_score: float
    second_score: float
    score_delta: float
    level: StabilityLevel


@dataclass(slots=True)
class CaptureResult:
    waterfall: LogicWaterfallData
    token_decisions: list[TokenDecisionMetadata]
    stability_metrics: list[StabilityMetrics]


# Density and coverage


@dataclass(slots=True)
class TokenDensity:
    token_index: int
    token: str
    token_id: int
    char_density: float
    byte_density: float
    information_density: float
    compression_efficiency: float
    heat_value: float
    is_high_density: bool
    is_low_density: bool


@dataclass(slots=True)
class DensityGlobalStats:
    avg_density: float
    max_density: float
    min_density: float
    density_variance: float
    total_entropy: float
    compression_ratio: float
    fragmentation_index: float


@dataclass(slots=True)
class HeatmapRegion:
    """Run of consecutive tokens sharing one heat bucket; `end` is inclusive."""

    start: int
    end: int
    avg_heat: float
    type: HeatType


@dataclass(slots=True)
class DensityResult:
    token_densities: list[TokenDensity]
    global_stats: DensityGlobalStats
    heatmap_regions: list[HeatmapRegion]


@dataclass(slots=True)
class DomainRecognition:
    domain: str
    confidence: float


@dataclass(slots=True)
class KnowledgeCoverage:
    score: float
    known_token_ratio: float
    fallback_ratio: float
    avg_token_frequency: float
    domain_recognition: DomainRecognition
    level: CoverageLevel


@dataclass(slots=True)
class StaticWeight:
    l2_norm: float
    l1_norm: float
    max_abs_value: float
    mean: float
    variance: float
    sparsity: float


@dataclass(slots=True)
class DynamicImportance:
    context_relevance: float
    semantic_contribution: float
    query_cosine_similarity: float | None = None


@dataclass(slots=True)
class EmbeddingMapping:
    token_id: int
    embedding: list[float]
    dimension: int
    static_weight: StaticWeight
    dynamic_importance: DynamicImportance


# Retrieval alignment


@dataclass(slots=True)
class RetrievalContribution:
    token_id: int
    contribution: float
    normalized_contribution: float
    cosine_similarity: float
    vector_norm: float
    is_key_token: bool


@dataclass(slots=True)
class ChunkToken:
    token: str
    token_id: int
    position: int


@dataclass(slots=True)
class RetrievedChunk:
    """An already-retrieved chunk supplied by the caller."""

    chunk_id: str
    content: str
    tokens: list[ChunkToken]
    overall_similarity: float
    embedding: list[float] | None = None


@dataclass(slots=True)
class TokenSimilarityEntry:
    query_token_index: int
    query_token: str
    chunk_index: int
    chunk_token_index: int
    chunk_token: str
    similarity: float
    is_strong_match: bool


@dataclass(slots=True)
class KeyMatchPath:
    query_token_index: int
    chunk_index: int
    chunk_token_index: int
    match_score: float


@dataclass(slots=True)
class QueryTokenContribution:
    token: str
    token_id: int
    contribution: RetrievalContribution


@dataclass(slots=True)
class RetrievalPathGraph:
    query_id: str
    query_tokens: list[QueryTokenContribution]
    retrieved_chunks: list[RetrievedChunk]
    similarity_matrix: list[TokenSimilarityEntry]
    key_match_paths: list[KeyMatchPath]


@dataclass(slots=True)
class RetrievalQuality:
    quality_score: float
    key_token_coverage: float
    avg_match_strength: float
    issues: list[str]


# Model comparison


@dataclass(slots=True)
class SingleModelAnalysis:
    model_name: str
    model_type: ModelType
    tokens: list[TokenDecisionMetadata]
    embeddings: list[EmbeddingMapping]
    knowledge_coverage: KnowledgeCoverage
    processing_time: float
    vocab_size: int


@dataclass(slots=True)
class AlignedToken:
    token_index: int
    token: str
    token_id: int


@dataclass(slots=True)
class CharacterAlignmentEntry:
    char_index: int
    char: str
    model_tokens: dict[str, AlignedToken]


@dataclass(slots=True)
class ModelDifference:
    position: int
    type: DifferenceType
    models: dict[str, list[str]]
    significance: Significance


@dataclass(slots=True)
class ModelRecommendation:
    best_model: str
    reason: str
    scores: dict[str, float]


@dataclass(slots=True)
class ModelComparisonResult:
    input: str
    models: list[SingleModelAnalysis]
    character_alignment: list[CharacterAlignmentEntry]
    differences: list[ModelDifference]
    recommendation: ModelRecommendation


# Trace


@dataclass(slots=True)
class TraceWarning:
    type: WarningType
    severity: WarningSeverity
    message: str
    position: int | None = None
    suggestion: str | None = None


@dataclass(slots=True)
class TraceStats:
    total_tokens: int
    total_time: float
    compression_ratio: float
    avg_stability: float
    avg_contribution: float


@dataclass(frozen=True, slots=True)
class TraceContext:
    """Unified record of one `analyze()` call. Never mutated after return."""

    trace_id: str
    created_at: datetime
    completed_at: datetime
    input: str
    primary_model: str
    waterfall: LogicWaterfallData
    token_decisions: list[TokenDecisionMetadata]
    embedding_mappings: list[EmbeddingMapping]
    stability_metrics: list[StabilityMetrics]
    retrieval_contributions: list[RetrievalContribution]
    knowledge_coverage: KnowledgeCoverage
    stats: TraceStats
    warnings: list[TraceWarning]
    model_comparison: ModelComparisonResult | None = None
    retrieval_path: RetrievalPathGraph | None = None


@dataclass(slots=True)
class QuickAnalysis:
    waterfall: LogicWaterfallData
    token_decisions: list[TokenDecisionMetadata]
    density_result: DensityResult
    knowledge_coverage: KnowledgeCoverage


@dataclass(slots=True)
class ProgressEvent:
    type: ProgressEventType
    data: dict[str, Any]
    timestamp: float
    progress: float
