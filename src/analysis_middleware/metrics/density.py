"""Token density, knowledge coverage and embedding weight statistics."""

from __future__ import annotations

import re
from dataclasses import dataclass

from loguru import logger

from analysis_middleware.config import DensityConfig
from analysis_middleware.tokenizer.markers import is_byte_escape, is_unknown_token
from analysis_middleware.types import (
    CoverageLevel,
    DensityGlobalStats,
    DensityResult,
    DomainRecognition,
    DynamicImportance,
    EmbeddingMapping,
    HeatmapRegion,
    HeatType,
    KnowledgeCoverage,
    StaticWeight,
    TokenDecisionMetadata,
    TokenDensity,
)
from analysis_middleware.vectors import cosine_similarity, l2_norm, mean, variance

_SPARSITY_EPSILON = 1e-6
_EMBEDDING_PREVIEW_DIMS = 20


@dataclass(frozen=True, slots=True)
class DomainProfile:
    name: str
    keywords: tuple[str, ...]


DOMAINS: tuple[DomainProfile, ...] = (
    DomainProfile(
        "ai_ml",
        (
            "ai", "artificial intelligence", "machine learning", "deep learning",
            "neural network", "model", "training",
            "人工智能", "机器学习", "深度学习", "神经网络", "模型", "训练",
        ),
    ),
    DomainProfile(
        "software",
        (
            "code", "programming", "software", "development", "system", "interface", "api",
            "代码", "编程", "软件", "开发", "系统", "接口",
        ),
    ),
    DomainProfile(
        "business_finance",
        (
            "business", "finance", "investment", "market", "sales", "customer", "revenue",
            "商业", "金融", "投资", "市场", "销售", "客户", "收入",
        ),
    ),
    DomainProfile(
        "healthcare",
        (
            "medical", "health", "disease", "treatment", "drug", "doctor",
            "医疗", "健康", "疾病", "治疗", "药物", "医生",
        ),
    ),
)
GENERAL_DOMAIN = "general"


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    # ASCII keywords match whole words with an optional plural; CJK has no word boundaries.
    if keyword.isascii():
        return re.compile(rf"\b{re.escape(keyword)}s?\b")
    return re.compile(re.escape(keyword))


_DOMAIN_PATTERNS: tuple[tuple[str, tuple[re.Pattern[str], ...]], ...] = tuple(
    (domain.name, tuple(_keyword_pattern(keyword) for keyword in domain.keywords))
    for domain in DOMAINS
)


class DensityCalculator:
    """Turns token metadata into density, coverage and weight statistics."""

    def __init__(self, config: DensityConfig | None = None) -> None:
        self.config = config or DensityConfig()

    def calculate_density(
        self, text: str, tokens: list[TokenDecisionMetadata]
    ) -> DensityResult:
        token_densities = [self._token_density(index, token) for index, token in enumerate(tokens)]

        densities = [item.char_density for item in token_densities]
        low_density = sum(1 for item in token_densities if item.is_low_density)
        global_stats = DensityGlobalStats(
            avg_density=mean(densities),
            max_density=max(densities, default=0.0),
            min_density=min(densities, default=0.0),
            density_variance=variance(densities),
            total_entropy=sum(t.semantic_entropy.entropy_contribution for t in tokens),
            compression_ratio=len(text) / len(tokens) if tokens else 0.0,
            fragmentation_index=low_density / len(tokens) if tokens else 0.0,
        )

        return DensityResult(
            token_densities=token_densities,
            global_stats=global_stats,
            heatmap_regions=self.generate_heatmap_regions(token_densities),
        )

    def calculate_knowledge_coverage(
        self,
        text: str,
        tokens: list[TokenDecisionMetadata],
        vocab_size: int,
    ) -> KnowledgeCoverage:
        """Estimate how familiar the tokenizer's vocabulary is with `text`.

        score = 0.4 * known_ratio + 0.3 * (1 - fallback_ratio)
              + 0.15 * min(1, 100 * avg_frequency) + 0.15 * domain_confidence
        """

        total = len(tokens)
        if vocab_size == 0:
            logger.debug("Knowledge coverage computed without a vocabulary")

        known = sum(
            1
            for t in tokens
            if not is_unknown_token(t.token)
            and not is_byte_escape(t.token)
            and t.decision_type != "fallback"
        )
        fallback = sum(
            1 for t in tokens if t.decision_type == "fallback" or is_byte_escape(t.token)
        )
        known_token_ratio = known / total if total else 0.0
        fallback_ratio = fallback / total if total else 0.0
        avg_token_frequency = mean([t.semantic_entropy.frequency for t in tokens])

        domain = recognize_domain(text)
        score = (
            known_token_ratio * 0.4
            + (1 - fallback_ratio) * 0.3
            + min(1.0, avg_token_frequency * 100) * 0.15
            + domain.confidence * 0.15
        )
        score = min(1.0, max(0.0, score))

        return KnowledgeCoverage(
            score=score,
            known_token_ratio=known_token_ratio,
            fallback_ratio=fallback_ratio,
            avg_token_frequency=avg_token_frequency,
            domain_recognition=domain,
            level=coverage_level(score),
        )

    def calculate_embedding_weights(
        self,
        embeddings: list[list[float]],
        query_embedding: list[float] | None = None,
        token_ids: list[int] | None = None,
    ) -> list[EmbeddingMapping]:
        """Weight each vector; rows are labelled by `token_ids` when given, else by position."""
        return [
            EmbeddingMapping(
                token_id=(
                    token_ids[index] if token_ids is not None and index < len(token_ids) else index
                ),
                embedding=list(embedding[:_EMBEDDING_PREVIEW_DIMS]),
                dimension=len(embedding),
                static_weight=static_weight(embedding),
                dynamic_importance=(
                    dynamic_importance(embedding, query_embedding)
                    if query_embedding is not None
                    else DynamicImportance(context_relevance=0.5, semantic_contribution=0.5)
                ),
            )
            for index, embedding in enumerate(embeddings)
        ]

    def generate_heatmap_regions(self, densities: list[TokenDensity]) -> list[HeatmapRegion]:
        """Run-length segment consecutive tokens that share a heat bucket."""
        regions: list[HeatmapRegion] = []
        run_start = 0
        run_heats: list[float] = []
        run_type: HeatType | None = None

        for item in densities:
            bucket = heat_type(item.heat_value)
            if run_type is not None and bucket != run_type:
                regions.append(
                    HeatmapRegion(
                        start=run_start,
                        end=run_start + len(run_heats) - 1,
                        avg_heat=mean(run_heats),
                        type=run_type,
                    )
                )
                run_heats = []
            if not run_heats:
                run_start = item.token_index
            run_type = bucket
            run_heats.append(item.heat_value)

        if run_type is not None:
            regions.append(
                HeatmapRegion(
                    start=run_start,
                    end=run_start + len(run_heats) - 1,
                    avg_heat=mean(run_heats),
                    type=run_type,
                )
            )
        return regions

    def _token_density(self, index: int, token: TokenDecisionMetadata) -> TokenDensity:
        char_length = token.byte_range.char_length or len(token.token)
        byte_length = token.byte_range.byte_length or len(token.token.encode("utf-8"))

        # Densities are per token, so the denominator is always one token.
        char_density = char_length / 1
        byte_density = byte_length / 1
        information_density = token.semantic_entropy.entropy_contribution / max(1, byte_length)
        compression_efficiency = 1 - (1 / byte_length) if byte_length else 0.0
        heat_value = self._heat_value(char_density, byte_density, information_density)

        return TokenDensity(
            token_index=index,
            token=token.token,
            token_id=token.token_id,
            char_density=char_density,
            byte_density=byte_density,
            information_density=information_density,
            compression_efficiency=compression_efficiency,
            heat_value=heat_value,
            is_high_density=heat_value > self.config.high_density_threshold,
            is_low_density=heat_value < self.config.low_density_threshold,
        )

    def _heat_value(
        self, char_density: float, byte_density: float, information_density: float
    ) -> float:
        cfg = self.config
        return (
            min(1.0, char_density / cfg.char_normalizer) * cfg.char_weight
            + min(1.0, byte_density / cfg.byte_normalizer) * cfg.byte_weight
            + min(1.0, information_density / cfg.information_normalizer)
            * cfg.information_weight
        )


def heat_type(heat_value: float) -> HeatType:
    if heat_value >= 0.75:
        return "hot"
    if heat_value >= 0.5:
        return "warm"
    if heat_value >= 0.25:
        return "neutral"
    return "cold"


def coverage_level(score: float) -> CoverageLevel:
    if score >= 0.9:
        return "expert"
    if score >= 0.75:
        return "familiar"
    if score >= 0.5:
        return "basic"
    if score >= 0.25:
        return "unfamiliar"
    return "unknown"


def recognize_domain(text: str) -> DomainRecognition:
    """Pick the domain with the most keyword hits; ties keep the earlier domain."""
    lowered = text.lower()
    best_domain = GENERAL_DOMAIN
    best_hits = 0
    for name, patterns in _DOMAIN_PATTERNS:
        hits = sum(1 for pattern in patterns if pattern.search(lowered))
        if hits > best_hits:
            best_domain, best_hits = name, hits
    return DomainRecognition(
        domain=best_domain, confidence=min(0.95, 0.3 + best_hits * 0.15)
    )


def static_weight(embedding: list[float]) -> StaticWeight:
    if not embedding:
        return StaticWeight(
            l2_norm=0.0, l1_norm=0.0, max_abs_value=0.0, mean=0.0, variance=0.0, sparsity=1.0
        )
    non_zero = sum(1 for value in embedding if abs(value) > _SPARSITY_EPSILON)
    return StaticWeight(
        l2_norm=l2_norm(embedding),
        l1_norm=sum(abs(value) for value in embedding),
        max_abs_value=max(abs(value) for value in embedding),
        mean=mean(embedding),
        variance=variance(embedding),
        sparsity=1 - (non_zero / len(embedding)),
    )


def dynamic_importance(
    token_embedding: list[float], query_embedding: list[float]
) -> DynamicImportance:
    token_norm = l2_norm(token_embedding)
    cosine = cosine_similarity(token_embedding, query_embedding)
    return DynamicImportance(
        context_relevance=abs(cosine),
        semantic_contribution=cosine * token_norm,
        query_cosine_similarity=cosine,
    )
