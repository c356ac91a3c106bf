"""Strategies that supply a vector for each query token."""

from __future__ import annotations

from abc import ABC, abstractmethod
from math import sin

from analysis_middleware.types import TokenDecisionMetadata


class TokenEmbeddingStrategy(ABC):
    """Produces the vector used to score one query token against the query."""

    name: str = "abstract"

    @abstractmethod
    def embed(
        self, token: TokenDecisionMetadata, index: int, query_embedding: list[float]
    ) -> list[float]:
        """Return the vector for `token` at position `index`."""


class EstimatedEmbeddingStrategy(TokenEmbeddingStrategy):
    """Deterministic pseudo-embedding for tokens without a real vector.

    A sinusoid seeded by the token id is scaled by the token's frequency and
    then blended toward the query embedding by `confidence * alignment_weight`.
    The result is directionally plausible but is not a faithful token
    embedding; attributions built on it are estimates.
    """

    name = "estimated"

    def __init__(self, alignment_weight: float = 0.3) -> None:
        if not 0.0 <= alignment_weight <= 1.0:
            raise ValueError("alignment_weight must be within [0, 1]")
        self.alignment_weight = alignment_weight

    def embed(
        self, token: TokenDecisionMetadata, index: int, query_embedding: list[float]
    ) -> list[float]:
        seed = token.token_id
        scale = 1 + token.semantic_entropy.frequency
        factor = min(1.0, max(0.0, token.confidence * self.alignment_weight))
        return [
            (sin(seed * (i + 1) * 0.01) * 0.5 * scale) * (1 - factor) + query_value * factor
            for i, query_value in enumerate(query_embedding)
        ]


class SuppliedEmbeddingStrategy(TokenEmbeddingStrategy):
    """Uses caller-provided per-token vectors, estimating any missing rows."""

    name = "supplied"

    def __init__(
        self,
        token_embeddings: list[list[float]],
        fallback: TokenEmbeddingStrategy | None = None,
    ) -> None:
        self.token_embeddings = token_embeddings
        self.fallback = fallback or EstimatedEmbeddingStrategy()

    def embed(
        self, token: TokenDecisionMetadata, index: int, query_embedding: list[float]
    ) -> list[float]:
        if index < len(self.token_embeddings) and self.token_embeddings[index]:
            return self.token_embeddings[index]
        return self.fallback.embed(token, index, query_embedding)
