"""Token-level attribution of retrieval results to the query."""

from __future__ import annotations

from analysis_middleware.config import RetrievalMapperConfig
from analysis_middleware.retrieval.strategies import (
    EstimatedEmbeddingStrategy,
    SuppliedEmbeddingStrategy,
    TokenEmbeddingStrategy,
)
from analysis_middleware.tokenizer.markers import strip_markers
from analysis_middleware.types import (
    ChunkToken,
    KeyMatchPath,
    QueryTokenContribution,
    RetrievalContribution,
    RetrievalPathGraph,
    RetrievalQuality,
    RetrievedChunk,
    TokenDecisionMetadata,
    TokenSimilarityEntry,
)
from analysis_middleware.vectors import cosine_similarity, l2_norm


class RetrievalAlignmentMapper:
    """Explains which query tokens drove a retrieval result.

    Contribution of a token is `cos(token_vec, query_vec) * ||token_vec||`.
    Query and chunk tokens are then cross-matched lexically to find the paths
    through which key tokens reached the retrieved chunks.
    """

    def __init__(
        self,
        config: RetrievalMapperConfig | None = None,
        estimator: TokenEmbeddingStrategy | None = None,
    ) -> None:
        self.config = config or RetrievalMapperConfig()
        self.estimator = estimator or EstimatedEmbeddingStrategy(
            alignment_weight=self.config.estimate_alignment_weight
        )

    def calculate_retrieval_contributions(
        self,
        query_tokens: list[TokenDecisionMetadata],
        query_embedding: list[float],
        token_embeddings: list[list[float]] | None = None,
    ) -> list[RetrievalContribution]:
        strategy: TokenEmbeddingStrategy = (
            SuppliedEmbeddingStrategy(token_embeddings, fallback=self.estimator)
            if token_embeddings
            else self.estimator
        )
        contributions: list[RetrievalContribution] = []
        for index, token in enumerate(query_tokens):
            vector = strategy.embed(token, index, query_embedding)
            token_norm = l2_norm(vector)
            cosine = cosine_similarity(vector, query_embedding)
            contributions.append(
                RetrievalContribution(
                    token_id=token.token_id,
                    contribution=cosine * token_norm,
                    normalized_contribution=0.0,
                    cosine_similarity=cosine,
                    vector_norm=token_norm,
                    is_key_token=False,
                )
            )
        return contributions

    def normalize_and_mark_key_tokens(
        self, contributions: list[RetrievalContribution]
    ) -> list[RetrievalContribution]:
        if not contributions:
            return []
        total = sum(abs(c.contribution) for c in contributions)
        threshold = (total / len(contributions)) * self.config.key_token_factor
        return [
            RetrievalContribution(
                token_id=c.token_id,
                contribution=c.contribution,
                normalized_contribution=c.contribution / total if total > 0 else 0.0,
                cosine_similarity=c.cosine_similarity,
                vector_norm=c.vector_norm,
                is_key_token=c.contribution > threshold,
            )
            for c in contributions
        ]

    def build_retrieval_path_graph(
        self,
        query_id: str,
        query_tokens: list[TokenDecisionMetadata],
        query_embedding: list[float],
        retrieved_chunks: list[RetrievedChunk],
        contributions: list[RetrievalContribution] | None = None,
    ) -> RetrievalPathGraph:
        if contributions is None:
            contributions = self.normalize_and_mark_key_tokens(
                self.calculate_retrieval_contributions(query_tokens, query_embedding)
            )

        similarity_matrix = self.build_similarity_matrix(query_tokens, retrieved_chunks)
        return RetrievalPathGraph(
            query_id=query_id,
            query_tokens=[
                QueryTokenContribution(
                    token=token.token, token_id=token.token_id, contribution=contribution
                )
                for token, contribution in zip(query_tokens, contributions)
            ],
            retrieved_chunks=list(retrieved_chunks),
            similarity_matrix=similarity_matrix,
            key_match_paths=self.identify_key_match_paths(similarity_matrix, contributions),
        )

    def build_similarity_matrix(
        self,
        query_tokens: list[TokenDecisionMetadata],
        retrieved_chunks: list[RetrievedChunk],
    ) -> list[TokenSimilarityEntry]:
        matrix: list[TokenSimilarityEntry] = []
        for query_index, query_token in enumerate(query_tokens):
            for chunk_index, chunk in enumerate(retrieved_chunks):
                for chunk_token_index, chunk_token in enumerate(chunk.tokens):
                    similarity = self.token_similarity(query_token, chunk_token)
                    if similarity <= self.config.min_similarity:
                        continue
                    matrix.append(
                        TokenSimilarityEntry(
                            query_token_index=query_index,
                            query_token=query_token.token,
                            chunk_index=chunk_index,
                            chunk_token_index=chunk_token_index,
                            chunk_token=chunk_token.token,
                            similarity=similarity,
                            is_strong_match=similarity > self.config.strong_match,
                        )
                    )

        matrix.sort(key=lambda entry: entry.similarity, reverse=True)
        return matrix[: self.config.matrix_limit]

    def identify_key_match_paths(
        self,
        similarity_matrix: list[TokenSimilarityEntry],
        contributions: list[RetrievalContribution],
    ) -> list[KeyMatchPath]:
        key_indices = {index for index, c in enumerate(contributions) if c.is_key_token}
        key_matches = [
            entry
            for entry in similarity_matrix
            if entry.query_token_index in key_indices and entry.is_strong_match
        ]
        return [
            KeyMatchPath(
                query_token_index=entry.query_token_index,
                chunk_index=entry.chunk_index,
                chunk_token_index=entry.chunk_token_index,
                match_score=entry.similarity,
            )
            for entry in key_matches[: self.config.key_path_limit]
        ]

    def analyze_retrieval_quality(self, graph: RetrievalPathGraph) -> RetrievalQuality:
        issues: list[str] = []

        key_tokens = [q for q in graph.query_tokens if q.contribution.is_key_token]
        covered = {path.query_token_index for path in graph.key_match_paths}
        key_token_coverage = len(covered) / len(key_tokens) if key_tokens else 1.0
        if key_token_coverage < 0.5:
            issues.append("Low key token coverage; retrieval accuracy may suffer")

        paths = graph.key_match_paths
        avg_match_strength = (
            sum(path.match_score for path in paths) / len(paths) if paths else 0.0
        )
        if avg_match_strength < 0.6:
            issues.append("Weak average match strength; retrieved chunks may be imprecise")

        return RetrievalQuality(
            quality_score=key_token_coverage * 0.5 + avg_match_strength * 0.5,
            key_token_coverage=key_token_coverage,
            avg_match_strength=avg_match_strength,
            issues=issues,
        )

    @staticmethod
    def token_similarity(query_token: TokenDecisionMetadata, chunk_token: ChunkToken) -> float:
        q = strip_markers(query_token.token.lower())
        c = strip_markers(chunk_token.token.lower())

        if q == c:
            return 1.0
        if q in c or c in q:
            return 0.8 * min(len(q), len(c)) / max(len(q), len(c))

        edit_similarity = 1 - edit_distance(q, c) / max(len(q), len(c))
        # Ids that sit close together in one vocabulary tend to be related.
        id_similarity = 1 / (1 + abs(query_token.token_id - chunk_token.token_id) * 0.001)
        return edit_similarity * 0.7 + id_similarity * 0.3


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance with a rolling row."""
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i] + [0] * len(b)
        for j, char_b in enumerate(b, start=1):
            if char_a == char_b:
                current[j] = previous[j - 1]
            else:
                current[j] = 1 + min(previous[j], current[j - 1], previous[j - 1])
        previous = current
    return previous[-1]
