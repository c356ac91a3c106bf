import asyncio
import dataclasses

import pytest

from analysis_middleware.capture.engine import DecisionCaptureEngine
from analysis_middleware.config import RetrievalMapperConfig
from analysis_middleware.retrieval.mapper import RetrievalAlignmentMapper, edit_distance
from analysis_middleware.retrieval.strategies import (
    EstimatedEmbeddingStrategy,
    SuppliedEmbeddingStrategy,
)
from analysis_middleware.types import ChunkToken, RetrievalContribution, RetrievedChunk
from analysis_middleware.vectors import cosine_similarity, l2_norm
from conftest import FINE_MODEL


def _tokens(text: str, tokenizer_loader):
    engine = DecisionCaptureEngine(FINE_MODEL, tokenizer_loader=tokenizer_loader)
    return asyncio.run(engine.capture_decisions(text)).token_decisions


def _contribution(value: float) -> RetrievalContribution:
    return RetrievalContribution(
        token_id=0,
        contribution=value,
        normalized_contribution=0.0,
        cosine_similarity=0.0,
        vector_norm=0.0,
        is_key_token=False,
    )


def _chunk(chunk_id: str, words: list[str]) -> RetrievedChunk:
    return RetrievedChunk(
        chunk_id=chunk_id,
        content=" ".join(words),
        tokens=[ChunkToken(token=word, token_id=100 + i, position=i) for i, word in enumerate(words)],
        overall_similarity=0.9,
    )


def test_normalized_contributions_sum_to_one_and_mark_outliers() -> None:
    mapper = RetrievalAlignmentMapper()
    result = mapper.normalize_and_mark_key_tokens([_contribution(v) for v in (1, 1, 1, 10)])

    assert sum(c.normalized_contribution for c in result) == pytest.approx(1.0)
    assert [c.is_key_token for c in result] == [False, False, False, True]


def test_all_zero_contributions_normalize_to_zero() -> None:
    mapper = RetrievalAlignmentMapper()
    result = mapper.normalize_and_mark_key_tokens([_contribution(0.0) for _ in range(3)])

    assert [c.normalized_contribution for c in result] == [0.0, 0.0, 0.0]
    assert not any(c.is_key_token for c in result)
    assert mapper.normalize_and_mark_key_tokens([]) == []


def test_full_alignment_reproduces_query_direction(tokenizer_loader) -> None:
    tokens = _tokens("hello world", tokenizer_loader)
    query = [0.2, -0.4, 0.1, 0.8]
    strategy = EstimatedEmbeddingStrategy(alignment_weight=1.0)

    for index, token in enumerate(tokens):
        vector = strategy.embed(token, index, query)
        # Confidence is 0.95 for vocabulary hits, so the blend is nearly complete.
        assert cosine_similarity(vector, query) > 0.99


def test_estimated_alignment_weight_is_bounded() -> None:
    with pytest.raises(ValueError):
        EstimatedEmbeddingStrategy(alignment_weight=1.5)


def test_supplied_embeddings_take_precedence(tokenizer_loader) -> None:
    tokens = _tokens("hello world", tokenizer_loader)
    query = [1.0, 0.0]
    mapper = RetrievalAlignmentMapper()

    contributions = mapper.calculate_retrieval_contributions(
        tokens, query, token_embeddings=[[2.0, 0.0], [0.0, 3.0]]
    )

    assert contributions[0].contribution == pytest.approx(2.0)
    assert contributions[0].vector_norm == pytest.approx(2.0)
    assert contributions[1].cosine_similarity == pytest.approx(0.0)

    partial = SuppliedEmbeddingStrategy([[2.0, 0.0]])
    assert len(partial.embed(tokens[1], 1, query)) == 2


def test_token_similarity_rules(tokenizer_loader) -> None:
    hello, data = _tokens("hello data", tokenizer_loader)
    similarity = RetrievalAlignmentMapper.token_similarity

    assert similarity(hello, ChunkToken(token="Hello", token_id=9, position=0)) == 1.0
    assert similarity(data, ChunkToken(token="database", token_id=9, position=0)) == pytest.approx(
        0.8 * 4 / 8
    )
    unrelated = similarity(hello, ChunkToken(token="xyz", token_id=50000, position=0))
    assert 0.0 <= unrelated < 0.3


def test_edit_distance() -> None:
    assert edit_distance("kitten", "sitting") == 3
    assert edit_distance("", "abc") == 3
    assert edit_distance("same", "same") == 0


def test_similarity_matrix_is_filtered_sorted_and_capped(tokenizer_loader) -> None:
    tokens = _tokens("hello world data", tokenizer_loader)
    chunks = [_chunk("c1", ["hello", "databases", "word"]), _chunk("c2", ["world"])]
    mapper = RetrievalAlignmentMapper(RetrievalMapperConfig(matrix_limit=3))

    matrix = mapper.build_similarity_matrix(tokens, chunks)

    assert len(matrix) == 3
    assert all(entry.similarity > 0.3 for entry in matrix)
    assert [entry.similarity for entry in matrix] == sorted(
        (entry.similarity for entry in matrix), reverse=True
    )
    assert matrix[0].similarity == 1.0


def test_key_match_paths_follow_key_token_indices(tokenizer_loader) -> None:
    tokens = _tokens("hello world", tokenizer_loader)
    chunks = [_chunk("c1", ["hello", "world"])]
    mapper = RetrievalAlignmentMapper()
    contributions = mapper.normalize_and_mark_key_tokens(
        [_contribution(0.0), _contribution(1.0)]
    )

    graph = mapper.build_retrieval_path_graph("q1", tokens, [1.0, 0.0], chunks, contributions)

    assert [path.query_token_index for path in graph.key_match_paths] == [1]
    assert graph.key_match_paths[0].chunk_token_index == 1
    assert graph.key_match_paths[0].match_score == 1.0
    assert [q.token for q in graph.query_tokens] == ["hello", "world"]

    quality = mapper.analyze_retrieval_quality(graph)
    assert quality.key_token_coverage == 1.0
    assert quality.avg_match_strength == 1.0
    assert quality.quality_score == 1.0
    assert quality.issues == []


def test_quality_reports_missing_matches(tokenizer_loader) -> None:
    tokens = _tokens("hello world", tokenizer_loader)
    mapper = RetrievalAlignmentMapper()
    contributions = mapper.normalize_and_mark_key_tokens(
        [_contribution(0.0), _contribution(1.0)]
    )

    graph = mapper.build_retrieval_path_graph(
        "q2", tokens, [1.0, 0.0], [_chunk("c1", ["zzz"])], contributions
    )
    quality = mapper.analyze_retrieval_quality(graph)

    assert graph.key_match_paths == []
    assert quality.key_token_coverage == 0.0
    assert len(quality.issues) == 2


def test_fully_aligned_certain_token_contributes_its_norm(tokenizer_loader) -> None:
    tokens = [
        dataclasses.replace(token, confidence=1.0)
        for token in _tokens("hello world", tokenizer_loader)
    ]
    query = [0.2, -0.4, 0.1, 0.8]
    mapper = RetrievalAlignmentMapper(RetrievalMapperConfig(estimate_alignment_weight=1.0))

    contributions = mapper.calculate_retrieval_contributions(tokens, query)

    for contribution in contributions:
        assert contribution.cosine_similarity == pytest.approx(1.0)
        assert contribution.vector_norm == pytest.approx(l2_norm(query))
        assert contribution.contribution == pytest.approx(contribution.vector_norm)
