import asyncio

import pytest

from analysis_middleware.capture.engine import DecisionCaptureEngine, stability_level
from analysis_middleware.config import CaptureConfig
from analysis_middleware.errors import TokenizerLoadError
from analysis_middleware.tokenizer.wordpiece import WordPieceTokenizer
from conftest import FINE_MODEL, MISSING_MODEL


def _capture(text: str, engine: DecisionCaptureEngine):
    return asyncio.run(engine.capture_decisions(text))


def test_waterfall_has_four_ordered_stages(tokenizer_loader) -> None:
    engine = DecisionCaptureEngine(FINE_MODEL, tokenizer_loader=tokenizer_loader)
    result = _capture("hello world", engine)

    stages = result.waterfall.stages
    assert [stage.level for stage in stages] == ["bytes", "characters", "subwords", "fullwords"]
    assert len(stages[0].tokens) == 11
    assert len(stages[1].tokens) == 11
    assert [t.token for t in stages[3].tokens] == ["hello", "world"]
    assert result.waterfall.final_token_count == 2
    assert result.waterfall.compression_ratio == pytest.approx(11 / 2)


def test_token_decisions_carry_spans_and_path_index(tokenizer_loader) -> None:
    engine = DecisionCaptureEngine(FINE_MODEL, tokenizer_loader=tokenizer_loader)
    result = _capture("hello world", engine)

    first, second = result.token_decisions
    assert (first.byte_range.start, first.byte_range.end) == (0, 5)
    assert (second.byte_range.start, second.byte_range.end) == (6, 11)
    assert second.byte_range.original_text == "world"
    assert [t.path_logic.selected_path_index for t in result.token_decisions] == [0, 1]
    assert all(t.decision_type == "direct" for t in result.token_decisions)
    assert all(t.confidence == 0.95 for t in result.token_decisions)


def test_byte_stage_counts_utf8_bytes_for_emoji(tokenizer_loader) -> None:
    engine = DecisionCaptureEngine(FINE_MODEL, tokenizer_loader=tokenizer_loader)
    result = _capture("hello 🙂", engine)

    byte_stage, char_stage = result.waterfall.stages[:2]
    assert len(byte_stage.tokens) == len("hello 🙂".encode("utf-8"))
    assert byte_stage.tokens[0].token == "[0x68]"
    assert char_stage.tokens[-1].byte_range.byte_length == 4

    emoji = result.token_decisions[-1]
    assert emoji.token == "[UNK]"
    assert emoji.decision_type == "fallback"
    assert emoji.confidence == 0.3


def test_continuation_pieces_are_merges(tokenizer_loader) -> None:
    engine = DecisionCaptureEngine(FINE_MODEL, tokenizer_loader=tokenizer_loader)
    result = _capture("tokenizers", engine)

    subwords = result.waterfall.stages[2]
    assert [t.token for t in result.token_decisions] == ["token", "##izer", "##s"]
    assert [t.decision_type for t in result.token_decisions] == ["direct", "merge", "merge"]
    assert len(subwords.merge_operations) == 2
    assert [op.step for op in subwords.merge_operations] == [0, 1]
    assert subwords.merge_operations[0].left.token == "token"
    assert subwords.merge_operations[0].right.token == "#"
    assert subwords.merge_operations[0].discarded_alternatives
    assert result.waterfall.stages[3].merge_operations == []
    assert len(result.token_decisions) <= len(result.waterfall.stages[1].tokens)


def test_span_heuristic_matches_offsets_when_unambiguous(tokenizer_loader) -> None:
    with_offsets = DecisionCaptureEngine(FINE_MODEL, tokenizer_loader=tokenizer_loader)
    without_offsets = DecisionCaptureEngine(
        FINE_MODEL,
        tokenizer_loader=tokenizer_loader,
        config=CaptureConfig(prefer_offset_mapping=False),
    )
    text = "hello tokenizers, world"

    exact = _capture(text, with_offsets).token_decisions
    estimated = _capture(text, without_offsets).token_decisions

    assert [(t.byte_range.start, t.byte_range.end) for t in exact] == [
        (t.byte_range.start, t.byte_range.end) for t in estimated
    ]


def test_stability_is_stable_for_frequent_merges(tokenizer_loader) -> None:
    engine = DecisionCaptureEngine(FINE_MODEL, tokenizer_loader=tokenizer_loader)
    result = _capture("tokenizers", engine)

    assert len(result.stability_metrics) == len(result.token_decisions)
    assert all(0.0 <= m.coefficient <= 1.0 for m in result.stability_metrics)
    assert all(m.level == "stable" for m in result.stability_metrics)


def test_rare_merge_is_critical_and_clamped() -> None:
    tokenizer = WordPieceTokenizer({"[UNK]": 0, "ab": 150000, "##cd": 200000})
    engine = DecisionCaptureEngine("rare", tokenizer_loader=lambda _: tokenizer)
    result = _capture("abcd", engine)

    stable, rare = result.stability_metrics
    assert stable.level == "stable"
    assert rare.coefficient == 0.0
    assert rare.level == "critical"


def test_stability_level_boundaries() -> None:
    assert stability_level(0.7) == "stable"
    assert stability_level(0.699999) == "moderate"
    assert stability_level(0.5) == "moderate"
    assert stability_level(0.3) == "unstable"
    assert stability_level(0.29) == "critical"


def test_empty_text_yields_empty_waterfall(tokenizer_loader) -> None:
    engine = DecisionCaptureEngine(FINE_MODEL, tokenizer_loader=tokenizer_loader)
    result = _capture("", engine)

    assert result.token_decisions == []
    assert result.stability_metrics == []
    assert result.waterfall.compression_ratio == 0.0
    assert all(stage.tokens == [] for stage in result.waterfall.stages)


def test_character_entropy_by_script(tokenizer_loader) -> None:
    engine = DecisionCaptureEngine(FINE_MODEL, tokenizer_loader=tokenizer_loader)
    chars = _capture("你a7!", engine).waterfall.stages[1].tokens

    assert [c.semantic_entropy.entropy_contribution for c in chars] == [13.0, 4.7, 3.3, 6.0]
    assert chars[0].byte_range.byte_length == 3


def test_load_failure_raises_tokenizer_load_error(tokenizer_loader) -> None:
    engine = DecisionCaptureEngine(MISSING_MODEL, tokenizer_loader=tokenizer_loader)

    with pytest.raises(TokenizerLoadError) as excinfo:
        asyncio.run(engine.initialize())

    assert excinfo.value.model_name == MISSING_MODEL
    assert not engine.initialized


def test_missing_vocabulary_does_not_block_capture() -> None:
    class NoVocabTokenizer(WordPieceTokenizer):
        def vocabulary(self) -> dict[str, int]:
            raise RuntimeError("vocabulary not exposed")

    tokenizer = NoVocabTokenizer.from_tokens(["hello"])
    engine = DecisionCaptureEngine("no-vocab", tokenizer_loader=lambda _: tokenizer)
    result = _capture("hello", engine)

    assert engine.vocab_size == 0
    assert [t.token for t in result.token_decisions] == ["hello"]
    assert result.token_decisions[0].path_logic.hit_count == 0
