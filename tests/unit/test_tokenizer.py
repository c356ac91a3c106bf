from analysis_middleware.tokenizer.adapter import HuggingFaceTokenizerAdapter, coerce_vocabulary
from analysis_middleware.tokenizer.markers import (
    has_continuation_prefix,
    is_byte_escape,
    is_fallback_token,
    is_unknown_token,
    strip_markers,
)
from analysis_middleware.tokenizer.wordpiece import WordPieceTokenizer


def test_wordpiece_greedy_longest_match() -> None:
    tokenizer = WordPieceTokenizer.from_tokens(["un", "##aff", "##able", "##a", "!"])

    ids = tokenizer.encode("unaffable!")

    assert tokenizer.batch_decode([[i] for i in ids]) == ["un", "##aff", "##able", "!"]
    assert tokenizer.offset_mapping("unaffable!") == [(0, 2), (2, 5), (5, 9), (9, 10)]
    assert tokenizer.vocabulary()["[UNK]"] == 1


def test_wordpiece_uncoverable_word_becomes_single_unknown() -> None:
    tokenizer = WordPieceTokenizer.from_tokens(["hello"], lowercase=True)

    ids = tokenizer.encode("Hello xyz")

    assert tokenizer.batch_decode([ids]) == ["hello [UNK]"]
    assert tokenizer.offset_mapping("Hello xyz") == [(0, 5), (6, 9)]
    assert tokenizer.unknown_tokens == frozenset({"[UNK]"})


def test_wordpiece_can_withhold_offsets() -> None:
    tokenizer = WordPieceTokenizer.from_tokens(["hello"], provide_offsets=False)

    assert tokenizer.offset_mapping("hello") is None


def test_coerce_vocabulary_shapes() -> None:
    assert coerce_vocabulary({"a": 1, "b": True, 3: 4}) == {"a": 1}
    assert coerce_vocabulary(["x", "y"]) == {"x": 0, "y": 1}
    assert coerce_vocabulary([("x", 7), ("y", "bad")]) == {"x": 7}
    assert coerce_vocabulary(None) == {}
    assert coerce_vocabulary(42) == {}


def test_huggingface_adapter_falls_back_through_vocabulary_accessors() -> None:
    class SlowTokenizer:
        is_fast = False
        unk_token = "<unk>"
        encoder = {"hi": 3}

        def get_vocab(self):
            raise NotImplementedError

        def encode(self, text, add_special_tokens=False):
            return [3]

        def batch_decode(self, sequences, skip_special_tokens=False):
            return ["hi" for _ in sequences]

    adapter = HuggingFaceTokenizerAdapter(SlowTokenizer())

    assert adapter.vocabulary() == {"hi": 3}
    assert adapter.encode("hi") == [3]
    assert adapter.offset_mapping("hi") is None
    assert adapter.unknown_tokens == frozenset({"<unk>"})


def test_huggingface_adapter_reads_fast_offsets() -> None:
    class FastTokenizer:
        is_fast = True

        def __call__(self, text, add_special_tokens=False, return_offsets_mapping=False):
            return {"input_ids": [1, 2], "offset_mapping": [(0, 2), (2, 4)]}

    adapter = HuggingFaceTokenizerAdapter(FastTokenizer())

    assert adapter.offset_mapping("abcd") == [(0, 2), (2, 4)]
    assert adapter.unknown_tokens == frozenset()


def test_marker_helpers() -> None:
    assert strip_markers("##ing") == "ing"
    assert strip_markers("▁hello") == "hello"
    assert strip_markers("plain") == "plain"
    assert has_continuation_prefix("##s")
    assert not has_continuation_prefix("s")
    assert is_byte_escape("<0xE4>")
    assert is_byte_escape("[0x0a]")
    assert not is_byte_escape("0x0a")
    assert is_unknown_token("[UNK]")
    assert is_unknown_token("<unk>")
    assert is_unknown_token("?", unknown_tokens={"?"})
    assert is_fallback_token("<0xFF>")
    assert not is_fallback_token("hello")
