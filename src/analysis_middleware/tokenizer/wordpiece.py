"""Deterministic WordPiece tokenizer over an in-memory vocabulary."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

from analysis_middleware.tokenizer.adapter import TokenizerAdapter

_WORD_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)

DEFAULT_SPECIAL_TOKENS = ("[PAD]", "[UNK]", "[CLS]", "[SEP]", "[MASK]")


class WordPieceTokenizer(TokenizerAdapter):
    """Greedy longest-match-first subword tokenizer.

    Text is pre-split into words and punctuation. Each word is consumed left to
    right by the longest vocabulary entry available; pieces after the first
    carry the `##` continuation prefix. A word that cannot be fully covered is
    emitted as a single unknown token, the way BERT-style tokenizers do.

    This class is primarily used offline and in tests. In production, load a
    real tokenizer through `HuggingFaceTokenizerAdapter`.
    """

    def __init__(
        self,
        vocab: Mapping[str, int],
        *,
        unk_token: str = "[UNK]",
        lowercase: bool = False,
        max_chars_per_word: int = 100,
        provide_offsets: bool = True,
    ) -> None:
        if unk_token not in vocab:
            raise ValueError(f"unk_token {unk_token!r} must be in the vocabulary")
        self._vocab = dict(vocab)
        self._id_to_token = {token_id: token for token, token_id in self._vocab.items()}
        self._unk_token = unk_token
        self._lowercase = lowercase
        self._max_chars_per_word = max_chars_per_word
        self._provide_offsets = provide_offsets

    @classmethod
    def from_tokens(
        cls,
        tokens: Iterable[str],
        *,
        special_tokens: Iterable[str] = DEFAULT_SPECIAL_TOKENS,
        **kwargs: object,
    ) -> "WordPieceTokenizer":
        """Build a tokenizer assigning sequential ids, special tokens first."""
        vocab: dict[str, int] = {}
        for token in [*special_tokens, *tokens]:
            if token not in vocab:
                vocab[token] = len(vocab)
        return cls(vocab, **kwargs)  # type: ignore[arg-type]

    def encode(self, text: str) -> list[int]:
        return [self._vocab[piece] for piece, _, _ in self._tokenize(text)]

    def batch_decode(self, sequences: list[list[int]]) -> list[str]:
        return [
            " ".join(self._id_to_token.get(token_id, self._unk_token) for token_id in ids)
            for ids in sequences
        ]

    def vocabulary(self) -> dict[str, int]:
        return dict(self._vocab)

    def offset_mapping(self, text: str) -> list[tuple[int, int]] | None:
        if not self._provide_offsets:
            return None
        return [(start, end) for _, start, end in self._tokenize(text)]

    @property
    def unknown_tokens(self) -> frozenset[str]:
        return frozenset({self._unk_token})

    def _tokenize(self, text: str) -> list[tuple[str, int, int]]:
        pieces: list[tuple[str, int, int]] = []
        for match in _WORD_PATTERN.finditer(text):
            pieces.extend(self._split_word(match.group(), match.start()))
        return pieces

    def _split_word(self, word: str, offset: int) -> list[tuple[str, int, int]]:
        lookup = word.lower() if self._lowercase else word
        if len(lookup) > self._max_chars_per_word:
            return [(self._unk_token, offset, offset + len(word))]

        pieces: list[tuple[str, int, int]] = []
        start = 0
        while start < len(lookup):
            end = len(lookup)
            found: str | None = None
            while start < end:
                candidate = lookup[start:end]
                if start > 0:
                    candidate = "##" + candidate
                if candidate in self._vocab:
                    found = candidate
                    break
                end -= 1
            if found is None:
                return [(self._unk_token, offset, offset + len(word))]
            pieces.append((found, offset + start, offset + end))
            start = end
        return pieces
