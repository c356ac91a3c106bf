"""Tokenizer adapter interface and concrete bindings."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Any

from loguru import logger


class TokenizerAdapter(ABC):
    """Tokenizer contract consumed by the decision capture engine."""

    @abstractmethod
    def encode(self, text: str) -> list[int]:
        """Encode text to token ids without special tokens."""

    @abstractmethod
    def batch_decode(self, sequences: list[list[int]]) -> list[str]:
        """Decode each id sequence to text, keeping marker prefixes."""

    @abstractmethod
    def vocabulary(self) -> dict[str, int]:
        """Return the token -> id vocabulary, or an empty dict."""

    def offset_mapping(self, text: str) -> list[tuple[int, int]] | None:
        """Return per-token character spans aligned with `encode`, if known."""
        return None

    @property
    def unknown_tokens(self) -> frozenset[str]:
        return frozenset()


TokenizerLoader = Callable[[str], TokenizerAdapter]


def coerce_vocabulary(raw: Any) -> dict[str, int]:
    """Normalize a vocabulary of unknown shape into a token -> id dict.

    Accepts mappings (`{"hello": 7}`), sequences of `(token, id)` pairs and
    array-like vocabularies where the list index is the id. Anything else,
    including malformed entries, yields an empty or partial dict.
    """

    vocab: dict[str, int] = {}
    if raw is None:
        return vocab

    if isinstance(raw, Mapping):
        for key, value in raw.items():
            if isinstance(key, str) and isinstance(value, int) and not isinstance(value, bool):
                vocab[key] = value
        return vocab

    if isinstance(raw, (list, tuple)):
        for index, item in enumerate(raw):
            if isinstance(item, str):
                vocab[item] = index
            elif (
                isinstance(item, (list, tuple))
                and len(item) == 2
                and isinstance(item[0], str)
                and isinstance(item[1], int)
            ):
                vocab[item[0]] = item[1]
        return vocab

    return vocab


class HuggingFaceTokenizerAdapter(TokenizerAdapter):
    """Adapter over a `transformers` tokenizer instance."""

    def __init__(self, tokenizer: Any) -> None:
        self._tokenizer = tokenizer

    @classmethod
    def from_pretrained(cls, model_name: str) -> "HuggingFaceTokenizerAdapter":
        try:
            from transformers import AutoTokenizer
        except Exception as exc:  # pragma: no cover - import path is environment-dependent
            raise RuntimeError(
                "transformers is not available. Install the `hf` extra."
            ) from exc

        return cls(AutoTokenizer.from_pretrained(model_name))

    def encode(self, text: str) -> list[int]:
        return list(self._tokenizer.encode(text, add_special_tokens=False))

    def batch_decode(self, sequences: list[list[int]]) -> list[str]:
        return list(self._tokenizer.batch_decode(sequences, skip_special_tokens=False))

    def vocabulary(self) -> dict[str, int]:
        getters: list[Callable[[], Any]] = [
            lambda: self._tokenizer.get_vocab(),
            lambda: getattr(self._tokenizer, "vocab", None),
            lambda: getattr(self._tokenizer, "encoder", None),
        ]
        for getter in getters:
            try:
                vocab = coerce_vocabulary(getter())
            except Exception as exc:
                logger.debug(f"Vocabulary accessor failed: {exc}")
                continue
            if vocab:
                return vocab
        return {}

    def offset_mapping(self, text: str) -> list[tuple[int, int]] | None:
        if not getattr(self._tokenizer, "is_fast", False):
            return None
        encoded = self._tokenizer(
            text, add_special_tokens=False, return_offsets_mapping=True
        )
        return [(int(start), int(end)) for start, end in encoded["offset_mapping"]]

    @property
    def unknown_tokens(self) -> frozenset[str]:
        unk = getattr(self._tokenizer, "unk_token", None)
        return frozenset({unk}) if isinstance(unk, str) else frozenset()


def load_huggingface_tokenizer(model_name: str) -> TokenizerAdapter:
    return HuggingFaceTokenizerAdapter.from_pretrained(model_name)
