"""Query embedding providers."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from hashlib import blake2b

from langchain_core.embeddings import Embeddings

from analysis_middleware.tokenizer.markers import strip_markers
from analysis_middleware.vectors import l2_norm

_TERM_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


class Embedder(ABC):
    """Supplies the query vector that retrieval attribution is measured against."""

    @abstractmethod
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        ...

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        ...

    def embed_tokens(self, tokens: list[str]) -> list[list[float]]:
        """One vector per tokenizer piece, continuation markers removed."""
        return self.embed_documents([strip_markers(token) or token for token in tokens])


class HashingEmbedder(Embedder):
    """Signed feature hashing over word and punctuation terms.

    Needs no model download, so traces stay reproducible offline. Text that
    shares terms with a query lands close to it, which is enough for the
    relative contribution scores; absolute similarities mean little.
    """

    def __init__(self, dimension: int = 256) -> None:
        if dimension < 1:
            raise ValueError("dimension must be positive")
        self.dimension = dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._hash_terms(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._hash_terms(text)

    def _hash_terms(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for term in _TERM_PATTERN.findall(text.lower()):
            digest = blake2b(term.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimension
            vector[bucket] += -1.0 if digest[4] & 1 else 1.0

        norm = l2_norm(vector)
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class LangChainEmbedder(Embedder):
    """Adapts any LangChain `Embeddings` implementation."""

    def __init__(self, embeddings: Embeddings) -> None:
        self._embeddings = embeddings

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [list(vector) for vector in self._embeddings.embed_documents(texts)]

    def embed_query(self, text: str) -> list[float]:
        return list(self._embeddings.embed_query(text))
