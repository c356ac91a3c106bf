"""Helpers for recognising vocabulary marker tokens."""

from __future__ import annotations

import re
from collections.abc import Collection

DEFAULT_CONTINUATION_PREFIXES = ("##", "▁")

_BYTE_ESCAPE = re.compile(r"^[\[<]0x[0-9A-Fa-f]{2}[\]>]")
_UNKNOWN_PREFIXES = ("[UNK", "<unk")


def strip_markers(
    token: str, prefixes: Collection[str] = DEFAULT_CONTINUATION_PREFIXES
) -> str:
    """Drop one leading continuation marker and surrounding whitespace."""
    for prefix in prefixes:
        if token.startswith(prefix):
            token = token[len(prefix) :]
            break
    return token.strip()


def has_continuation_prefix(
    token: str, prefixes: Collection[str] = DEFAULT_CONTINUATION_PREFIXES
) -> bool:
    return any(token.startswith(prefix) for prefix in prefixes)


def is_byte_escape(token: str) -> bool:
    return bool(_BYTE_ESCAPE.match(token))


def is_unknown_token(token: str, unknown_tokens: Collection[str] = ()) -> bool:
    return token in unknown_tokens or token.startswith(_UNKNOWN_PREFIXES)


def is_fallback_token(token: str, unknown_tokens: Collection[str] = ()) -> bool:
    return is_byte_escape(token) or is_unknown_token(token, unknown_tokens)
