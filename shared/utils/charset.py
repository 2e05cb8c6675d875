"""Charset helpers for destinations that mangle non-ASCII letters."""
from __future__ import annotations

import unicodedata

# Letters NFD does not decompose into base + combining mark.
_SPECIAL_FOLDS = {
    "ł": "l", "Ł": "L",
    "đ": "d", "Đ": "D",
    "ø": "o", "Ø": "O",
    "ß": "ss",
    "æ": "ae", "Æ": "AE",
    "œ": "oe", "Œ": "OE",
}


def fold_accents(text: str) -> str:
    """Map accented letters to their plain ASCII equivalents.

    Characters that are neither accented letters nor special folds (emoji,
    punctuation, other scripts) pass through unchanged.
    """

    out = []
    for ch in text or "":
        if ch in _SPECIAL_FOLDS:
            out.append(_SPECIAL_FOLDS[ch])
            continue

        decomposed = unicodedata.normalize("NFD", ch)
        base = decomposed[0]
        if len(decomposed) > 1 and base.isascii() and all(
            unicodedata.combining(mark) for mark in decomposed[1:]
        ):
            out.append(base)
        else:
            out.append(ch)

    return "".join(out)
