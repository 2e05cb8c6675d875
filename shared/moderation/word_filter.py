"""
Word filter / censorship engine.

All matching for detection happens on a normalized form of the text:
lowercased, NFD-decomposed with combining marks removed, and reduced to
ASCII letters and digits. Censoring works on the original text so the relayed
message keeps its shape.
"""

from __future__ import annotations

import re
import threading
import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from shared.config.word_filter import WordFilterLists

REPLACEMENT_CHAR = "*"

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_TOKEN_SPLIT = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", (text or "").lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub("", stripped)


def _mask(match: re.Match) -> str:
    word = match.group(0)
    if len(word) <= 2:
        return REPLACEMENT_CHAR * len(word)
    return word[0] + REPLACEMENT_CHAR * (len(word) - 2) + word[-1]


@dataclass(frozen=True)
class CensorVerdict:
    original_text: str
    contains_banned: bool
    should_block: bool
    censored_text: str
    found_words: Tuple[str, ...]


class WordFilter:
    """
    Stateless-per-call filter over a mutable word configuration.

    - strict_mode=False: a banned word matches anywhere in the normalized text
    - strict_mode=True: a banned word must equal a whole normalized token
    - exceptions map a banned word to carrier words that void its match
      (e.g. "nazi" inside "organization")
    """

    def __init__(
        self,
        *,
        banned_words: Optional[Iterable[str]] = None,
        block_words: Optional[Iterable[str]] = None,
        exceptions: Optional[Mapping[str, Sequence[str]]] = None,
        strict_mode: bool = False,
    ):
        self.strict_mode = strict_mode
        self._banned: List[str] = []
        for word in banned_words or []:
            self._append_unique(word)
        self._block: List[str] = [w for w in (block_words or []) if normalize_text(w)]
        self._exceptions: Dict[str, Tuple[str, ...]] = {
            normalize_text(word): tuple(carriers)
            for word, carriers in (exceptions or {}).items()
        }
        self._lock = threading.Lock()

    @classmethod
    def from_lists(cls, lists: WordFilterLists, *, strict_mode: bool = False) -> "WordFilter":
        return cls(
            banned_words=lists.banned_words,
            block_words=lists.block_words,
            exceptions=lists.exceptions,
            strict_mode=strict_mode,
        )

    # ------------------------------------------------------------------ #
    # Word list management
    # ------------------------------------------------------------------ #

    @property
    def banned_words(self) -> Tuple[str, ...]:
        return tuple(self._banned)

    @property
    def block_words(self) -> Tuple[str, ...]:
        return tuple(self._block)

    def _append_unique(self, word: str) -> bool:
        word = (word or "").strip().lower()
        if not word or not normalize_text(word) or word in self._banned:
            return False
        self._banned.append(word)
        return True

    def add_word(self, word: str) -> bool:
        with self._lock:
            return self._append_unique(word)

    def remove_word(self, word: str) -> bool:
        word = (word or "").strip().lower()
        with self._lock:
            if word not in self._banned:
                return False
            self._banned.remove(word)
            return True

    # ------------------------------------------------------------------ #
    # Detection
    # ------------------------------------------------------------------ #

    def _is_false_positive(self, normalized_text: str, normalized_word: str) -> bool:
        carriers = self._exceptions.get(normalized_word)
        if not carriers:
            return False
        return any(normalize_text(c) in normalized_text for c in carriers)

    def contains_banned(self, text: str) -> bool:
        normalized = normalize_text(text)
        tokens = None
        if self.strict_mode:
            tokens = {normalize_text(t) for t in _TOKEN_SPLIT.split(text or "")}

        with self._lock:
            words = list(self._banned)

        for word in words:
            normalized_word = normalize_text(word)
            if self.strict_mode:
                hit = normalized_word in tokens
            else:
                hit = normalized_word in normalized
            if hit and not self._is_false_positive(normalized, normalized_word):
                return True
        return False

    def should_block(self, text: str) -> bool:
        normalized = normalize_text(text)
        return any(normalize_text(w) in normalized for w in self._block)

    def found_words(self, text: str) -> Tuple[str, ...]:
        normalized = normalize_text(text)
        with self._lock:
            words = list(self._banned)
        return tuple(w for w in words if normalize_text(w) in normalized)

    # ------------------------------------------------------------------ #
    # Censoring
    # ------------------------------------------------------------------ #

    def censor(self, text: str) -> str:
        censored = text or ""
        with self._lock:
            words = list(self._banned)
        for word in words:
            censored = re.sub(re.escape(word), _mask, censored, flags=re.IGNORECASE)
        return censored

    def heavy_censor(self, text: str) -> str:
        """Mask every word-bounded match completely."""
        censored = text or ""
        with self._lock:
            words = list(self._banned)
        for word in words:
            pattern = rf"\b{re.escape(word)}\b"
            censored = re.sub(
                pattern,
                lambda m: REPLACEMENT_CHAR * len(m.group(0)),
                censored,
                flags=re.IGNORECASE,
            )
        return censored

    # ------------------------------------------------------------------ #

    def analyze(self, text: str) -> CensorVerdict:
        return CensorVerdict(
            original_text=text,
            contains_banned=self.contains_banned(text),
            should_block=self.should_block(text),
            censored_text=self.censor(text),
            found_words=self.found_words(text),
        )


__all__ = [
    "CensorVerdict",
    "REPLACEMENT_CHAR",
    "WordFilter",
    "normalize_text",
]
