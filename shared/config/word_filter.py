"""
Word filter list loader.

Loads banned / blocking / exception word lists from word_filter.json next to
this module (or an explicit path). A missing file falls back to the built-in
defaults; a malformed file is a ConfigError.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator

from shared.config.errors import ConfigError
from shared.logging.logger import get_logger

log = get_logger("shared.config.word_filter")

_CONFIG_PATH = Path(__file__).parent / "word_filter.json"

WORD_FILTER_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "banned_words": {"type": "array", "items": {"type": "string", "minLength": 1}},
        "block_words": {"type": "array", "items": {"type": "string", "minLength": 1}},
        "exceptions": {
            "type": "object",
            "additionalProperties": {
                "type": "array",
                "items": {"type": "string", "minLength": 1},
            },
        },
    },
}


@dataclass
class WordFilterLists:
    banned_words: List[str] = field(default_factory=lambda: ["kurwa"])
    block_words: List[str] = field(default_factory=lambda: ["dgasudg7632gd67agsdasdhsad"])
    exceptions: Dict[str, List[str]] = field(default_factory=lambda: {
        "nazi": ["gymnasium", "organizacja", "organization", "magazine", "amazon"],
    })


def parse_word_filter_lists(raw: Dict[str, Any]) -> WordFilterLists:
    errors = sorted(
        Draft7Validator(WORD_FILTER_SCHEMA).iter_errors(raw),
        key=lambda e: list(e.path),
    )
    if errors:
        loc = "/".join(str(p) for p in errors[0].path)
        raise ConfigError(f"word_filter config invalid at '{loc}': {errors[0].message}")

    defaults = WordFilterLists()
    return WordFilterLists(
        banned_words=list(raw.get("banned_words", defaults.banned_words)),
        block_words=list(raw.get("block_words", defaults.block_words)),
        exceptions={
            str(k): list(v)
            for k, v in raw.get("exceptions", defaults.exceptions).items()
        },
    )


def load_word_filter_lists(path: Optional[Path] = None) -> WordFilterLists:
    path = Path(path) if path else _CONFIG_PATH

    if not path.exists():
        log.warning(f"word_filter.json not found at {path}; using built-in lists")
        return WordFilterLists()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to read word filter config {path}: {e}") from e

    lists = parse_word_filter_lists(raw)
    log.info(
        f"Loaded word filter lists from {path.as_posix()} "
        f"(banned={len(lists.banned_words)}, block={len(lists.block_words)}, "
        f"exceptions={len(lists.exceptions)})"
    )
    return lists
