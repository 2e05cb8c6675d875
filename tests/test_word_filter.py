from pathlib import Path

import pytest

from shared.config.errors import ConfigError
from shared.config.word_filter import (
    WordFilterLists,
    load_word_filter_lists,
    parse_word_filter_lists,
)
from shared.moderation.word_filter import WordFilter, normalize_text


@pytest.fixture
def word_filter() -> WordFilter:
    return WordFilter.from_lists(load_word_filter_lists())


def test_normalize_text_strips_accents_and_punctuation() -> None:
    assert normalize_text("Żółw, É!") == "zowe"
    assert normalize_text("K.U.R.W.A") == "kurwa"
    assert normalize_text("") == ""


def test_polish_profanity_is_detected_and_censored(word_filter: WordFilter) -> None:
    verdict = word_filter.analyze("Test z wulgaryzmem kurwa")

    assert verdict.contains_banned is True
    assert verdict.should_block is False
    assert verdict.censored_text == "Test z wulgaryzmem k***a"
    assert "kurwa" in verdict.found_words


def test_clean_text_is_untouched(word_filter: WordFilter) -> None:
    verdict = word_filter.analyze("Dobry wieczór wszystkim")

    assert verdict.contains_banned is False
    assert verdict.should_block is False
    assert verdict.censored_text == "Dobry wieczór wszystkim"
    assert verdict.found_words == ()


def test_block_sentinel_triggers_block(word_filter: WordFilter) -> None:
    assert word_filter.should_block("hello dgasudg7632gd67agsdasdhsad there") is True
    assert word_filter.should_block("hello there") is False


def test_obfuscated_word_is_detected_in_loose_mode() -> None:
    wf = WordFilter(banned_words=["kurwa"])

    assert wf.contains_banned("k-u-r-w-a") is True
    assert wf.contains_banned("xxkurwaxx") is True


def test_strict_mode_requires_whole_token() -> None:
    wf = WordFilter(banned_words=["kurwa"], strict_mode=True)

    assert wf.contains_banned("ty kurwa!") is True
    assert wf.contains_banned("xxkurwaxx") is False


def test_exception_carrier_voids_match() -> None:
    wf = WordFilter(
        banned_words=["nazi", "rape"],
        exceptions={"nazi": ["magazine"], "rape": ["grape"]},
    )

    assert wf.contains_banned("the nazi article in that magazine") is False
    assert wf.contains_banned("grape juice") is False
    assert wf.contains_banned("nazi propaganda") is True


def test_exceptions_apply_in_strict_mode() -> None:
    wf = WordFilter(
        banned_words=["nazi"],
        exceptions={"nazi": ["magazine"]},
        strict_mode=True,
    )

    assert wf.contains_banned("nazi magazine") is False


def test_censor_masks_short_words_fully() -> None:
    wf = WordFilter(banned_words=["ab"])

    assert wf.censor("AB and ab") == "** and **"


def test_censor_preserves_case_of_edges() -> None:
    wf = WordFilter(banned_words=["simp"])

    assert wf.censor("SIMP!") == "S**P!"


def test_censor_escapes_regex_metacharacters() -> None:
    wf = WordFilter(banned_words=["a.b"])

    assert wf.censor("axb a.b") == "axb a*b"


def test_heavy_censor_masks_whole_bounded_words() -> None:
    wf = WordFilter(banned_words=["simp"])

    assert wf.heavy_censor("simp simpson") == "**** simpson"


def test_add_and_remove_word() -> None:
    wf = WordFilter(banned_words=["kurwa"])

    assert wf.add_word("Foo") is True
    assert wf.add_word("foo") is False
    assert wf.add_word("  ") is False
    assert "foo" in wf.banned_words
    assert wf.contains_banned("FOO bar") is True

    assert wf.remove_word("FOO") is True
    assert wf.remove_word("foo") is False
    assert wf.contains_banned("foo bar") is False


def test_parse_lists_rejects_wrong_types() -> None:
    with pytest.raises(ConfigError):
        parse_word_filter_lists({"banned_words": "kurwa"})


def test_parse_lists_uses_defaults_for_missing_keys() -> None:
    lists = parse_word_filter_lists({"banned_words": ["x"]})

    assert lists.banned_words == ["x"]
    assert lists.block_words == WordFilterLists().block_words


def test_missing_lists_file_falls_back_to_defaults(tmp_path: Path) -> None:
    lists = load_word_filter_lists(tmp_path / "missing.json")

    assert lists == WordFilterLists()


def test_malformed_lists_file_is_config_error(tmp_path: Path) -> None:
    path = tmp_path / "word_filter.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_word_filter_lists(path)
