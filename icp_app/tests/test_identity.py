from __future__ import annotations

import pytest

from icp_app.engine.identity import (
    identifier_similarity,
    levenshtein_distance,
    normalize_id,
    similarity,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("S-001", "s001"),
        ("  Well_12 B ", "well12b"),
        ("AB#12/x", "ab12x"),
        (None, ""),
        ("", ""),
        (1001.0, "1001"),
        (42, "42"),
    ],
)
def test_normalize_id(raw, expected):
    assert normalize_id(raw) == expected


def test_normalize_id_is_idempotent():
    once = normalize_id("Site_07 - Deep")
    assert normalize_id(once) == once


def test_levenshtein_distance_basics():
    assert levenshtein_distance("kitten", "sitting") == 3
    assert levenshtein_distance("", "abc") == 3
    assert levenshtein_distance("abc", "") == 3
    assert levenshtein_distance("same", "same") == 0
    assert levenshtein_distance("abcd", "bcda") == levenshtein_distance("bcda", "abcd")


def test_similarity_identical_strings_score_one():
    assert similarity("s001", "s001") == 1.0
    assert similarity("", "") == 1.0


def test_similarity_containment_bonus():
    assert similarity("s001", "s001x") == pytest.approx(0.96)
    assert similarity("s001x", "s001") == pytest.approx(0.96)


def test_similarity_empty_string_is_contained_in_anything():
    assert similarity("", "abcd") == pytest.approx(0.8)


def test_similarity_min_shared_length_disables_short_containment():
    # "a" is contained in "abcd" but too short to count as shared
    score = similarity("a", "abcd", min_shared_length=2)
    assert score == pytest.approx(1.0 - 3 / 4)
    assert similarity("ab", "abcd", min_shared_length=2) == pytest.approx(0.9)


def test_similarity_edit_distance_path():
    assert similarity("abcd", "abxd") == pytest.approx(0.75)
    assert similarity("abc", "xyz") == 0.0


def test_similarity_is_symmetric_and_bounded():
    pairs = [("s001", "s002"), ("a", "bcdef"), ("lake1", "lake12"), ("", "q")]
    for a, b in pairs:
        score = similarity(a, b)
        assert 0.0 <= score <= 1.0
        assert score == pytest.approx(similarity(b, a))


def test_identifier_similarity_normalises_both_sides():
    assert identifier_similarity("S-001", "s_001") == 1.0
    assert identifier_similarity(1001.0, "1001") == 1.0
