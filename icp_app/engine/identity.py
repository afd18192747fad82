"""Identifier normalisation and bounded string similarity."""

from __future__ import annotations

import math
import re
from typing import Any

_SEPARATOR_RE = re.compile(r"[-_\s]")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")

CONTAINMENT_BASE = 0.8
CONTAINMENT_SPAN = 0.2


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if not math.isfinite(value):
            return ""
        # spreadsheet readers hand back 1001.0 for an integer ID cell
        if value.is_integer():
            return str(int(value))
    return str(value)


def normalize_id(value: Any) -> str:
    """Return the canonical form of an identifier.

    Lowercases, removes whitespace, hyphens and underscores, then drops any
    remaining character outside ``[a-z0-9]``. Never raises; ``None`` and
    empty values normalise to ``""``.
    """

    text = _as_text(value).lower()
    text = _SEPARATOR_RE.sub("", text)
    return _NON_ALNUM_RE.sub("", text)


def levenshtein_distance(a: str, b: str) -> int:
    """Unit-cost edit distance using a single reusable row."""

    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)
    row = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        diagonal = row[0]
        row[0] = i
        for j, char_b in enumerate(b, start=1):
            above = row[j]
            if char_a == char_b:
                row[j] = diagonal
            else:
                row[j] = 1 + min(diagonal, above, row[j - 1])
            diagonal = above
    return row[-1]


def similarity(a: str, b: str, *, min_shared_length: int = 0) -> float:
    """Score two normalised identifiers in ``[0, 1]``.

    Identical strings score 1.0. When one string contains the other the
    score is ``0.8 + 0.2 * len(shorter) / len(longer)``; otherwise it is one
    minus the edit distance relative to the longer string, floored at zero.
    ``min_shared_length`` disables the containment rule for shorter strings
    below that length; the default keeps it active for every length,
    including the empty string.
    """

    if a == b:
        return 1.0
    longer, shorter = (a, b) if len(a) >= len(b) else (b, a)
    if shorter in longer and len(shorter) >= min_shared_length:
        return CONTAINMENT_BASE + (len(shorter) / len(longer)) * CONTAINMENT_SPAN
    distance = levenshtein_distance(a, b)
    return max(0.0, 1.0 - distance / len(longer))


def identifier_similarity(raw_a: Any, raw_b: Any, *, min_shared_length: int = 0) -> float:
    return similarity(
        normalize_id(raw_a),
        normalize_id(raw_b),
        min_shared_length=min_shared_length,
    )
