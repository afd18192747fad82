"""Fuzzy linking of analytic-run rows to canonical sample records."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from icp_app.engine.column_rules import DiscoveryRules
from icp_app.engine.identity import normalize_id, similarity
from icp_app.engine.settings import ReconcileSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CanonicalRecord:
    id: str
    payload: Mapping[str, Any]
    normalized_id: str = ""

    def __post_init__(self):
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))
        object.__setattr__(self, "normalized_id", normalize_id(self.id))


@dataclass(frozen=True)
class Match:
    source_id: str
    target_id: str
    confidence: float
    source_row_index: int
    target_payload: Mapping[str, Any]
    source_column: str = ""
    run_name: str = ""
    source_row: Mapping[str, Any] = field(default_factory=dict)

    @property
    def confidence_level(self) -> str:
        return confidence_level(self.confidence)


@dataclass
class MatchReport:
    matches: List[Match]
    unmatched: List[int]
    identifier_columns: List[str]
    used_fallback_column: bool
    total_rows: int

    @property
    def match_rate(self) -> float:
        if not self.total_rows:
            return 0.0
        return len(self.matches) / self.total_rows

    @property
    def reason(self) -> Optional[str]:
        if self.used_fallback_column and self.identifier_columns:
            return (
                f"No identifier column found; using first column "
                f"'{self.identifier_columns[0]}'"
            )
        if not self.identifier_columns:
            return "No columns available for identifier lookup"
        return None


def confidence_level(confidence: float) -> str:
    if confidence >= 0.9:
        return "High"
    if confidence >= 0.7:
        return "Medium"
    return "Low"


def _trimmed(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    text = str(value).strip()
    if text.lower() == "nan":
        return ""
    return text


def records_from_rows(
    rows: Iterable[Mapping[str, Any]],
    id_column: str | None = None,
    settings: ReconcileSettings | None = None,
) -> List[CanonicalRecord]:
    """Build canonical records from master rows.

    ``id_column`` defaults to ``settings.master_id_column``; if that header is
    absent the first identifier-like column is used instead.
    """

    settings = settings or ReconcileSettings()
    rows = list(rows)
    if not rows:
        return []
    column = id_column or settings.master_id_column
    if column not in rows[0]:
        discovered = DiscoveryRules.from_settings(settings).identifier_columns(list(rows[0].keys()))
        logger.warning(
            "Master ID column '%s' not found; using '%s'",
            column,
            discovered.columns[0] if discovered.columns else None,
        )
        if not discovered.columns:
            return []
        column = discovered.columns[0]
    return [CanonicalRecord(id=_trimmed(row.get(column)), payload=row) for row in rows]


def best_match(
    value: str,
    records: Sequence[CanonicalRecord],
    *,
    min_shared_length: int = 0,
) -> Optional[Tuple[CanonicalRecord, float]]:
    """Highest scoring record for ``value``; first seen wins ties."""

    normalized = normalize_id(value)
    best: Optional[CanonicalRecord] = None
    best_score = 0.0
    for record in records:
        if not record.id:
            continue
        score = similarity(normalized, record.normalized_id, min_shared_length=min_shared_length)
        if score > best_score:
            best, best_score = record, score
    if best is None:
        return None
    return best, best_score


def match_rows(
    source_rows: Sequence[Mapping[str, Any]],
    records: Sequence[CanonicalRecord],
    settings: ReconcileSettings | None = None,
    *,
    run_name: str = "",
    rules: DiscoveryRules | None = None,
) -> MatchReport:
    """Link each source row to its best canonical record above the threshold.

    The identifier is read from the first candidate column whose trimmed
    value is at least ``min_identifier_length`` characters long. Rows whose
    best score does not exceed ``match_threshold`` are reported as
    unmatched. Cost is proportional to ``len(source_rows) * len(records)``.
    """

    settings = settings or ReconcileSettings()
    rules = rules or DiscoveryRules.from_settings(settings)
    threshold = float(settings.match_threshold)
    min_length = int(settings.min_identifier_length)

    if source_rows:
        columns = list(source_rows[0].keys())
    else:
        columns = []
    discovered = rules.identifier_columns(columns)
    if discovered.used_fallback and columns:
        logger.info(
            "No identifier column in %s; falling back to '%s'",
            run_name or "source rows",
            discovered.columns[0],
        )

    matches: List[Match] = []
    unmatched: List[int] = []
    for idx, row in enumerate(source_rows):
        value, column = "", ""
        for candidate in discovered.columns:
            text = _trimmed(row.get(candidate))
            if len(text) >= min_length:
                value, column = text, candidate
                break
        if not value:
            unmatched.append(idx)
            continue
        found = best_match(value, records, min_shared_length=int(settings.min_shared_length))
        if found is None or found[1] <= threshold:
            logger.debug("Row %d ('%s') unmatched", idx, value)
            unmatched.append(idx)
            continue
        record, score = found
        matches.append(
            Match(
                source_id=value,
                target_id=record.id,
                confidence=score,
                source_row_index=idx,
                target_payload=record.payload,
                source_column=column,
                run_name=run_name,
                source_row=MappingProxyType(dict(row)),
            )
        )

    logger.info(
        "Matched %d/%d rows%s",
        len(matches),
        len(source_rows),
        f" in {run_name}" if run_name else "",
    )
    return MatchReport(
        matches=matches,
        unmatched=unmatched,
        identifier_columns=list(discovered.columns),
        used_fallback_column=discovered.used_fallback,
        total_rows=len(source_rows),
    )


def matches_by_target(matches: Iterable[Match]) -> Dict[str, List[Match]]:
    grouped: Dict[str, List[Match]] = {}
    for match in matches:
        grouped.setdefault(match.target_id, []).append(match)
    return grouped
