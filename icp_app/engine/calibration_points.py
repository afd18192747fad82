"""Standards extraction and concentration/intensity pairing."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from icp_app.engine.column_rules import (
    STANDARD_LABEL_FIELD,
    ChannelKind,
    DiscoveryRules,
    MeasurementChannel,
    leading_element,
)
from icp_app.engine.settings import ReconcileSettings

logger = logging.getLogger(__name__)

_THOUSANDS_RE = re.compile(r"^[-+]?\d{1,3}(,\d{3})+(\.\d+)?$")


@dataclass(frozen=True)
class CalibrationPoint:
    index: int
    label: str
    concentration: float
    intensity: float
    excluded: bool = False

    def with_excluded(self, excluded: bool) -> "CalibrationPoint":
        return replace(self, excluded=bool(excluded))


@dataclass
class ExtractionResult:
    points: List[CalibrationPoint]
    intensity_column: str
    concentration_column: Optional[str]
    reason: Optional[str] = None
    skipped_rows: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.concentration_column is not None and bool(self.points)


def parse_float(value: Any) -> Optional[float]:
    """Parse a spreadsheet cell to a finite float, or ``None``."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        if _THOUSANDS_RE.match(text):
            text = text.replace(",", "")
        try:
            number = float(text)
        except ValueError:
            return None
    if not math.isfinite(number):
        return None
    return number


def extract_standards(
    rows: Sequence[Mapping[str, Any]],
    settings: ReconcileSettings | None = None,
    rules: DiscoveryRules | None = None,
) -> List[Dict[str, Any]]:
    """Return copies of the rows labelled as calibration standards.

    A row is a standard when any identifier column holds one of the
    configured standard labels (case-insensitive). Each copy carries the
    upper-cased label under ``STANDARD_LABEL_FIELD``.
    """

    settings = settings or ReconcileSettings()
    rules = rules or DiscoveryRules.from_settings(settings)
    if not rows:
        return []
    alphabet = {str(label).strip().upper() for label in settings.standard_label_alphabet}
    search_columns = rules.identifier_columns(list(rows[0].keys())).columns
    standards: List[Dict[str, Any]] = []
    for row in rows:
        for col in search_columns:
            value = row.get(col)
            if value is None:
                continue
            text = str(value).strip().upper()
            if text in alphabet:
                entry = dict(row)
                entry[STANDARD_LABEL_FIELD] = text
                standards.append(entry)
                break
    return standards


def intensity_base_name(intensity_column: str, rules: DiscoveryRules) -> str:
    base = intensity_column
    for keyword in rules.intensity_keywords:
        base = re.sub(rf"[_\s]?{re.escape(keyword)}\w*", "", base, count=1, flags=re.IGNORECASE)
    return base.strip(" _-()[]")


def resolve_concentration_column(
    intensity_column: str,
    columns: Sequence[str],
    rules: DiscoveryRules,
) -> Optional[str]:
    """Find the concentration column paired with ``intensity_column``.

    The first concentration-like column containing the intensity column's
    base name wins. Otherwise any concentration column sharing the leading
    element symbol (and not itself an intensity column) is accepted. An
    intensity column with no base name pairs with the only concentration
    column, if there is exactly one.
    """

    candidates = [col for col in columns if col != STANDARD_LABEL_FIELD and col != intensity_column]
    base = intensity_base_name(intensity_column, rules).lower()
    if base:
        for col in candidates:
            if rules.is_concentration(col) and base in col.lower():
                return col
    element = leading_element(intensity_column)
    if element:
        for col in candidates:
            if (
                element.lower() in col.lower()
                and rules.is_concentration(col)
                and not rules.is_intensity(col)
            ):
                return col
    if not base:
        pure = [c for c in candidates if rules.is_concentration(c) and not rules.is_intensity(c)]
        if len(pure) == 1:
            return pure[0]
    return None


def pair_channels(
    columns: Sequence[str],
    rules: DiscoveryRules,
    channels: Mapping[str, MeasurementChannel] | None = None,
) -> Dict[str, Optional[str]]:
    """Resolve the concentration partner of every intensity column once.

    Descriptor joins on ``(element, wavelength, view)`` are computed for
    comparison; disagreements are logged and the header heuristic is kept.
    """

    channels = dict(channels or rules.channels(columns))
    conc_by_key: Dict[tuple, str] = {}
    for channel in channels.values():
        if channel.kind == ChannelKind.CONCENTRATION and channel.element and channel.wavelength:
            conc_by_key.setdefault(channel.key, channel.column)
    pairs: Dict[str, Optional[str]] = {}
    for col, channel in channels.items():
        if channel.kind != ChannelKind.INTENSITY:
            continue
        heuristic = resolve_concentration_column(col, columns, rules)
        joined = conc_by_key.get(channel.key)
        if joined and heuristic and joined != heuristic:
            logger.debug(
                "Channel join for '%s' gives '%s' but header pairing gives '%s'",
                col,
                joined,
                heuristic,
            )
        pairs[col] = heuristic
    return pairs


def _point_label(row: Mapping[str, Any], position: int, label_columns: Sequence[str]) -> str:
    explicit = row.get(STANDARD_LABEL_FIELD)
    if explicit not in (None, ""):
        return str(explicit)
    for col in label_columns:
        value = row.get(col)
        if value is None:
            continue
        if isinstance(value, float) and math.isnan(value):
            continue
        text = str(value).strip()
        if text:
            return text
    return f"Point {position + 1}"


def extract_points(
    standards: Sequence[Mapping[str, Any]],
    intensity_column: str,
    rules: DiscoveryRules | None = None,
    *,
    concentration_column: str | None = None,
) -> ExtractionResult:
    """Build calibration points for ``intensity_column`` from standards rows.

    Each point keeps the row position in ``standards`` as ``index``. Rows
    where either value fails to parse to a finite number are skipped. When
    no concentration column can be resolved an empty result with a reason
    is returned.
    """

    rules = rules or DiscoveryRules.from_settings()
    columns: List[str] = []
    for row in standards:
        for key in row.keys():
            if key not in columns:
                columns.append(key)
    if concentration_column is None:
        concentration_column = resolve_concentration_column(intensity_column, columns, rules)
    if concentration_column is None:
        reason = f"No concentration column found for '{intensity_column}'"
        logger.warning("%s", reason)
        return ExtractionResult([], intensity_column, None, reason=reason)

    label_columns = rules.identifier_columns(columns).columns
    points: List[CalibrationPoint] = []
    skipped: List[int] = []
    for position, row in enumerate(standards):
        conc = parse_float(row.get(concentration_column))
        intensity = parse_float(row.get(intensity_column))
        if conc is None or intensity is None:
            logger.debug(
                "Skipping standard row %d: conc=%r, intensity=%r",
                position,
                row.get(concentration_column),
                row.get(intensity_column),
            )
            skipped.append(position)
            continue
        points.append(
            CalibrationPoint(
                index=position,
                label=_point_label(row, position, label_columns),
                concentration=conc,
                intensity=intensity,
            )
        )
    reason = None
    if not points:
        reason = f"No numeric pairs in '{concentration_column}' vs '{intensity_column}'"
    logger.info(
        "Extracted %d calibration points from %s vs %s",
        len(points),
        concentration_column,
        intensity_column,
    )
    return ExtractionResult(
        points=points,
        intensity_column=intensity_column,
        concentration_column=concentration_column,
        reason=reason,
        skipped_rows=skipped,
    )


def apply_exclusions(points: Iterable[CalibrationPoint], excluded: Iterable[int]) -> List[CalibrationPoint]:
    excluded_set = set(excluded)
    return [point.with_excluded(point.index in excluded_set) for point in points]


def included(points: Iterable[CalibrationPoint]) -> List[CalibrationPoint]:
    return [point for point in points if not point.excluded]
