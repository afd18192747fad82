"""Dashboard statistics over the master sample spreadsheet.

Per-parameter summaries (count, mean, median, min, max) for the chemical
and isotope columns, headline counts for the survey (samples, distinct
locations and traverses, year span) and a free-text row filter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from icp_app.engine.settings import ReconcileSettings

__all__ = [
    "ParameterStats",
    "DashboardSummary",
    "MasterStats",
    "calculate_stats",
    "dashboard_summary",
    "filter_rows",
    "master_stats",
]

logger = logging.getLogger(__name__)

LATITUDE_COLUMN = "Latitude"
LONGITUDE_COLUMN = "Longitude"
TRAVERSE_COLUMN = "Traverse_new"
DATE_COLUMN = "Date"


@dataclass(frozen=True)
class ParameterStats:
    parameter: str
    count: int
    mean: float
    median: float
    minimum: float
    maximum: float

    def to_row(self) -> Dict[str, Any]:
        return {
            "Parameter": self.parameter,
            "Count": self.count,
            "Mean": round(self.mean, 4),
            "Median": round(self.median, 4),
            "Min": round(self.minimum, 4),
            "Max": round(self.maximum, 4),
        }


@dataclass(frozen=True)
class DashboardSummary:
    total_samples: int
    unique_locations: int
    unique_traverses: int
    first_year: Optional[int] = None
    last_year: Optional[int] = None

    @property
    def date_range(self) -> str:
        if self.first_year is None or self.last_year is None:
            return "N/A"
        return f"{self.first_year} - {self.last_year}"

    def to_rows(self) -> List[Dict[str, Any]]:
        return [
            {"Metric": "Total Samples", "Value": self.total_samples},
            {"Metric": "Unique Locations", "Value": self.unique_locations},
            {"Metric": "Unique Traverses", "Value": self.unique_traverses},
            {"Metric": "Date Range", "Value": self.date_range},
        ]


@dataclass
class MasterStats:
    summary: DashboardSummary
    chemical: List[ParameterStats] = field(default_factory=list)
    isotope: List[ParameterStats] = field(default_factory=list)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and value != value:
        return True
    return isinstance(value, str) and not value.strip()


def calculate_stats(rows: Sequence[Mapping[str, Any]], parameters: Sequence[str]) -> List[ParameterStats]:
    """Summarise the numeric values of each parameter column.

    Cells that do not parse as numbers are ignored. Parameters absent from
    the data, or without a single numeric value, are left out. The median
    is the upper middle value for even counts.
    """

    frame = pd.DataFrame(list(rows))
    stats: List[ParameterStats] = []
    for parameter in parameters:
        if parameter not in frame.columns:
            continue
        values = pd.to_numeric(frame[parameter], errors="coerce").dropna()
        if values.empty:
            continue
        ordered = values.sort_values(ignore_index=True)
        stats.append(
            ParameterStats(
                parameter=parameter,
                count=int(values.size),
                mean=float(values.mean()),
                median=float(ordered.iloc[len(ordered) // 2]),
                minimum=float(ordered.iloc[0]),
                maximum=float(ordered.iloc[-1]),
            )
        )
    return stats


def _year(value: Any) -> Optional[int]:
    stamp = pd.to_datetime(value, errors="coerce")
    if pd.isna(stamp):
        return None
    return int(stamp.year)


def dashboard_summary(rows: Sequence[Mapping[str, Any]]) -> DashboardSummary:
    """Headline counts for the master spreadsheet."""

    locations = set()
    traverses = set()
    years: List[int] = []
    for row in rows:
        lat, lon = row.get(LATITUDE_COLUMN), row.get(LONGITUDE_COLUMN)
        if not (_is_blank(lat) and _is_blank(lon)):
            locations.add(("" if _is_blank(lat) else str(lat), "" if _is_blank(lon) else str(lon)))
        traverse = row.get(TRAVERSE_COLUMN)
        if not _is_blank(traverse):
            traverses.add(str(traverse).strip())
        date = row.get(DATE_COLUMN)
        if not _is_blank(date):
            year = _year(date)
            if year is None:
                logger.debug("Unparseable date %r ignored", date)
            else:
                years.append(year)
    return DashboardSummary(
        total_samples=len(rows),
        unique_locations=len(locations),
        unique_traverses=len(traverses),
        first_year=min(years) if years else None,
        last_year=max(years) if years else None,
    )


def filter_rows(rows: Sequence[Mapping[str, Any]], query: str | None) -> List[Mapping[str, Any]]:
    """Rows with any cell containing ``query``, case-insensitively."""

    if not query:
        return list(rows)
    needle = query.lower()
    return [
        row
        for row in rows
        if any(needle in str(value).lower() for value in row.values() if not _is_blank(value))
    ]


def master_stats(rows: Sequence[Mapping[str, Any]], settings: ReconcileSettings | None = None) -> MasterStats:
    settings = settings or ReconcileSettings()
    return MasterStats(
        summary=dashboard_summary(rows),
        chemical=calculate_stats(rows, settings.chemical_parameters),
        isotope=calculate_stats(rows, settings.isotope_parameters),
    )
