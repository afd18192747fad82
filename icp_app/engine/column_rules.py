"""Ordered, configurable column discovery for heterogeneous spreadsheets.

Column roles are assigned by a small list of ``ColumnRule`` entries, each a
role paired with a predicate over the header text. Rules are evaluated in
order, so earlier rules win when callers ask for a single role per column.
Measurement channel descriptors (element, wavelength, view, kind) are
parsed from headers such as ``"Mg Ax 280.270 nm Intensity"`` or
``"Ba R 233.527 nm ppm"``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from icp_app.engine.settings import ReconcileSettings


class ColumnRole(str, Enum):
    IDENTIFIER = "identifier"
    INTENSITY = "intensity"
    CONCENTRATION = "concentration"
    STANDARD_LABEL = "standard_label"


class ChannelKind(str, Enum):
    INTENSITY = "intensity"
    CONCENTRATION = "concentration"
    OTHER = "other"


STANDARD_LABEL_FIELD = "_standardLabel"

_WAVELENGTH_RE = re.compile(r"(\d{3}(?:\.\d+)?)")
_THREE_DIGITS_RE = re.compile(r"\d{3}")
_LEADING_ELEMENT_RE = re.compile(r"^([A-Z][a-z]?)")
_AXIAL_RE = re.compile(r"\bax(?:ial)?\b", re.IGNORECASE)
_RADIAL_RE = re.compile(r"(?:\bR\b|_r_|\bradial\b)", re.IGNORECASE)


@dataclass(frozen=True)
class KeywordPredicate:
    """Case-insensitive substring test with optional veto keywords."""

    keywords: Tuple[str, ...]
    exclude: Tuple[str, ...] = ()

    def __call__(self, column: str) -> bool:
        lower = str(column).lower()
        if any(word.lower() in lower for word in self.exclude):
            return False
        return any(word.lower() in lower for word in self.keywords)


@dataclass(frozen=True)
class ColumnRule:
    role: ColumnRole
    predicate: Callable[[str], bool]

    def matches(self, column: str) -> bool:
        return bool(self.predicate(column))


@dataclass(frozen=True)
class MeasurementChannel:
    column: str
    element: Optional[str]
    wavelength: Optional[str]
    view: str
    kind: ChannelKind

    @property
    def key(self) -> Tuple[Optional[str], Optional[str], str]:
        return (self.element, self.wavelength, self.view)

    @property
    def wavelength_label(self) -> str:
        if not self.wavelength:
            return "Unknown"
        return f"{self.wavelength.split('.')[0]} nm"


@dataclass
class IdentifierColumns:
    columns: List[str]
    used_fallback: bool = False


@dataclass
class DiscoveryRules:
    rules: List[ColumnRule] = field(default_factory=list)
    intensity_keywords: Tuple[str, ...] = ("inten", "cps")
    concentration_keywords: Tuple[str, ...] = ("ppm", "ppb", "conc")
    elements: Tuple[str, ...] = ()

    @classmethod
    def from_settings(cls, settings: ReconcileSettings | None = None) -> "DiscoveryRules":
        settings = settings or ReconcileSettings()
        intensity = tuple(settings.intensity_keywords)
        concentration = tuple(settings.concentration_keywords)
        rules = [
            ColumnRule(ColumnRole.STANDARD_LABEL, lambda col: col == STANDARD_LABEL_FIELD),
            ColumnRule(ColumnRole.INTENSITY, KeywordPredicate(intensity)),
            ColumnRule(ColumnRole.CONCENTRATION, KeywordPredicate(concentration, exclude=intensity)),
            ColumnRule(ColumnRole.IDENTIFIER, KeywordPredicate(tuple(settings.identifier_keywords))),
        ]
        return cls(
            rules=rules,
            intensity_keywords=intensity,
            concentration_keywords=concentration,
            elements=tuple(settings.elements),
        )

    def roles_for(self, column: str) -> List[ColumnRole]:
        roles: List[ColumnRole] = []
        for rule in self.rules:
            if rule.role not in roles and rule.matches(column):
                roles.append(rule.role)
        return roles

    def primary_role(self, column: str) -> Optional[ColumnRole]:
        roles = self.roles_for(column)
        return roles[0] if roles else None

    def columns_for(self, role: ColumnRole, columns: Iterable[str]) -> List[str]:
        selected = [rule for rule in self.rules if rule.role == role]
        return [col for col in columns if any(rule.matches(col) for rule in selected)]

    def identifier_columns(self, columns: Sequence[str]) -> IdentifierColumns:
        """Return candidate identifier columns, falling back to the first column."""

        columns = [col for col in columns if col != STANDARD_LABEL_FIELD]
        found = self.columns_for(ColumnRole.IDENTIFIER, columns)
        if found:
            return IdentifierColumns(found)
        if not columns:
            return IdentifierColumns([], used_fallback=True)
        return IdentifierColumns([columns[0]], used_fallback=True)

    def is_intensity(self, column: str) -> bool:
        return KeywordPredicate(self.intensity_keywords)(column)

    def is_concentration(self, column: str) -> bool:
        return KeywordPredicate(self.concentration_keywords)(column)

    def element_in(self, column: str) -> Optional[str]:
        for element in self.elements:
            if re.search(rf"\b{re.escape(element)}\b", column, re.IGNORECASE):
                return element
        return None

    def parse_channel(self, column: str) -> MeasurementChannel:
        if self.is_intensity(column):
            kind = ChannelKind.INTENSITY
        elif self.is_concentration(column):
            kind = ChannelKind.CONCENTRATION
        else:
            kind = ChannelKind.OTHER
        leading = _LEADING_ELEMENT_RE.match(column)
        element = self.element_in(column)
        if element is None and leading and leading.group(1) in self.elements:
            element = leading.group(1)
        wavelength_match = _WAVELENGTH_RE.search(column)
        wavelength = wavelength_match.group(1) if wavelength_match else None
        return MeasurementChannel(
            column=column,
            element=element,
            wavelength=wavelength,
            view=view_label(column),
            kind=kind,
        )

    def channels(self, columns: Iterable[str]) -> Dict[str, MeasurementChannel]:
        return {col: self.parse_channel(col) for col in columns if col != STANDARD_LABEL_FIELD}

    def detect_analytes(self, columns: Iterable[str]) -> List[str]:
        """Elements named as whole words in intensity or ppm columns, sorted."""

        found = set()
        for col in columns:
            lower = col.lower()
            if not (self.is_intensity(col) or "ppm" in lower):
                continue
            element = self.element_in(col)
            if element:
                found.add(element)
        return sorted(found)

    def intensity_columns_for(self, analyte: str, columns: Iterable[str]) -> List[str]:
        pattern = re.compile(rf"\b{re.escape(analyte)}\b", re.IGNORECASE)
        selected = []
        for col in columns:
            if col == STANDARD_LABEL_FIELD or not pattern.search(col):
                continue
            if self.is_intensity(col):
                selected.append(col)
            elif _THREE_DIGITS_RE.search(col) and not self.is_concentration(col):
                selected.append(col)
        return selected


def view_label(column: str) -> str:
    if _AXIAL_RE.search(column):
        return "Axial"
    if _RADIAL_RE.search(column):
        return "Radial"
    return "Unknown"


def leading_element(column: str) -> Optional[str]:
    match = _LEADING_ELEMENT_RE.match(column)
    return match.group(1) if match else None
