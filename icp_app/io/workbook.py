"""Spreadsheet readers for master data and ICP-OES run exports."""

from __future__ import annotations

import csv
import io
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from icp_app.engine.settings import ReconcileSettings

logger = logging.getLogger(__name__)

RUN_SUFFIXES = (".xlsx", ".xlsm", ".csv")
EXCEL_SUFFIXES = {".xlsx", ".xlsm"}
_DECIMAL_COMMA_RE = re.compile(r"^[-+]?\d+,\d+(?:[eE][-+]?\d+)?$")
_DECIMAL_DOT_RE = re.compile(r"^[-+]?\d*\.\d+(?:[eE][-+]?\d+)?$")
_CANDIDATE_DELIMITERS = (";", "\t", ",")
_SNIFF_LINES = 50


@dataclass(frozen=True)
class CsvLayout:
    delimiter: str = ","
    decimal: str = "."


def _field_counts(lines: Sequence[str], delimiter: str) -> List[int]:
    return [len(row) for row in csv.reader(lines, delimiter=delimiter)]


def sniff_csv_layout(sample: str) -> CsvLayout:
    """Infer the delimiter and decimal mark of a CSV run export.

    The delimiter is the candidate that splits every line into the same
    number of fields; the widest split wins and ties go to semicolon, then
    tab, then comma. Instruments set to a European locale write rows like
    ``LK-1;1,25;3,5``, so the comma is only taken as the decimal mark when
    it is not the delimiter and comma decimals outnumber dotted ones.
    """

    lines = [ln for ln in sample.splitlines() if ln.strip()]
    if not lines:
        return CsvLayout()

    delimiter: Optional[str] = None
    width = 1
    for candidate in _CANDIDATE_DELIMITERS:
        counts = _field_counts(lines, candidate)
        if len(set(counts)) == 1 and counts[0] > width:
            delimiter, width = candidate, counts[0]
    if delimiter is None:
        # ragged rows: trust the header line
        header = {c: _field_counts(lines[:1], c)[0] for c in _CANDIDATE_DELIMITERS}
        delimiter = max(_CANDIDATE_DELIMITERS, key=header.get)
        if header[delimiter] <= 1:
            return CsvLayout()
    if delimiter == ",":
        return CsvLayout()

    comma_cells = dot_cells = 0
    for row in csv.reader(lines[1:], delimiter=delimiter):
        for cell in row:
            cell = cell.strip()
            if _DECIMAL_COMMA_RE.match(cell):
                comma_cells += 1
            elif _DECIMAL_DOT_RE.match(cell):
                dot_cells += 1
    return CsvLayout(delimiter=delimiter, decimal="," if comma_cells > dot_cells else ".")


def _clean_cell(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if value is pd.NaT:
        return None
    if isinstance(value, str):
        text = value.strip()
        return text if text else None
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        try:
            return value.item()
        except (AttributeError, ValueError):
            return value
    return value


def frame_to_rows(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    """Convert a DataFrame to row dictionaries with ``None`` for blanks."""

    frame = frame.copy()
    frame.columns = [str(col).strip() for col in frame.columns]
    frame = frame.loc[:, [not col.startswith("Unnamed:") for col in frame.columns]]
    rows: List[Dict[str, Any]] = []
    for record in frame.to_dict(orient="records"):
        cleaned = {key: _clean_cell(value) for key, value in record.items()}
        if all(value is None for value in cleaned.values()):
            continue
        rows.append(cleaned)
    return rows


def read_csv_rows(path: str | Path) -> List[Dict[str, Any]]:
    text = Path(path).read_text(encoding="utf-8-sig", errors="replace")
    layout = sniff_csv_layout("\n".join(text.splitlines()[:_SNIFF_LINES]))
    frame = pd.read_csv(
        io.StringIO(text),
        sep=layout.delimiter,
        dtype=str,
        keep_default_na=False,
    )
    rows = frame_to_rows(frame)
    if layout.decimal == ",":
        for row in rows:
            for key, value in row.items():
                if isinstance(value, str) and _DECIMAL_COMMA_RE.match(value):
                    row[key] = value.replace(",", ".")
    return rows


def read_workbook(path: str | Path) -> Dict[str, List[Dict[str, Any]]]:
    """Read every sheet of ``path`` into row dictionaries, in sheet order."""

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return {path.stem: read_csv_rows(path)}
    if suffix == ".xls":
        raise ValueError(f"Legacy .xls workbooks are not supported, re-save {path.name} as .xlsx")
    if suffix not in EXCEL_SUFFIXES:
        raise ValueError(f"Unsupported spreadsheet format: {path.suffix}")
    sheets = pd.read_excel(path, sheet_name=None, dtype=object)
    return {str(name): frame_to_rows(frame) for name, frame in sheets.items()}


def read_rows(path: str | Path, sheet: str | None = None) -> List[Dict[str, Any]]:
    sheets = read_workbook(path)
    if not sheets:
        return []
    if sheet is None:
        return next(iter(sheets.values()))
    if sheet not in sheets:
        raise ValueError(f"Sheet '{sheet}' not found in {path}")
    return sheets[sheet]


def detect_sheet(sheet_names: Sequence[str], keywords: Iterable[str]) -> Optional[str]:
    """First sheet whose name contains a keyword, keywords tried in order."""

    lowered = [name.lower() for name in sheet_names]
    for keyword in keywords:
        key = str(keyword).lower()
        for idx, name in enumerate(lowered):
            if key in name:
                return sheet_names[idx]
    return None


def detect_run_sheet(sheet_names: Sequence[str], settings: ReconcileSettings) -> Optional[str]:
    if not sheet_names:
        return None
    found = detect_sheet(sheet_names, settings.run_sheet_keywords)
    return found or sheet_names[-1]


def detect_standards_sheet(sheet_names: Sequence[str], settings: ReconcileSettings) -> Optional[str]:
    found = detect_sheet(sheet_names, settings.standards_sheet_keywords)
    if found:
        return found
    if len(sheet_names) == 2:
        return sheet_names[0]
    return None


@dataclass
class RunWorkbook:
    path: Path
    sheets: Dict[str, List[Dict[str, Any]]]
    final_sheet: Optional[str]
    standards_sheet: Optional[str]
    analytes: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def sheet_names(self) -> List[str]:
        return list(self.sheets.keys())

    @property
    def final_rows(self) -> List[Dict[str, Any]]:
        if self.final_sheet is None:
            return []
        return self.sheets.get(self.final_sheet, [])

    @property
    def standards_rows(self) -> List[Dict[str, Any]]:
        if self.standards_sheet is None:
            return []
        return self.sheets.get(self.standards_sheet, [])


def load_run_workbook(path: str | Path, settings: ReconcileSettings | None = None) -> RunWorkbook:
    settings = settings or ReconcileSettings()
    path = Path(path)
    sheets = read_workbook(path)
    names = list(sheets.keys())
    final_sheet = detect_run_sheet(names, settings)
    standards_sheet = detect_standards_sheet(names, settings)
    logger.info(
        "Loaded %s: final sheet '%s', standards sheet '%s'",
        path.name,
        final_sheet,
        standards_sheet,
    )
    return RunWorkbook(path=path, sheets=sheets, final_sheet=final_sheet, standards_sheet=standards_sheet)


def list_run_files(directory: str | Path) -> List[Path]:
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(
        p
        for p in directory.iterdir()
        if p.is_file() and p.suffix.lower() in RUN_SUFFIXES and not p.name.startswith("~$")
    )
