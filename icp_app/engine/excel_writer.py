from __future__ import annotations

import csv
import json
import math
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
from openpyxl import Workbook

from icp_app.engine.master_stats import MasterStats
from icp_app.engine.matcher import Match
from icp_app.engine.regression import percent_error

MATCH_PAYLOAD_FIELDS = (
    ("Date", "Date"),
    ("Sample_Type", "Sample type"),
    ("Traverse", "Traverse_new"),
    ("Latitude", "Latitude"),
    ("Longitude", "Longitude"),
)


def _ensure_parent(path: Path) -> None:
    if not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)


def _is_number_text(text: str) -> bool:
    try:
        float(text)
    except ValueError:
        return False
    return True


def _clean_value(value: Any) -> Any:
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return value
    if isinstance(value, (list, tuple, set)):
        return json.dumps([_clean_value(v) for v in value])
    if isinstance(value, dict):
        return json.dumps({str(k): _clean_value(v) for k, v in value.items()})
    if isinstance(value, (Path, os.PathLike)):
        value = os.fspath(value)
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        # keep formula-like text inert
        if value and value[0] in "=+-@" and not _is_number_text(value):
            if not value.startswith("'"):
                return "'" + value
        return value
    return value


def _write_dict_rows(ws, rows: Sequence[Mapping[str, Any]], header: Optional[List[str]] = None) -> None:
    if header is None:
        header = []
        for row in rows:
            for key in row.keys():
                if key not in header:
                    header.append(key)
    if not header:
        ws.append(["No data"])
        return
    ws.append(header)
    for row in rows:
        ws.append([_clean_value(row.get(key)) for key in header])


def match_rows_table(matches: Iterable[Match]) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for match in matches:
        payload = match.target_payload or {}
        row = {
            "ICP_OES_File": match.run_name,
            "ICP_ID": match.source_id,
            "Main_ID": match.target_id,
            "Confidence_Score": match.confidence,
            "Confidence_Level": match.confidence_level,
            "ICP_Row": match.source_row_index,
        }
        for label, key in MATCH_PAYLOAD_FIELDS:
            row[label] = payload.get(key, "")
        rows.append(row)
    return rows


_STATS_HEADER = ["Parameter", "Count", "Mean", "Median", "Min", "Max"]


def _write_master_stats_sheet(ws, stats: MasterStats) -> None:
    for row in stats.summary.to_rows():
        ws.append([row["Metric"], _clean_value(row["Value"])])
    for title, entries in (("Chemical Parameters", stats.chemical), ("Isotope Data", stats.isotope)):
        ws.append([])
        ws.append([title])
        if not entries:
            ws.append(["No data available"])
            continue
        ws.append(_STATS_HEADER)
        for entry in entries:
            values = entry.to_row()
            ws.append([_clean_value(values[key]) for key in _STATS_HEADER])


def write_match_workbook(
    out_path: str | Path,
    matches: Sequence[Match],
    summaries,
    audit=None,
    master_stats: Optional[MasterStats] = None,
    filtered_rows: Optional[Sequence[Mapping[str, Any]]] = None,
) -> str:
    """Write ``All_Matches``, ``Summary_By_Run`` and ``Audit_Log`` sheets.

    ``Master_Stats`` is added when ``master_stats`` is given and
    ``Master_Filtered`` when ``filtered_rows`` is.
    """

    workbook_path = Path(out_path)
    _ensure_parent(workbook_path)

    wb = Workbook()
    ws_matches = wb.active
    ws_matches.title = "All_Matches"
    header = ["ICP_OES_File", "ICP_ID", "Main_ID", "Confidence_Score", "Confidence_Level", "ICP_Row"]
    header.extend(label for label, _ in MATCH_PAYLOAD_FIELDS)
    _write_dict_rows(ws_matches, match_rows_table(matches), header)

    ws_summary = wb.create_sheet("Summary_By_Run")
    summary_rows = [summary.to_row() for summary in (summaries.values() if isinstance(summaries, Mapping) else summaries)]
    _write_dict_rows(ws_summary, summary_rows)

    ws_audit = wb.create_sheet("Audit_Log")
    ws_audit.append(["Index", "Entry"])
    for idx, entry in enumerate(audit or [], start=1):
        ws_audit.append([idx, _clean_value(entry)])

    if master_stats is not None:
        _write_master_stats_sheet(wb.create_sheet("Master_Stats"), master_stats)
    if filtered_rows is not None:
        _write_dict_rows(wb.create_sheet("Master_Filtered"), filtered_rows)

    wb.save(workbook_path)
    return str(workbook_path)


def write_matches_csv(out_path: str | Path, matches: Sequence[Match]) -> Path:
    csv_path = Path(out_path)
    _ensure_parent(csv_path)
    rows = match_rows_table(matches)
    header = ["ICP_OES_File", "ICP_ID", "Main_ID", "Confidence_Score", "Confidence_Level", "ICP_Row"]
    header.extend(label for label, _ in MATCH_PAYLOAD_FIELDS)
    with csv_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(header)
        for row in rows:
            writer.writerow([_clean_value(row.get(key)) for key in header])
    return csv_path


def _points_rows(state) -> List[List[Any]]:
    model = state.cached_model
    predicted_by_index: Dict[int, float] = {}
    if model is not None:
        active = [point for point in state.points if not point.excluded]
        predicted_by_index = {point.index: value for point, value in zip(active, model.predicted)}
    rows: List[List[Any]] = []
    for point in state.points:
        predicted = predicted_by_index.get(point.index)
        residual = point.concentration - predicted if predicted is not None else None
        error = percent_error(point.concentration, predicted) if predicted is not None else None
        rows.append(
            [
                _clean_value(point.index),
                _clean_value(point.label),
                _clean_value(not point.excluded),
                _clean_value(point.concentration),
                _clean_value(point.intensity),
                _clean_value(predicted),
                _clean_value(residual),
                _clean_value(error),
            ]
        )
    return rows


def _write_calibration_sheet(ws, session) -> None:
    ws.append(["Run", _clean_value(session.run_name)])
    states = [state for state in session.analyte_states.values() if state.points]
    if not states:
        ws.append(["Calibration", "None"])
        return
    for state in states:
        ws.append([])
        ws.append(["Analyte", _clean_value(state.analyte)])
        ws.append(["Intensity Column", _clean_value(state.selected_intensity_column)])
        ws.append(["Concentration Column", _clean_value(state.concentration_column)])
        model = state.cached_model
        if model is None:
            ws.append(["Status", _clean_value(state.reason or "no model")])
        else:
            ws.append(["Slope", _clean_value(model.slope)])
            ws.append(["Intercept", _clean_value(model.intercept)])
            ws.append(["R^2", _clean_value(model.r_squared)])
            ws.append(["RMSE", _clean_value(model.rmse)])
            ws.append(["Points", f"{model.n_points_used}/{len(state.points)}"])
        ws.append(
            [
                "Index",
                "Label",
                "Included",
                "Concentration",
                "Intensity",
                "Predicted",
                "Residual",
                "% Error",
            ]
        )
        for row in _points_rows(state):
            ws.append(row)


def _comparison_rows(comparisons: Mapping[str, Sequence]) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for analyte, entries in comparisons.items():
        for comp in entries:
            rows.append(
                {
                    "Analyte": analyte,
                    "Channel": comp.channel_name,
                    "Wavelength": comp.wavelength_label,
                    "View": comp.view_label,
                    "R_squared": comp.model.r_squared,
                    "RMSE": comp.model.rmse,
                    "Slope": comp.model.slope,
                    "Intercept": comp.model.intercept,
                    "Points": f"{comp.model.n_points_used}/{len(comp.points)}",
                    "Quality": comp.quality,
                    "Recommended": comp.recommended,
                }
            )
    return rows


def write_calibration_report(
    out_path: str | Path,
    session,
    comparisons: Mapping[str, Sequence] | None = None,
    audit: Sequence[str] | None = None,
) -> str:
    """Write the calibration summary workbook for a session.

    Sheets: ``Summary`` (one row per calibrated analyte), ``Calibration``
    (points, predictions and residuals), ``Channel_Comparison`` and
    ``Audit_Log``.
    """

    workbook_path = Path(out_path)
    _ensure_parent(workbook_path)

    wb = Workbook()
    ws_summary = wb.active
    ws_summary.title = "Summary"
    _write_dict_rows(
        ws_summary,
        session.summary_rows(),
        [
            "Analyte",
            "Intensity_Column",
            "Concentration_Column",
            "R_squared",
            "RMSE",
            "Slope",
            "Intercept",
            "Points_Used",
            "Points_Total",
            "Quality",
        ],
    )

    ws_calibration = wb.create_sheet("Calibration")
    _write_calibration_sheet(ws_calibration, session)

    ws_comparison = wb.create_sheet("Channel_Comparison")
    _write_dict_rows(ws_comparison, _comparison_rows(comparisons or {}))

    ws_audit = wb.create_sheet("Audit_Log")
    ws_audit.append(["Index", "Entry"])
    for idx, entry in enumerate(audit if audit is not None else session.audit, start=1):
        ws_audit.append([idx, _clean_value(entry)])

    wb.save(workbook_path)
    return str(workbook_path)


def write_rows_workbook(out_path: str | Path, rows: Sequence[Mapping[str, Any]], sheet_name: str = "Data") -> Path:
    """Write plain row dictionaries to a single-sheet workbook."""

    workbook_path = Path(out_path)
    _ensure_parent(workbook_path)
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_name
    _write_dict_rows(ws, rows)
    wb.save(workbook_path)
    return workbook_path
