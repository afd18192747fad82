"""Batch reconciliation of ICP-OES run workbooks against master data.

Every run in a folder is loaded, its final data sheet matched against the
master records, and a per-run summary produced. Matching is recomputed from
scratch for each call; nothing is cached between runs.
"""

from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
import logging
import multiprocessing
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from icp_app.engine.audit import log_step, start_audit
from icp_app.engine.calibration_points import extract_standards
from icp_app.engine.calibration_session import CalibrationSession
from icp_app.engine.column_rules import DiscoveryRules
from icp_app.engine.errors import NoStandardsFound
from icp_app.engine.matcher import CanonicalRecord, Match, MatchReport, match_rows, records_from_rows
from icp_app.engine.settings import ReconcileSettings
from icp_app.io.workbook import RunWorkbook, list_run_files, load_run_workbook, read_workbook

__all__ = [
    "RunSummary",
    "ReconcileResult",
    "load_master",
    "match_run",
    "reconcile",
    "find_standards",
    "open_calibration_session",
]

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


@dataclass
class RunSummary:
    run_name: str
    total_rows: int
    matched: int
    analytes: List[str] = field(default_factory=list)
    sheet_names: List[str] = field(default_factory=list)
    final_sheet: Optional[str] = None
    standards_sheet: Optional[str] = None
    identifier_columns: List[str] = field(default_factory=list)
    used_fallback_column: bool = False
    error: Optional[str] = None

    @property
    def match_rate(self) -> float:
        if not self.total_rows:
            return 0.0
        return self.matched / self.total_rows

    def to_row(self) -> Dict[str, Any]:
        return {
            "ICP_OES_File": self.run_name,
            "Total_Samples": self.total_rows,
            "Matched_Samples": self.matched,
            "Match_Rate_%": round(self.match_rate * 100),
            "Available_Analytes": ", ".join(self.analytes),
            "Standards_Sheet": self.standards_sheet or "Not found",
            "Final_Sheet": self.final_sheet or "",
        }


@dataclass
class ReconcileResult:
    master_rows: List[Dict[str, Any]]
    records: List[CanonicalRecord]
    matches: List[Match]
    summaries: Dict[str, RunSummary]
    audit: List[str]
    cancelled: bool = False

    @property
    def matched_count(self) -> int:
        return len(self.matches)

    def matches_for(self, run_name: str) -> List[Match]:
        return [m for m in self.matches if m.run_name == run_name]


def load_master(path: str | Path, sheet: str | None = None) -> List[Dict[str, Any]]:
    """Read master rows from the first sheet (or ``sheet``) of ``path``."""

    sheets = read_workbook(path)
    if not sheets:
        raise ValueError(f"{path} contains no sheets")
    if sheet is not None:
        if sheet not in sheets:
            raise ValueError(f"Sheet '{sheet}' not found in {path}")
        return sheets[sheet]
    return next(iter(sheets.values()))


def match_run(
    run: RunWorkbook,
    records: Sequence[CanonicalRecord],
    settings: ReconcileSettings,
    rules: DiscoveryRules | None = None,
) -> Tuple[MatchReport, RunSummary]:
    rules = rules or DiscoveryRules.from_settings(settings)
    rows = run.final_rows
    report = match_rows(rows, records, settings, run_name=run.name, rules=rules)
    columns: List[str] = list(rows[0].keys()) if rows else []
    summary = RunSummary(
        run_name=run.name,
        total_rows=len(rows),
        matched=len(report.matches),
        analytes=rules.detect_analytes(columns),
        sheet_names=run.sheet_names,
        final_sheet=run.final_sheet,
        standards_sheet=run.standards_sheet,
        identifier_columns=report.identifier_columns,
        used_fallback_column=report.used_fallback_column,
    )
    return report, summary


def _match_run_task(
    path: str,
    master_rows: List[Dict[str, Any]],
    settings_payload: Dict[str, Any],
) -> Tuple[List[Dict[str, Any]], RunSummary]:
    # records hold read-only mapping proxies, which do not pickle; rebuild here
    settings = ReconcileSettings.from_mapping(settings_payload)
    records = records_from_rows(master_rows, settings=settings)
    run = load_run_workbook(path, settings)
    report, summary = match_run(run, records, settings)
    payload = [
        {
            "source_id": m.source_id,
            "target_id": m.target_id,
            "confidence": m.confidence,
            "source_row_index": m.source_row_index,
            "target_payload": dict(m.target_payload),
            "source_column": m.source_column,
            "run_name": m.run_name,
            "source_row": dict(m.source_row),
        }
        for m in report.matches
    ]
    return payload, summary


def reconcile(
    master: str | Path | Sequence[Mapping[str, Any]],
    runs: str | Path | Iterable[str | Path],
    settings: ReconcileSettings | None = None,
    *,
    progress: ProgressCallback | None = None,
    is_cancelled: Callable[[], bool] | None = None,
    parallel_workers: int = 0,
) -> ReconcileResult:
    """Match every run workbook against the master records.

    ``runs`` may be a directory (all ``.xlsx``/``.xlsm``/``.csv`` files in it)
    or an explicit list of paths. Unreadable runs are logged and recorded in
    their summary; they do not abort the batch. With ``parallel_workers`` > 1
    runs are matched in a spawn-based process pool.
    """

    settings = settings or ReconcileSettings()
    audit = start_audit("ICP-OES reconciliation")

    def emit(percent: int, message: str) -> None:
        if progress is not None:
            progress(percent, message)

    emit(0, "Loading master data...")
    if isinstance(master, (str, Path)):
        master_rows = load_master(master)
        log_step(audit, "Master data: %s (%d rows)", Path(master).name, len(master_rows))
    else:
        master_rows = [dict(row) for row in master]
        log_step(audit, "Master data: %d rows", len(master_rows))
    records = records_from_rows(master_rows, settings=settings)
    emit(10, f"{len(records)} master samples loaded")

    if isinstance(runs, (str, Path)):
        run_paths = list_run_files(runs)
    else:
        run_paths = [Path(p) for p in runs]
    log_step(audit, "%d ICP-OES run file(s) found", len(run_paths))

    matches: List[Match] = []
    summaries: Dict[str, RunSummary] = {}
    cancelled = False
    rules = DiscoveryRules.from_settings(settings)

    if parallel_workers > 1 and len(run_paths) > 1:
        ctx = multiprocessing.get_context("spawn")
        results: Dict[int, Tuple[List[Dict[str, Any]], RunSummary]] = {}
        with ProcessPoolExecutor(mp_context=ctx, max_workers=parallel_workers) as executor:
            future_map = {
                executor.submit(_match_run_task, str(path), master_rows, settings.to_dict()): idx
                for idx, path in enumerate(run_paths)
            }
            done = 0
            for future in as_completed(future_map):
                idx = future_map[future]
                done += 1
                try:
                    results[idx] = future.result()
                except Exception as exc:
                    error_text = f"{type(exc).__name__}: {exc}"
                    logger.exception("Matching failed for %s: %s", run_paths[idx].name, error_text)
                    results[idx] = ([], RunSummary(run_paths[idx].name, 0, 0, error=error_text))
                emit(10 + int(85 * done / len(run_paths)), f"Matched {run_paths[idx].name}")
        record_by_id = {record.id: record for record in records}
        for idx in sorted(results):
            payload, summary = results[idx]
            for item in payload:
                record = record_by_id.get(item["target_id"])
                if record is not None:
                    item["target_payload"] = record.payload
                matches.append(Match(**item))
            summaries[summary.run_name] = summary
    else:
        for idx, path in enumerate(run_paths, start=1):
            if is_cancelled is not None and is_cancelled():
                cancelled = True
                log_step(audit, "Cancelled after %d run(s)", idx - 1)
                break
            emit(10 + int(85 * (idx - 1) / max(len(run_paths), 1)), f"Matching {path.name}")
            # one damaged run must not abort the batch
            try:
                run = load_run_workbook(path, settings)
                report, summary = match_run(run, records, settings, rules)
            except Exception as exc:
                error_text = f"{type(exc).__name__}: {exc}"
                logger.exception("Matching failed for %s: %s", path.name, error_text)
                summaries[path.name] = RunSummary(path.name, 0, 0, error=error_text)
                continue
            matches.extend(report.matches)
            summaries[summary.run_name] = summary

    for summary in summaries.values():
        if summary.error:
            log_step(audit, "%s: skipped (%s)", summary.run_name, summary.error)
        else:
            log_step(
                audit,
                "%s: %d/%d samples matched (%d%%)",
                summary.run_name,
                summary.matched,
                summary.total_rows,
                round(summary.match_rate * 100),
            )
    emit(100, f"{len(matches)} total matches found")
    return ReconcileResult(
        master_rows=master_rows,
        records=records,
        matches=matches,
        summaries=summaries,
        audit=audit,
        cancelled=cancelled,
    )


def find_standards(
    run: RunWorkbook,
    settings: ReconcileSettings | None = None,
) -> Tuple[Optional[str], List[Dict[str, Any]]]:
    """Locate the sheet holding labelled standards.

    Sheets are searched in workbook order and the first with any standard
    row wins; the final data sheet is the fallback.
    """

    settings = settings or ReconcileSettings()
    rules = DiscoveryRules.from_settings(settings)
    for name, rows in run.sheets.items():
        if not rows:
            continue
        standards = extract_standards(rows, settings, rules)
        if standards:
            return name, rows
    return run.final_sheet, run.final_rows


def open_calibration_session(
    path: str | Path,
    settings: ReconcileSettings | None = None,
    session: CalibrationSession | None = None,
) -> CalibrationSession:
    """Load the standards of a run workbook into a calibration session.

    Passing an existing ``session`` reloads it, discarding its per-analyte
    state.
    """

    settings = settings or ReconcileSettings()
    run = load_run_workbook(path, settings)
    sheet, rows = find_standards(run, settings)
    session = session or CalibrationSession(settings)
    if not rows:
        raise NoStandardsFound(f"{run.name} contains no data rows")
    session.load_run(run.name, rows)
    log_step(session.audit, "Standards taken from sheet '%s'", sheet)
    return session
