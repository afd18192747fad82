from __future__ import annotations

from pathlib import Path

import pytest
from openpyxl import Workbook

from icp_app.engine.calibration_session import CalibrationSession
from icp_app.engine.errors import NoStandardsFound
from icp_app.engine.pipeline import (
    find_standards,
    load_master,
    open_calibration_session,
    reconcile,
)
from icp_app.io.workbook import load_run_workbook


def _write_sheets(path: Path, sheets) -> Path:
    wb = Workbook()
    first = True
    for title, rows in sheets.items():
        ws = wb.active if first else wb.create_sheet()
        ws.title = title
        first = False
        for row in rows:
            ws.append(row)
    wb.save(path)
    return path


@pytest.fixture
def master_path(tmp_path):
    return _write_sheets(
        tmp_path / "master.xlsx",
        {
            "Samples": [
                ["Sample ID", "Date", "Sample type", "Latitude"],
                ["S001", "2023-06-01", "Lake", 61.2],
                ["T-900", "2023-06-02", "River", 61.4],
            ]
        },
    )


@pytest.fixture
def runs_dir(tmp_path):
    runs = tmp_path / "runs"
    runs.mkdir()
    _write_sheets(
        runs / "run_a.xlsx",
        {
            "Standards": [
                ["Sample ID", "Mg Ax 280.270 nm ppm", "Mg Ax 280.270 nm Intensity"],
                ["A", 10, 1000],
                ["B", 5, 500],
                ["C", 1, 100],
            ],
            "Final": [
                ["Sample ID", "Mg Ax 280.270 nm ppm"],
                ["S-001", 4.2],
                ["s001x", 4.1],
                ["Q", 0.0],
            ],
        },
    )
    (runs / "run_b.csv").write_text("Sample Name,Ca 317 ppm\nT900,12.5\nZZZZ,1\n", encoding="utf-8")
    return runs


def test_load_master(master_path):
    rows = load_master(master_path)
    assert [row["Sample ID"] for row in rows] == ["S001", "T-900"]
    with pytest.raises(ValueError):
        load_master(master_path, sheet="Other")


def test_reconcile_matches_every_run(master_path, runs_dir):
    progress = []
    result = reconcile(master_path, runs_dir, progress=lambda pct, msg: progress.append(pct))

    assert not result.cancelled
    assert len(result.records) == 2
    run_a = result.summaries["run_a.xlsx"]
    assert run_a.total_rows == 3
    assert run_a.matched == 2
    assert run_a.final_sheet == "Final"
    assert run_a.standards_sheet == "Standards"
    assert run_a.analytes == ["Mg"]
    assert run_a.to_row()["Match_Rate_%"] == 67

    run_b = result.summaries["run_b.csv"]
    assert run_b.matched == 1
    assert result.matches_for("run_b.csv")[0].target_id == "T-900"

    confidences = sorted(m.confidence for m in result.matches_for("run_a.xlsx"))
    assert confidences == [pytest.approx(0.96), pytest.approx(1.0)]
    assert result.matches_for("run_a.xlsx")[0].target_payload["Sample type"] == "Lake"
    assert progress[0] == 0 and progress[-1] == 100
    assert any("run_a.xlsx" in entry for entry in result.audit)


def test_reconcile_accepts_rows_and_explicit_paths(runs_dir):
    master = [{"Sample ID": "T900"}]
    result = reconcile(master, [runs_dir / "run_b.csv"])
    assert result.matched_count == 1
    assert list(result.summaries) == ["run_b.csv"]


def test_reconcile_records_unreadable_runs(master_path, tmp_path):
    bogus = tmp_path / "broken.txt"
    bogus.write_text("nope", encoding="utf-8")
    result = reconcile(master_path, [bogus])
    assert result.summaries["broken.txt"].error
    assert result.matches == []


def test_reconcile_skips_truncated_workbook(master_path, runs_dir):
    good = runs_dir / "run_a.xlsx"
    data = good.read_bytes()
    (runs_dir / "run_c_truncated.xlsx").write_bytes(data[: len(data) // 2])
    (runs_dir / "run_d_legacy.xls").write_bytes(b"\xd0\xcf\x11\xe0")

    result = reconcile(master_path, runs_dir)

    broken = result.summaries["run_c_truncated.xlsx"]
    assert broken.error
    assert broken.total_rows == 0 and broken.matched == 0
    assert "run_d_legacy.xls" not in result.summaries
    assert result.summaries["run_a.xlsx"].matched == 2
    assert result.summaries["run_b.csv"].matched == 1
    assert any("run_c_truncated.xlsx: skipped" in entry for entry in result.audit)


def test_reconcile_records_legacy_workbook_given_explicitly(master_path, tmp_path):
    legacy = tmp_path / "old.xls"
    legacy.write_bytes(b"\xd0\xcf\x11\xe0")
    result = reconcile(master_path, [legacy])
    assert "re-save" in result.summaries["old.xls"].error


def test_reconcile_can_be_cancelled(master_path, runs_dir):
    result = reconcile(master_path, runs_dir, is_cancelled=lambda: True)
    assert result.cancelled
    assert result.summaries == {}


def test_reconcile_in_process_pool(master_path, runs_dir):
    serial = reconcile(master_path, runs_dir)
    pooled = reconcile(master_path, runs_dir, parallel_workers=2)
    assert sorted((m.run_name, m.source_id, m.target_id) for m in pooled.matches) == sorted(
        (m.run_name, m.source_id, m.target_id) for m in serial.matches
    )
    assert pooled.matches[0].target_payload["Date"]


def test_find_standards_prefers_labelled_sheet(runs_dir):
    run = load_run_workbook(runs_dir / "run_a.xlsx")
    sheet, rows = find_standards(run)
    assert sheet == "Standards"
    assert len(rows) == 3


def test_open_calibration_session(runs_dir):
    session = open_calibration_session(runs_dir / "run_a.xlsx")
    assert session.run_name == "run_a.xlsx"
    assert session.analytes == ["Mg"]
    state = session.select_analyte("Mg")
    assert state.cached_model.slope == pytest.approx(0.01)

    reused = CalibrationSession()
    assert open_calibration_session(runs_dir / "run_a.xlsx", session=reused) is reused


def test_open_calibration_session_without_standards(runs_dir):
    with pytest.raises(NoStandardsFound):
        open_calibration_session(runs_dir / "run_b.csv")
