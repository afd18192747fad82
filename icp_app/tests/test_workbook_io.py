from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest
from openpyxl import Workbook

from icp_app.engine.settings import ReconcileSettings
from icp_app.io.workbook import (
    detect_run_sheet,
    detect_standards_sheet,
    list_run_files,
    load_run_workbook,
    read_csv_rows,
    read_rows,
    read_workbook,
    CsvLayout,
    sniff_csv_layout,
)


def _write_run_workbook(path: Path) -> Path:
    wb = Workbook()
    ws = wb.active
    ws.title = "Standards"
    ws.append(["Sample ID", "Mg_ppm", "Mg_Intensity"])
    ws.append(["A", 10, 1000.0])
    ws.append(["B", 5, 500.0])
    final = wb.create_sheet("Final Results")
    final.append(["Sample ID", "Mg_ppm", None])
    final.append(["LK-1", 3.2, None])
    final.append([None, None, None])
    final.append([1001, 1.1, None])
    wb.save(path)
    return path


def test_sniff_csv_layout_detects_european_exports():
    assert sniff_csv_layout("a;b\n1,5;2,25\n3,1;4,0\n") == CsvLayout(delimiter=";", decimal=",")
    assert sniff_csv_layout("a,b\n1.5,2.25\n") == CsvLayout()
    assert sniff_csv_layout("") == CsvLayout()


def test_sniff_csv_layout_prefers_consistent_field_counts():
    # one line holds a stray semicolon inside a comment cell
    sample = "Sample ID,Mg ppm,Note\nLK-1,1.2,ok\nLK-2,3.4,rerun; diluted\n"
    assert sniff_csv_layout(sample) == CsvLayout(delimiter=",", decimal=".")

    tabbed = "Sample ID\tMg ppm\tCa ppm\nLK-1\t1,25\t3,5\nLK-2\t0,75\t2\n"
    assert sniff_csv_layout(tabbed) == CsvLayout(delimiter="\t", decimal=",")

    dotted = "Sample ID;Mg ppm\nLK-1;1.25\nLK-2;0.5\n"
    assert sniff_csv_layout(dotted) == CsvLayout(delimiter=";", decimal=".")


def test_sniff_csv_layout_single_column():
    assert sniff_csv_layout("Sample ID\nLK-1\nLK-2\n") == CsvLayout()


def test_read_csv_rows_handles_decimal_commas(tmp_path):
    path = tmp_path / "run.csv"
    path.write_text("Sample ID;Mg ppm\nLK-1;1,25\nLK-2;\n", encoding="utf-8")
    rows = read_csv_rows(path)
    assert rows == [{"Sample ID": "LK-1", "Mg ppm": "1.25"}, {"Sample ID": "LK-2", "Mg ppm": None}]


def test_read_workbook_keeps_sheet_order_and_drops_blank_rows(tmp_path):
    path = _write_run_workbook(tmp_path / "run.xlsx")
    sheets = read_workbook(path)
    assert list(sheets) == ["Standards", "Final Results"]
    final = sheets["Final Results"]
    assert len(final) == 2
    assert final[0]["Sample ID"] == "LK-1"
    # unnamed trailing columns are dropped
    assert all(not key.startswith("Unnamed") for key in final[0])
    assert final[1]["Sample ID"] == 1001


def test_read_rows_selects_sheet(tmp_path):
    path = _write_run_workbook(tmp_path / "run.xlsx")
    assert read_rows(path)[0]["Sample ID"] == "A"
    assert read_rows(path, "Final Results")[0]["Mg_ppm"] == pytest.approx(3.2)
    with pytest.raises(ValueError):
        read_rows(path, "Nope")


def test_read_workbook_rejects_unknown_files(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_workbook(tmp_path / "missing.xlsx")
    other = tmp_path / "notes.txt"
    other.write_text("x", encoding="utf-8")
    with pytest.raises(ValueError):
        read_workbook(other)
    legacy = tmp_path / "old_run.xls"
    legacy.write_bytes(b"\xd0\xcf\x11\xe0")
    with pytest.raises(ValueError, match="re-save"):
        read_workbook(legacy)


def test_sheet_detection():
    settings = ReconcileSettings()
    assert detect_run_sheet(["Raw", "Final Results"], settings) == "Final Results"
    assert detect_run_sheet(["Sheet1", "Sheet2"], settings) == "Sheet2"
    assert detect_run_sheet([], settings) is None
    assert detect_standards_sheet(["Std curve", "Final"], settings) == "Std curve"
    assert detect_standards_sheet(["Sheet1", "Sheet2"], settings) == "Sheet1"
    assert detect_standards_sheet(["One", "Two", "Three"], settings) is None


def test_load_run_workbook(tmp_path):
    run = load_run_workbook(_write_run_workbook(tmp_path / "run.xlsx"))
    assert run.name == "run.xlsx"
    assert run.final_sheet == "Final Results"
    assert run.standards_sheet == "Standards"
    assert run.sheet_names == ["Standards", "Final Results"]
    assert [row["Sample ID"] for row in run.standards_rows] == ["A", "B"]


def test_list_run_files_filters_suffixes_and_lock_files(tmp_path):
    for name in ("b.xlsx", "a.csv", "~$b.xlsx", "notes.txt", "legacy.xls"):
        (tmp_path / name).write_text("", encoding="utf-8")
    pd.DataFrame({"x": [1]}).to_csv(tmp_path / "c.CSV", index=False)
    assert [p.name for p in list_run_files(tmp_path)] == ["a.csv", "b.xlsx", "c.CSV"]
    assert list_run_files(tmp_path / "missing") == []
