from __future__ import annotations

from datetime import date

from icp_app.engine.master_import import (
    ACTION_CREATE,
    ACTION_UPDATE,
    apply_import,
    auto_map_columns,
    backup_master,
    build_import_preview,
    data_columns,
    find_matching_master_column,
)
from icp_app.engine.column_rules import DiscoveryRules
from icp_app.engine.matcher import match_rows, records_from_rows

MASTER_COLUMNS = ["Sample ID", "Date", "Si_ppm", "S_ppm", "Mg (mmol/L)", "Mg_ppm", "Notes"]


def test_find_matching_master_column_prefers_exact_ppm():
    assert find_matching_master_column("Mg Ax 280.270 nm ppm", MASTER_COLUMNS) == "Mg_ppm"
    assert find_matching_master_column("Si 251.611 ppm", MASTER_COLUMNS) == "Si_ppm"


def test_single_letter_elements_do_not_match_longer_symbols():
    assert find_matching_master_column("S 180.669 ppm", MASTER_COLUMNS) == "S_ppm"
    assert find_matching_master_column("S 180.669 ppm", ["Si_ppm", "Sample ID"]) is None
    assert find_matching_master_column("123 ppm", MASTER_COLUMNS) is None


def test_data_columns_skip_intensities():
    rules = DiscoveryRules.from_settings()
    columns = ["Sample ID", "Mg 280 ppm", "Mg 280 Intensity", "Ca 317 ppb"]
    assert data_columns(columns, rules) == ["Mg 280 ppm", "Ca 317 ppb"]


def test_auto_map_columns():
    mappings = auto_map_columns(
        ["Sample ID", "Mg 280 ppm", "Ba 233 ppm", "Mg 280 Intensity"],
        MASTER_COLUMNS,
        match_count=4,
    )
    assert [(m.import_column, m.master_column, m.action) for m in mappings] == [
        ("Mg 280 ppm", "Mg_ppm", ACTION_UPDATE),
        ("Ba 233 ppm", None, ACTION_CREATE),
    ]
    assert mappings[1].target_column == "Ba 233 ppm"
    assert all(m.sample_count == 4 for m in mappings)


def test_preview_and_apply_import():
    master = [
        {"Sample ID": "S001", "Mg_ppm": None},
        {"Sample ID": 1002.0, "Mg_ppm": 0.5},
        {"Sample ID": "X9", "Mg_ppm": 7.0},
    ]
    records = records_from_rows(master)
    run_rows = [
        {"Sample ID": "S-001", "Mg 280 ppm": 4.2, "Ba 233 ppm": 0.3},
        {"Sample ID": "1002", "Mg 280 ppm": 1.1, "Ba 233 ppm": 0.2},
    ]
    matches = match_rows(run_rows, records).matches
    mappings = auto_map_columns(list(run_rows[0]), list(master[0]))
    preview = build_import_preview(matches, mappings)

    assert preview.new_columns == ["Ba 233 ppm"]
    assert [u.sample_id for u in preview.updates] == ["S001", "1002"]
    assert preview.updates[0].changes[0].value == 4.2

    updated = apply_import(master, preview)
    assert updated[0]["Mg_ppm"] == 4.2
    assert updated[0]["Ba 233 ppm"] == 0.3
    assert updated[1]["Mg_ppm"] == 1.1
    assert updated[2]["Mg_ppm"] == 7.0
    assert updated[2]["Ba 233 ppm"] is None
    # input rows are left untouched
    assert master[0]["Mg_ppm"] is None
    assert "Ba 233 ppm" not in master[0]


def test_backup_master(tmp_path):
    master = tmp_path / "master.xlsx"
    master.write_bytes(b"data")
    backup = backup_master(master, date(2024, 3, 9))
    assert backup.name == "master_backup_2024-03-09.xlsx"
    assert backup.read_bytes() == b"data"
