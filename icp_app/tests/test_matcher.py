from __future__ import annotations

import logging

import pytest

from icp_app.engine.matcher import (
    CanonicalRecord,
    best_match,
    confidence_level,
    match_rows,
    matches_by_target,
    records_from_rows,
)
from icp_app.engine.settings import ReconcileSettings


def test_end_to_end_match_scores():
    records = records_from_rows([{"SampleID": "S001"}])
    report = match_rows([{"SampleID": "S-001"}, {"SampleID": "s001x"}], records)

    assert [m.confidence for m in report.matches] == [pytest.approx(1.0), pytest.approx(0.96)]
    assert {m.target_id for m in report.matches} == {"S001"}
    assert report.unmatched == []
    assert report.match_rate == 1.0
    assert report.matches[0].confidence_level == "High"


def test_records_use_configured_master_column():
    rows = [{"Sample ID": "LK-1", "Date": "2023-05-01"}, {"Sample ID": "LK-2", "Date": None}]
    records = records_from_rows(rows)
    assert [r.id for r in records] == ["LK-1", "LK-2"]
    assert records[0].normalized_id == "lk1"
    assert records[0].payload["Date"] == "2023-05-01"
    with pytest.raises(TypeError):
        records[0].payload["Date"] = "changed"


def test_records_fall_back_when_master_column_missing(caplog):
    caplog.set_level(logging.WARNING)
    records = records_from_rows([{"Name": "Pond 4", "Value": 2}])
    assert [r.id for r in records] == ["Pond 4"]
    assert "not found" in caplog.text


def test_records_integral_float_ids_render_without_decimal():
    records = records_from_rows([{"Sample ID": 1001.0}])
    assert records[0].id == "1001"


def test_match_threshold_is_strict():
    records = [CanonicalRecord("abcd", {})]
    settings = ReconcileSettings(match_threshold=0.75)
    # "abxd" vs "abcd" scores exactly 0.75
    report = match_rows([{"Sample": "abxd"}], records, settings)
    assert report.matches == []
    assert report.unmatched == [0]

    looser = ReconcileSettings(match_threshold=0.7)
    assert len(match_rows([{"Sample": "abxd"}], records, looser).matches) == 1


def test_best_match_first_record_wins_ties():
    records = [CanonicalRecord("ab12", {"n": 1}), CanonicalRecord("AB-12", {"n": 2})]
    record, score = best_match("ab12", records)
    assert score == 1.0
    assert record.payload["n"] == 1


def test_best_match_skips_records_with_empty_id():
    records = [CanonicalRecord("", {}), CanonicalRecord("zz99", {})]
    found = best_match("zz99", records)
    assert found is not None
    assert found[0].id == "zz99"
    assert best_match("zz99", [CanonicalRecord("", {})]) is None


def test_short_identifiers_are_skipped():
    records = [CanonicalRecord("A1", {})]
    report = match_rows([{"Sample": "A"}, {"Sample": " "}, {"Sample": None}], records)
    assert report.matches == []
    assert report.unmatched == [0, 1, 2]


def test_first_valid_candidate_column_is_used():
    records = [CanonicalRecord("LAKE-7", {}), CanonicalRecord("RUN-22", {})]
    rows = [{"Sample": "x", "Sample ID": "LAKE-7", "Label": "RUN-22"}]
    report = match_rows(rows, records)
    assert len(report.matches) == 1
    assert report.matches[0].source_column == "Sample ID"
    assert report.matches[0].target_id == "LAKE-7"


def test_fallback_to_first_column_is_reported():
    records = [CanonicalRecord("W-100", {})]
    report = match_rows([{"Code": "W100", "Mg ppm": 4.2}], records, run_name="run.xlsx")
    assert report.used_fallback_column
    assert report.identifier_columns == ["Code"]
    assert "Code" in report.reason
    assert report.matches[0].run_name == "run.xlsx"
    assert report.matches[0].source_row["Mg ppm"] == 4.2


def test_empty_inputs():
    report = match_rows([], [CanonicalRecord("a1", {})])
    assert report.matches == []
    assert report.total_rows == 0
    assert report.match_rate == 0.0
    assert report.reason == "No columns available for identifier lookup"
    assert records_from_rows([]) == []


def test_confidence_levels():
    assert confidence_level(0.95) == "High"
    assert confidence_level(0.9) == "High"
    assert confidence_level(0.75) == "Medium"
    assert confidence_level(0.61) == "Low"


def test_matches_by_target_groups_duplicates():
    records = records_from_rows([{"SampleID": "S001"}, {"SampleID": "T900"}])
    report = match_rows(
        [{"SampleID": "S-001"}, {"SampleID": "s001x"}, {"SampleID": "T900"}],
        records,
    )
    grouped = matches_by_target(report.matches)
    assert len(grouped["S001"]) == 2
    assert len(grouped["T900"]) == 1
