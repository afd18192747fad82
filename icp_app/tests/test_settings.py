from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from icp_app.engine.errors import SettingsError
from icp_app.engine.settings import (
    DEFAULT_PRESET,
    ReconcileSettings,
    load_settings,
    save_settings,
)


def test_default_preset_matches_dataclass_defaults() -> None:
    with DEFAULT_PRESET.open("r", encoding="utf-8") as handle:
        preset = yaml.safe_load(handle)

    params = preset.get("settings", {})
    assert params.get("match_threshold") == 0.6
    assert params.get("standard_label_alphabet") == list("ABCDEFGHI")
    assert params.get("min_identifier_length") == 2
    assert params.get("master_id_column") == "Sample ID"
    assert params.get("chemical_parameters") == ["pH", "TDS", "Na mmolar", "K mmolar", "Ca mmolar", "Mg mmolar"]
    assert params.get("isotope_parameters")[-1] == "d2H"

    assert load_settings() == ReconcileSettings()


def test_defaults_validate_cleanly() -> None:
    assert ReconcileSettings().validate() == []


def test_load_settings_with_overrides(tmp_path: Path) -> None:
    preset = tmp_path / "lab.yaml"
    preset.write_text(
        "name: lab\nsettings:\n  match_threshold: 0.8\n  standard_label_alphabet: A-C\n  site: north\n",
        encoding="utf-8",
    )
    settings = load_settings(preset, {"min_identifier_length": "3"})
    assert settings.match_threshold == 0.8
    assert settings.standard_label_alphabet == ("A", "B", "C")
    assert settings.min_identifier_length == 3
    assert settings.extra == {"site": "north"}


def test_top_level_mapping_is_accepted(tmp_path: Path) -> None:
    preset = tmp_path / "flat.yaml"
    preset.write_text("intensity_keywords: [counts]\n", encoding="utf-8")
    assert load_settings(preset).intensity_keywords == ("counts",)


@pytest.mark.parametrize(
    "payload",
    [
        {"match_threshold": 1.5},
        {"match_threshold": "high"},
        {"standard_label_alphabet": []},
        {"min_identifier_length": 0},
        {"intensity_keywords": ["ppm"]},
    ],
)
def test_invalid_settings_raise(tmp_path: Path, payload) -> None:
    preset = tmp_path / "bad.yaml"
    preset.write_text(yaml.safe_dump({"settings": payload}), encoding="utf-8")
    with pytest.raises(SettingsError):
        load_settings(preset)


def test_missing_and_malformed_presets(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_settings(tmp_path / "missing.yaml")
    broken = tmp_path / "broken.yaml"
    broken.write_text("settings: [unclosed\n", encoding="utf-8")
    with pytest.raises(SettingsError):
        load_settings(broken)
    listing = tmp_path / "list.yaml"
    listing.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(SettingsError):
        load_settings(listing)


def test_save_and_reload(tmp_path: Path) -> None:
    settings = ReconcileSettings(match_threshold=0.7, elements=("Mg", "Ca"))
    path = save_settings(settings, tmp_path / "presets" / "custom.yaml")
    assert load_settings(path) == settings


def test_merged_keeps_unknown_keys() -> None:
    settings = ReconcileSettings.from_mapping({"operator": "JK"}).merged({"match_threshold": 0.65})
    assert settings.match_threshold == 0.65
    assert settings.extra["operator"] == "JK"
