from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

import yaml

from icp_app.engine.errors import SettingsError

PRESET_DIR = Path(__file__).resolve().parent.parent / "config" / "presets"
DEFAULT_PRESET = PRESET_DIR / "default.yaml"

DEFAULT_ELEMENTS: Tuple[str, ...] = (
    "Na", "K", "Ca", "Mg", "Si", "Sr", "Al", "Ba", "Fe", "Li",
    "Mn", "S", "Cl", "P", "B", "Zn", "Cu", "Ni", "Cr", "Co",
)


@dataclass
class ReconcileSettings:
    match_threshold: float = 0.6
    standard_label_alphabet: Tuple[str, ...] = tuple("ABCDEFGHI")
    min_identifier_length: int = 2
    min_shared_length: int = 0
    master_id_column: str = "Sample ID"
    identifier_keywords: Tuple[str, ...] = ("sample", "id", "name", "label")
    intensity_keywords: Tuple[str, ...] = ("inten", "cps")
    concentration_keywords: Tuple[str, ...] = ("ppm", "ppb", "conc")
    elements: Tuple[str, ...] = DEFAULT_ELEMENTS
    run_sheet_keywords: Tuple[str, ...] = ("final", "samples", "data", "results")
    standards_sheet_keywords: Tuple[str, ...] = ("standard", "std", "calib", "cal")
    master_concentration_keywords: Tuple[str, ...] = ("ppm", "mmol", "concentration")
    chemical_parameters: Tuple[str, ...] = ("pH", "TDS", "Na mmolar", "K mmolar", "Ca mmolar", "Mg mmolar")
    isotope_parameters: Tuple[str, ...] = ("d88Sr", "d7Li", "d13C DIC", "d17O", "d18O", "d2H")
    extra: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> list[str]:
        errs = []
        try:
            threshold = float(self.match_threshold)
            if not 0.0 <= threshold < 1.0:
                errs.append("Match threshold must be within [0, 1)")
        except (TypeError, ValueError):
            errs.append("Match threshold must be numeric")
        if not self.standard_label_alphabet:
            errs.append("Standard label alphabet must not be empty")
        elif any(not str(label).strip() for label in self.standard_label_alphabet):
            errs.append("Standard labels must be non-blank")
        if int(self.min_identifier_length) < 1:
            errs.append("Minimum identifier length must be at least 1")
        if int(self.min_shared_length) < 0:
            errs.append("Minimum shared length must not be negative")
        if not str(self.master_id_column).strip():
            errs.append("Master ID column must be named")
        for name in ("identifier_keywords", "intensity_keywords", "concentration_keywords", "elements"):
            if not getattr(self, name):
                errs.append(f"{name.replace('_', ' ').capitalize()} must not be empty")
        overlap = {kw.lower() for kw in self.intensity_keywords} & {
            kw.lower() for kw in self.concentration_keywords
        }
        if overlap:
            errs.append(
                "Intensity and concentration keywords overlap: " + ", ".join(sorted(overlap))
            )
        return errs

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        extra = payload.pop("extra", {}) or {}
        for key, value in payload.items():
            if isinstance(value, tuple):
                payload[key] = list(value)
        payload.update(extra)
        return payload

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "ReconcileSettings":
        data = dict(data or {})
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                extra[key] = value
                continue
            if key in {"match_threshold"}:
                kwargs[key] = _coerce_float(key, value)
            elif key in {"min_identifier_length", "min_shared_length"}:
                kwargs[key] = _coerce_int(key, value)
            elif key == "master_id_column":
                kwargs[key] = str(value)
            else:
                kwargs[key] = _coerce_str_tuple(key, value)
        return cls(extra=extra, **kwargs)

    def merged(self, overrides: Mapping[str, Any] | None) -> "ReconcileSettings":
        base = self.to_dict()
        base.update(dict(overrides or {}))
        return ReconcileSettings.from_mapping(base)


def _coerce_float(key: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise SettingsError(f"Setting '{key}' must be numeric, got {value!r}") from exc


def _coerce_int(key: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise SettingsError(f"Setting '{key}' must be an integer, got {value!r}") from exc


def _coerce_str_tuple(key: str, value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        # "A-I" style ranges are accepted for label alphabets
        text = value.strip()
        if len(text) == 3 and text[1] == "-" and text[0].isalpha() and text[2].isalpha():
            start, stop = ord(text[0].upper()), ord(text[2].upper())
            if start <= stop:
                return tuple(chr(code) for code in range(start, stop + 1))
        items: List[Any] = [part for part in text.replace(";", ",").split(",")]
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        raise SettingsError(f"Setting '{key}' must be a list of strings, got {value!r}")
    cleaned = tuple(str(item).strip() for item in items if str(item).strip())
    return cleaned


def load_settings(path: str | Path | None = None, overrides: Mapping[str, Any] | None = None) -> ReconcileSettings:
    """Load settings from a YAML preset, falling back to the bundled default.

    The preset may either hold the settings at top level or under a
    ``settings`` key alongside descriptive metadata.
    """

    preset_path = Path(path) if path else DEFAULT_PRESET
    if not preset_path.exists():
        if path:
            raise FileNotFoundError(preset_path)
        content: Dict[str, Any] = {}
    else:
        try:
            with preset_path.open("r", encoding="utf-8") as handle:
                content = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise SettingsError(f"Could not parse settings preset {preset_path}: {exc}") from exc
    if not isinstance(content, dict):
        raise SettingsError(f"Settings preset {preset_path} must contain a mapping")
    payload = content.get("settings", content)
    if not isinstance(payload, dict):
        raise SettingsError(f"'settings' in {preset_path} must be a mapping")
    settings = ReconcileSettings.from_mapping(payload)
    if overrides:
        settings = settings.merged(overrides)
    errs = settings.validate()
    if errs:
        raise SettingsError("; ".join(errs))
    return settings


def save_settings(settings: ReconcileSettings, path: str | Path) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        yaml.safe_dump({"settings": settings.to_dict()}, handle, sort_keys=False)
    return target
