from pathlib import Path
from typing import Optional

from PyQt6.QtCore import QSettings

from icp_app.engine.calibration_session import CalibrationSession
from icp_app.engine.settings import ReconcileSettings, load_settings


class AppContext:
    def __init__(self, settings: Optional[QSettings] = None):
        # Company/app keys control where QSettings persists per OS
        self.settings = settings or QSettings("ICPLab", "ICPReconcile")
        self._dirty = False
        self._job_running = False
        self.reconcile_settings = self._load_reconcile_settings()
        self.session = CalibrationSession(self.reconcile_settings)

    def _load_reconcile_settings(self) -> ReconcileSettings:
        preset = self.settings.value("paths/preset", "", type=str)
        if preset and Path(preset).exists():
            return load_settings(preset)
        return load_settings()

    def set_preset(self, path: str | Path):
        self.reconcile_settings = load_settings(path)
        self.settings.setValue("paths/preset", str(path))
        # discovery rules change with the preset, so calibration state restarts
        self.session = CalibrationSession(self.reconcile_settings)

    def remember_path(self, key: str, path: str | Path):
        self.settings.setValue(f"paths/{key}", str(path))

    def recalled_path(self, key: str) -> Optional[Path]:
        value = self.settings.value(f"paths/{key}", "", type=str)
        return Path(value) if value else None

    def set_dirty(self, dirty: bool):
        self._dirty = dirty

    def is_dirty(self) -> bool:
        return self._dirty

    def set_job_running(self, running: bool):
        self._job_running = running

    def is_job_running(self) -> bool:
        return self._job_running

    def maybe_close(self) -> bool:
        return not (self._job_running or self._dirty)
