from PyQt6.QtCore import QObject, pyqtSignal, QThreadPool, QRunnable
from pathlib import Path
from typing import Optional

from icp_app.engine.pipeline import ReconcileResult, reconcile
from icp_app.engine.settings import ReconcileSettings


class JobSignals(QObject):
    progress = pyqtSignal(int)
    message = pyqtSignal(str)
    finished = pyqtSignal(object)  # ReconcileResult or Exception


class ReconcileRunnable(QRunnable):
    """Runs a full reconciliation batch off the GUI thread."""

    def __init__(
        self,
        master,
        runs,
        settings: Optional[ReconcileSettings] = None,
        parallel_workers: int = 0,
    ):
        super().__init__()
        self.master = master
        self.runs = runs if isinstance(runs, (str, Path)) else list(runs)
        self.settings = settings or ReconcileSettings()
        self.parallel_workers = parallel_workers
        self.signals = JobSignals()
        self._cancelled = False

    def run(self):
        try:
            self._emit_message("Validating settings...")
            errs = self.settings.validate()
            if errs:
                raise RuntimeError("; ".join(errs))
            result = reconcile(
                self.master,
                self.runs,
                self.settings,
                progress=self._on_progress,
                is_cancelled=lambda: self._cancelled,
                parallel_workers=self.parallel_workers,
            )
            if result.cancelled:
                raise RuntimeError("Cancelled")
            self.signals.finished.emit(result)
        except Exception as e:
            self.signals.finished.emit(e)

    def cancel(self):
        self._cancelled = True
        self._emit_message("Cancellation requested")

    def _on_progress(self, percent: int, message: str):
        self.signals.progress.emit(int(percent))
        self._emit_message(message)

    def _emit_message(self, message: str):
        self.signals.message.emit(message)


class RunController(QObject):
    job_started = pyqtSignal()
    job_finished = pyqtSignal(object)
    job_progress = pyqtSignal(int)
    job_message = pyqtSignal(str)

    def __init__(self, parent=None):
        super().__init__(parent)
        self.pool = QThreadPool.globalInstance()
        self._current_runnable: Optional[ReconcileRunnable] = None
        self.last_result: Optional[ReconcileResult] = None

    def start(self, master, runs, settings: Optional[ReconcileSettings] = None, parallel_workers: int = 0):
        runnable = ReconcileRunnable(master, runs, settings, parallel_workers)
        runnable.signals.finished.connect(self._on_finished)
        runnable.signals.progress.connect(self.job_progress)
        runnable.signals.message.connect(self.job_message)
        self._current_runnable = runnable
        self.job_started.emit()
        self.pool.start(runnable)

    def cancel(self) -> bool:
        if self._current_runnable is None:
            return False
        self._current_runnable.cancel()
        return True

    def _on_finished(self, result):
        self._current_runnable = None
        if isinstance(result, ReconcileResult):
            self.last_result = result
        self.job_finished.emit(result)

    def is_running(self) -> bool:
        return self._current_runnable is not None
