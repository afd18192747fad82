"""Exception types raised by the reconciliation and calibration engine."""

from __future__ import annotations


class ReconcileError(Exception):
    """Base class for engine errors."""


class SettingsError(ReconcileError, ValueError):
    """Raised when a settings payload cannot be coerced or validated."""


class CalibrationError(ReconcileError):
    """Base class for calibration fit failures."""


class InsufficientPoints(CalibrationError):
    def __init__(self, count: int, required: int = 2):
        super().__init__(
            f"At least {required} included calibration points are required (got {count})."
        )
        self.count = count
        self.required = required


class FitDegenerate(CalibrationError):
    """All included intensities are equal so the slope is undefined."""


class ExclusionRefused(ReconcileError):
    def __init__(self, analyte: str, index: int, remaining: int):
        super().__init__(
            f"Excluding point {index} for {analyte} would leave {remaining} included point(s)."
        )
        self.analyte = analyte
        self.index = index
        self.remaining = remaining


class NoStandardsFound(ReconcileError):
    """Raised when a run contains no rows labelled as calibration standards."""


class UnknownAnalyte(ReconcileError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Unknown analyte"
