"""Ordinary least-squares calibration fits (x = intensity, y = concentration)."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple

import numpy as np

from icp_app.engine.calibration_points import CalibrationPoint
from icp_app.engine.errors import FitDegenerate, InsufficientPoints

MIN_POINTS = 2

QUALITY_THRESHOLDS: Tuple[Tuple[float, str], ...] = (
    (0.9995, "Excellent"),
    (0.999, "Very Good"),
    (0.995, "Good"),
    (0.99, "Acceptable"),
)


@dataclass(frozen=True)
class CalibrationModel:
    slope: float
    intercept: float
    r_squared: float
    rmse: float
    n_points_used: int
    predicted: Tuple[float, ...]
    residuals: Tuple[float, ...]

    @property
    def quality(self) -> str:
        return quality_grade(self.r_squared)

    def predict(self, intensity: float) -> float:
        return self.slope * float(intensity) + self.intercept

    def equation(self) -> str:
        return f"y = {self.slope:.4e}x + {self.intercept:.4e}"


def quality_grade(r_squared: float) -> str:
    for threshold, label in QUALITY_THRESHOLDS:
        if r_squared >= threshold:
            return label
    return "Poor"


def fit_xy(x: Sequence[float], y: Sequence[float]) -> CalibrationModel:
    """Least-squares line through ``(x, y)`` pairs.

    Raises :class:`InsufficientPoints` for fewer than two pairs and
    :class:`FitDegenerate` when every ``x`` is identical or the fit is not
    finite.
    """

    x_arr = np.asarray(x, dtype=float).ravel()
    y_arr = np.asarray(y, dtype=float).ravel()
    if x_arr.shape != y_arr.shape:
        raise ValueError("x and y must have the same length")
    n = int(x_arr.size)
    if n < MIN_POINTS:
        raise InsufficientPoints(n, MIN_POINTS)
    if not (np.all(np.isfinite(x_arr)) and np.all(np.isfinite(y_arr))):
        raise FitDegenerate("Calibration points must be finite")

    mean_x = float(np.mean(x_arr))
    mean_y = float(np.mean(y_arr))
    dx = x_arr - mean_x
    dy = y_arr - mean_y
    # centred sums; raw sums lose the slope when intensities sit far from zero
    sxx = float(np.dot(dx, dx))
    sxy = float(np.dot(dx, dy))
    if np.ptp(x_arr) == 0 or sxx == 0:
        raise FitDegenerate("All included intensities are equal; slope is undefined")

    slope = sxy / sxx
    intercept = mean_y - slope * mean_x
    if not (math.isfinite(slope) and math.isfinite(intercept)):
        raise FitDegenerate("Calibration fit produced a non-finite slope or intercept")

    predicted = mean_y + slope * dx
    residuals = y_arr - predicted
    ss_res = float(np.sum(residuals**2))
    ss_tot = float(np.dot(dy, dy))
    if ss_tot <= 0:
        r_squared = 1.0 if ss_res <= 1e-12 else 0.0
    else:
        r_squared = 1.0 - ss_res / ss_tot
    rmse = math.sqrt(ss_res / n)

    return CalibrationModel(
        slope=float(slope),
        intercept=float(intercept),
        r_squared=float(r_squared),
        rmse=float(rmse),
        n_points_used=n,
        predicted=tuple(float(v) for v in predicted),
        residuals=tuple(float(v) for v in residuals),
    )


def fit_linear(points: Iterable[CalibrationPoint]) -> CalibrationModel:
    """Fit the calibration line over the points that are not excluded."""

    active = [point for point in points if not point.excluded]
    if len(active) < MIN_POINTS:
        raise InsufficientPoints(len(active), MIN_POINTS)
    return fit_xy(
        [point.intensity for point in active],
        [point.concentration for point in active],
    )


def percent_error(concentration: float, predicted: float) -> float:
    if concentration == 0:
        return float("nan")
    return abs((concentration - predicted) / concentration) * 100.0
