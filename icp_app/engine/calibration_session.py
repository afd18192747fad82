"""Per-run calibration state: point lists, exclusions and channel comparison.

A :class:`CalibrationSession` is owned by whoever drives the workflow (CLI,
background job or GUI) and threaded through explicitly. It moves through

``NO_RUN_LOADED -> RUN_LOADED -> ANALYTE_SELECTED``

with exclusion toggles recomputing the cached model in place, channel
comparison as a read-only view, and analyte changes keeping the state of
previously viewed analytes. Loading a new run clears all per-analyte state.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from icp_app.engine.audit import log_step, start_audit
from icp_app.engine.calibration_points import (
    CalibrationPoint,
    ExtractionResult,
    apply_exclusions,
    extract_points,
    extract_standards,
    included,
    pair_channels,
    resolve_concentration_column,
)
from icp_app.engine.column_rules import STANDARD_LABEL_FIELD, DiscoveryRules, MeasurementChannel
from icp_app.engine.errors import (
    CalibrationError,
    ExclusionRefused,
    NoStandardsFound,
    ReconcileError,
    UnknownAnalyte,
)
from icp_app.engine.regression import MIN_POINTS, CalibrationModel, fit_linear, quality_grade
from icp_app.engine.settings import ReconcileSettings

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    NO_RUN_LOADED = "no_run_loaded"
    RUN_LOADED = "run_loaded"
    ANALYTE_SELECTED = "analyte_selected"


@dataclass
class AnalyteCalibrationState:
    analyte: str
    selected_intensity_column: Optional[str] = None
    concentration_column: Optional[str] = None
    points: List[CalibrationPoint] = field(default_factory=list)
    excluded_indices: Set[int] = field(default_factory=set)
    cached_model: Optional[CalibrationModel] = None
    reason: Optional[str] = None

    @property
    def included_points(self) -> List[CalibrationPoint]:
        return included(self.points)


@dataclass
class ChannelComparison:
    channel_name: str
    wavelength_label: str
    view_label: str
    model: CalibrationModel
    points: List[CalibrationPoint]
    concentration_column: Optional[str] = None
    recommended: bool = False

    @property
    def quality(self) -> str:
        return quality_grade(self.model.r_squared)


class CalibrationSession:
    def __init__(self, settings: ReconcileSettings | None = None, rules: DiscoveryRules | None = None):
        self.settings = settings or ReconcileSettings()
        self.rules = rules or DiscoveryRules.from_settings(self.settings)
        self._lock = threading.RLock()
        self._analyte_locks: Dict[str, threading.RLock] = {}
        self.audit: List[str] = start_audit("Calibration session")
        self._clear()

    def _clear(self) -> None:
        self.run_name: Optional[str] = None
        self.standards: List[Dict[str, Any]] = []
        self.columns: List[str] = []
        self.channels: Dict[str, MeasurementChannel] = {}
        self.pairs: Dict[str, Optional[str]] = {}
        self.analytes: List[str] = []
        self.analyte_states: Dict[str, AnalyteCalibrationState] = {}
        self.current_analyte: Optional[str] = None
        self.state = SessionState.NO_RUN_LOADED

    # ------------------------------------------------------------------
    # run lifecycle
    def load_run(self, run_name: str, rows: Sequence[Mapping[str, Any]]) -> List[str]:
        """Extract standards from ``rows`` and reset per-analyte state."""

        standards = extract_standards(rows, self.settings, self.rules)
        if not standards:
            raise NoStandardsFound(
                f"No calibration standards ({', '.join(self.settings.standard_label_alphabet)}) "
                f"found in {run_name}"
            )
        return self.load_standards(run_name, standards)

    def load_standards(self, run_name: str, standards: Sequence[Mapping[str, Any]]) -> List[str]:
        with self._lock:
            self._clear()
            self._analyte_locks.clear()
            self.run_name = run_name
            self.standards = [dict(row) for row in standards]
            columns: List[str] = []
            for row in self.standards:
                for key in row.keys():
                    if key not in columns:
                        columns.append(key)
            self.columns = columns
            data_columns = [col for col in columns if col != STANDARD_LABEL_FIELD]
            self.channels = self.rules.channels(data_columns)
            self.pairs = pair_channels(data_columns, self.rules, self.channels)
            self.analytes = self.rules.detect_analytes(data_columns)
            self.state = SessionState.RUN_LOADED
            log_step(
                self.audit,
                "Loaded run %s: %d standards, analytes: %s",
                run_name,
                len(self.standards),
                ", ".join(self.analytes) or "none",
            )
            return list(self.analytes)

    def reset(self) -> None:
        with self._lock:
            self._clear()
            self._analyte_locks.clear()

    def _require_run(self) -> None:
        if self.state == SessionState.NO_RUN_LOADED:
            raise ReconcileError("No run loaded")

    def _analyte_lock(self, analyte: str) -> threading.RLock:
        with self._lock:
            lock = self._analyte_locks.get(analyte)
            if lock is None:
                lock = threading.RLock()
                self._analyte_locks[analyte] = lock
            return lock

    def _state_for(self, analyte: str) -> AnalyteCalibrationState:
        with self._lock:
            state = self.analyte_states.get(analyte)
            if state is None:
                state = AnalyteCalibrationState(analyte=analyte)
                self.analyte_states[analyte] = state
            return state

    # ------------------------------------------------------------------
    # queries
    def intensity_columns(self, analyte: str) -> List[str]:
        self._require_run()
        data_columns = [col for col in self.columns if col != STANDARD_LABEL_FIELD]
        return self.rules.intensity_columns_for(analyte, data_columns)

    def state_for(self, analyte: str) -> Optional[AnalyteCalibrationState]:
        return self.analyte_states.get(analyte)

    def _extract(self, column: str) -> ExtractionResult:
        if column not in self.pairs:
            self.pairs[column] = resolve_concentration_column(
                column,
                [col for col in self.columns if col != STANDARD_LABEL_FIELD],
                self.rules,
            )
        concentration_column = self.pairs[column]
        if concentration_column is None:
            return extract_points(self.standards, column, self.rules)
        return extract_points(
            self.standards,
            column,
            self.rules,
            concentration_column=concentration_column,
        )

    # ------------------------------------------------------------------
    # single-channel workflow
    def select_analyte(self, analyte: str) -> AnalyteCalibrationState:
        """Make ``analyte`` current, reusing its previously selected column."""

        self._require_run()
        existing = self.analyte_states.get(analyte)
        if existing is not None and existing.selected_intensity_column:
            column = existing.selected_intensity_column
        else:
            columns = self.intensity_columns(analyte)
            if not columns:
                raise UnknownAnalyte(f"No intensity column found for {analyte}")
            column = columns[0]
        return self.select_intensity_column(analyte, column)

    def select_intensity_column(self, analyte: str, column: str) -> AnalyteCalibrationState:
        """Rebuild points for ``column`` and refit with the analyte's exclusions."""

        self._require_run()
        if column not in self.columns:
            raise ReconcileError(f"Column '{column}' is not part of run {self.run_name}")
        with self._analyte_lock(analyte):
            state = self._state_for(analyte)
            result = self._extract(column)
            present = {point.index for point in result.points}
            stale = state.excluded_indices - present
            if stale:
                logger.info("Dropping stale exclusions %s for %s", sorted(stale), analyte)
            state.excluded_indices = state.excluded_indices & present
            state.selected_intensity_column = column
            state.concentration_column = result.concentration_column
            state.points = apply_exclusions(result.points, state.excluded_indices)
            state.reason = result.reason
            state.cached_model = None
            self._recompute(state)
            self.current_analyte = analyte
            self.state = SessionState.ANALYTE_SELECTED
            return state

    def _recompute(self, state: AnalyteCalibrationState) -> None:
        active = state.included_points
        if len(active) < MIN_POINTS:
            state.cached_model = None
            if state.reason is None:
                state.reason = (
                    f"Not enough included points ({len(active)}/{len(state.points)}) "
                    f"for {state.analyte}"
                )
            logger.warning("%s", state.reason)
            return
        try:
            state.cached_model = fit_linear(state.points)
        except CalibrationError as exc:
            state.cached_model = None
            state.reason = str(exc)
            logger.warning("Calibration for %s failed: %s", state.analyte, exc)
            return
        state.reason = None
        log_step(
            self.audit,
            "%s via %s: R2=%.8f, %d/%d points",
            state.analyte,
            state.selected_intensity_column,
            state.cached_model.r_squared,
            state.cached_model.n_points_used,
            len(state.points),
        )

    def toggle_exclusion(self, analyte: str, index: int) -> AnalyteCalibrationState:
        """Flip exclusion of the point at standards position ``index``.

        The toggle is refused with :class:`ExclusionRefused` when it would
        leave fewer than two included points; state and cached model are
        then left untouched.
        """

        self._require_run()
        with self._analyte_lock(analyte):
            state = self.analyte_states.get(analyte)
            if state is None or state.selected_intensity_column is None:
                state = self.select_analyte(analyte)
            if index not in {point.index for point in state.points}:
                raise ValueError(f"No calibration point with index {index} for {analyte}")
            proposed = set(state.excluded_indices)
            if index in proposed:
                proposed.discard(index)
                action = "Including"
            else:
                proposed.add(index)
                action = "Excluding"
            remaining = sum(1 for point in state.points if point.index not in proposed)
            if remaining < MIN_POINTS:
                logger.warning(
                    "Refusing to exclude point %d for %s: %d point(s) would remain",
                    index,
                    analyte,
                    remaining,
                )
                raise ExclusionRefused(analyte, index, remaining)
            state.excluded_indices = proposed
            state.points = apply_exclusions(state.points, proposed)
            log_step(self.audit, "%s standard %d for %s", action, index, analyte)
            self._recompute(state)
            self.current_analyte = analyte
            self.state = SessionState.ANALYTE_SELECTED
            return state

    # ------------------------------------------------------------------
    # read-only views
    def compare_channels(self, analyte: str, *, honor_exclusions: bool = False) -> List[ChannelComparison]:
        """Fit every intensity column of ``analyte`` and rank by R².

        Channels without at least two usable points, or whose fit is
        degenerate, are left out. The best entry is marked ``recommended``.
        Selection state is not modified.
        """

        self._require_run()
        columns = self.intensity_columns(analyte)
        if not columns:
            raise UnknownAnalyte(f"No intensity column found for {analyte}")
        excluded: Set[int] = set()
        if honor_exclusions and analyte in self.analyte_states:
            excluded = set(self.analyte_states[analyte].excluded_indices)
        comparisons: List[ChannelComparison] = []
        for column in columns:
            result = self._extract(column)
            points = apply_exclusions(result.points, excluded)
            if len(included(points)) < MIN_POINTS:
                continue
            try:
                model = fit_linear(points)
            except CalibrationError as exc:
                logger.info("Skipping channel %s: %s", column, exc)
                continue
            channel = self.channels.get(column) or self.rules.parse_channel(column)
            comparisons.append(
                ChannelComparison(
                    channel_name=column,
                    wavelength_label=channel.wavelength_label,
                    view_label=channel.view,
                    model=model,
                    points=points,
                    concentration_column=result.concentration_column,
                )
            )
        comparisons.sort(key=lambda comp: comp.model.r_squared, reverse=True)
        if comparisons:
            comparisons[0].recommended = True
        return comparisons

    def overview(self) -> List[Dict[str, Any]]:
        """Best and worst R² per detected analyte across its channels."""

        self._require_run()
        rows: List[Dict[str, Any]] = []
        for analyte in self.analytes:
            columns = self.intensity_columns(analyte)
            comparisons = self.compare_channels(analyte) if columns else []
            r2_values = [comp.model.r_squared for comp in comparisons]
            best = max(r2_values) if r2_values else 0.0
            rows.append(
                {
                    "analyte": analyte,
                    "best_r_squared": best,
                    "worst_r_squared": min(r2_values) if r2_values else 0.0,
                    "channels": len(columns),
                    "quality": quality_grade(best),
                    "warning": best < 0.995,
                }
            )
        return rows

    def summary_rows(self) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for analyte, state in self.analyte_states.items():
            model = state.cached_model
            if model is None:
                continue
            rows.append(
                {
                    "Analyte": analyte,
                    "Intensity_Column": state.selected_intensity_column,
                    "Concentration_Column": state.concentration_column,
                    "R_squared": model.r_squared,
                    "RMSE": model.rmse,
                    "Slope": model.slope,
                    "Intercept": model.intercept,
                    "Points_Used": model.n_points_used,
                    "Points_Total": len(state.points),
                    "Quality": model.quality,
                }
            )
        return rows
