from __future__ import annotations

import io
import re
from typing import Dict, Sequence

import numpy as np
from matplotlib.figure import Figure

from icp_app.engine.calibration_points import CalibrationPoint
from icp_app.engine.regression import CalibrationModel

_SERIES_COLORS = ("tab:blue", "tab:green", "tab:orange", "tab:red", "tab:purple", "tab:pink")


def render_calibration_figure(
    points: Sequence[CalibrationPoint],
    model: CalibrationModel | None,
    title: str = "Calibration",
) -> Figure:
    """Fit plot with included/excluded standards above a residual plot."""

    fig = Figure(figsize=(6, 6))
    ax_fit, ax_resid = fig.subplots(2, 1, sharex=True)
    inc = [p for p in points if not p.excluded]
    exc = [p for p in points if p.excluded]
    if inc:
        ax_fit.scatter([p.intensity for p in inc], [p.concentration for p in inc], label="Included", color="tab:blue")
    if exc:
        ax_fit.scatter(
            [p.intensity for p in exc],
            [p.concentration for p in exc],
            label="Excluded",
            color="tab:orange",
            marker="x",
        )
    for point in points:
        ax_fit.annotate(point.label, (point.intensity, point.concentration), fontsize=8, xytext=(3, 3), textcoords="offset points")

    if model is not None and points:
        xs = np.array([p.intensity for p in points], dtype=float)
        x_span = np.linspace(float(np.min(xs)), float(np.max(xs)), 100)
        ax_fit.plot(x_span, model.slope * x_span + model.intercept, color="tab:green", label="Fit")
        ax_fit.text(
            0.02,
            0.95,
            f"Slope: {model.slope:.4e}\nIntercept: {model.intercept:.4e}\nR$^2$: {model.r_squared:.6f}",
            transform=ax_fit.transAxes,
            va="top",
            ha="left",
            fontsize=9,
            bbox={"boxstyle": "round", "facecolor": "white", "alpha": 0.6},
        )
        ax_resid.axhline(0.0, color="tab:gray", linestyle="--", linewidth=1.0)
        ax_resid.scatter([p.intensity for p in inc], list(model.residuals), color="tab:blue")
        if exc:
            exc_resid = [p.concentration - model.predict(p.intensity) for p in exc]
            ax_resid.scatter([p.intensity for p in exc], exc_resid, color="tab:orange", marker="x")

    ax_fit.set_ylabel("Concentration (ppm)")
    ax_fit.set_title(title)
    ax_fit.grid(True, alpha=0.2)
    if inc or exc:
        ax_fit.legend(loc="best")
    ax_resid.set_xlabel("Intensity (CPS)")
    ax_resid.set_ylabel("Residual (ppm)")
    ax_resid.grid(True, alpha=0.2)
    fig.tight_layout()
    return fig


def render_comparison_figure(analyte: str, comparisons: Sequence) -> Figure:
    """Overlay every compared channel; radial views use dashed fit lines."""

    fig = Figure(figsize=(7, 5))
    ax = fig.subplots()
    for idx, comp in enumerate(comparisons):
        color = _SERIES_COLORS[idx % len(_SERIES_COLORS)]
        xs = np.array([p.intensity for p in comp.points], dtype=float)
        ys = np.array([p.concentration for p in comp.points], dtype=float)
        marker = "o" if comp.view_label == "Axial" else "^"
        label = f"{comp.wavelength_label} ({comp.view_label}) R$^2$={comp.model.r_squared:.6f}"
        if comp.recommended:
            label += " *"
        ax.scatter(xs, ys, color=color, marker=marker, label=label)
        if xs.size:
            x_span = np.array([float(np.min(xs)), float(np.max(xs))])
            ax.plot(
                x_span,
                comp.model.slope * x_span + comp.model.intercept,
                color=color,
                linestyle="--" if comp.view_label == "Radial" else "-",
            )
    ax.set_xlabel("Intensity (CPS)")
    ax.set_ylabel("Concentration (ppm)")
    ax.set_title(f"{analyte}: wavelength & view comparison")
    ax.grid(True, alpha=0.2)
    if comparisons:
        ax.legend(loc="best", fontsize=8)
    fig.tight_layout()
    return fig


def figure_to_bytes(fig: Figure, fmt: str = "png", dpi: int = 150) -> bytes:
    buf = io.BytesIO()
    save_kwargs = {"format": fmt}
    if fmt == "png":
        save_kwargs["dpi"] = dpi
    fig.savefig(buf, **save_kwargs)
    buf.seek(0)
    return buf.read()


def sanitise_figure_name(*parts: str, ext: str = "png") -> str:
    cleaned = [re.sub(r"[^A-Za-z0-9._-]+", "_", str(part)).strip("_") for part in parts if str(part)]
    stem = "_".join(part for part in cleaned if part) or "figure"
    return f"{stem}.{ext}"


def session_figures(session, fmt: str = "png") -> Dict[str, bytes]:
    """Render the selected calibration of every analyte in ``session``."""

    figures: Dict[str, bytes] = {}
    for analyte, state in session.analyte_states.items():
        if not state.points:
            continue
        title = f"{analyte}: {state.selected_intensity_column}"
        fig = render_calibration_figure(state.points, state.cached_model, title=title)
        figures[sanitise_figure_name("calibration", analyte, ext=fmt)] = figure_to_bytes(fig, fmt)
    return figures
