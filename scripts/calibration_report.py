#!/usr/bin/env python3
"""Fit calibration curves for the standards in an ICP-OES run workbook."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

from icp_app.engine.errors import ReconcileError, SettingsError
from icp_app.engine.excel_writer import write_calibration_report
from icp_app.engine.figures import (
    figure_to_bytes,
    render_comparison_figure,
    sanitise_figure_name,
    session_figures,
)
from icp_app.engine.pipeline import open_calibration_session
from icp_app.engine.settings import load_settings

logger = logging.getLogger("calibration_report")


def _parse_exclusion(text: str) -> Tuple[str, int]:
    analyte, sep, index = text.partition(":")
    if not sep or not analyte:
        raise argparse.ArgumentTypeError(f"expected ANALYTE:INDEX, got '{text}'")
    try:
        return analyte.strip(), int(index)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid point index in '{text}'") from exc


def _parse_column(text: str) -> Tuple[str, str]:
    analyte, sep, column = text.partition("=")
    if not sep or not analyte or not column:
        raise argparse.ArgumentTypeError(f"expected ANALYTE=COLUMN, got '{text}'")
    return analyte.strip(), column.strip()


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("run", type=Path, help="Run workbook (.xlsx/.csv) containing standards.")
    parser.add_argument(
        "-a",
        "--analyte",
        action="append",
        default=[],
        help="Analyte to calibrate (repeatable; default: every detected analyte).",
    )
    parser.add_argument(
        "--column",
        action="append",
        type=_parse_column,
        default=[],
        metavar="ANALYTE=COLUMN",
        help="Intensity column to use for an analyte.",
    )
    parser.add_argument(
        "--exclude",
        action="append",
        type=_parse_exclusion,
        default=[],
        metavar="ANALYTE:INDEX",
        help="Exclude the standard at INDEX from the analyte's fit.",
    )
    parser.add_argument("--compare", action="store_true", help="Compare every wavelength/view channel.")
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Report workbook (default: <run>_calibration.xlsx beside the run).",
    )
    parser.add_argument("--figures-dir", type=Path, default=None, help="Write PNG figures here.")
    parser.add_argument("--settings", type=Path, default=None, help="YAML settings preset.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(args.settings)
    except (FileNotFoundError, SettingsError) as exc:
        logger.error("Invalid settings: %s", exc)
        return 2

    try:
        session = open_calibration_session(args.run, settings)
    except (OSError, ValueError, ReconcileError) as exc:
        logger.error("Could not load standards from %s: %s", args.run, exc)
        return 1

    analytes: List[str] = args.analyte or list(session.analytes)
    columns: Dict[str, str] = dict(args.column)
    exclusions: Dict[str, List[int]] = {}
    for analyte, index in args.exclude:
        exclusions.setdefault(analyte, []).append(index)

    failures = 0
    comparisons = {}
    for analyte in analytes:
        try:
            if analyte in columns:
                state = session.select_intensity_column(analyte, columns[analyte])
            else:
                state = session.select_analyte(analyte)
            for index in exclusions.get(analyte, []):
                state = session.toggle_exclusion(analyte, index)
            if args.compare:
                comparisons[analyte] = session.compare_channels(analyte)
        except (ReconcileError, ValueError) as exc:
            logger.error("%s: %s", analyte, exc)
            failures += 1
            continue
        model = state.cached_model
        if model is None:
            print(f"{analyte}: no calibration ({state.reason})")
        else:
            print(
                f"{analyte}: {model.equation()}  R²={model.r_squared:.6f}  "
                f"[{model.quality}] {model.n_points_used}/{len(state.points)} points"
            )

    output = args.output or args.run.with_name(f"{args.run.stem}_calibration.xlsx")
    write_calibration_report(output, session, comparisons)
    logger.info("Wrote calibration report to %s", output)

    if args.figures_dir is not None:
        args.figures_dir.mkdir(parents=True, exist_ok=True)
        figures = session_figures(session)
        for analyte, entries in comparisons.items():
            if entries:
                fig = render_comparison_figure(analyte, entries)
                figures[sanitise_figure_name("comparison", analyte)] = figure_to_bytes(fig)
        for name, data in figures.items():
            (args.figures_dir / name).write_bytes(data)
        logger.info("Wrote %d figure(s) to %s", len(figures), args.figures_dir)

    return 1 if failures and failures == len(analytes) else 0


if __name__ == "__main__":
    raise SystemExit(main())
