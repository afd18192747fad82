#!/usr/bin/env python3
"""Match ICP-OES run exports against a master sample spreadsheet."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from icp_app.engine.errors import SettingsError
from icp_app.engine.excel_writer import write_match_workbook, write_matches_csv
from icp_app.engine.master_stats import filter_rows, master_stats
from icp_app.engine.pipeline import reconcile
from icp_app.engine.settings import load_settings

logger = logging.getLogger("match_icp_runs")


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("master", type=Path, help="Master spreadsheet (first sheet holds samples).")
    parser.add_argument(
        "runs",
        type=Path,
        nargs="+",
        help="Run workbooks, or a single directory containing them.",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("ICP_OES_Matched_Results.xlsx"),
        help="Workbook to write (default: %(default)s).",
    )
    parser.add_argument("--csv", type=Path, default=None, help="Also write matches to this CSV file.")
    parser.add_argument("--settings", type=Path, default=None, help="YAML settings preset.")
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Override the minimum similarity for a match.",
    )
    parser.add_argument(
        "--id-column",
        default=None,
        help="Identifier column of the master spreadsheet.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Match runs in this many worker processes (0 = in-process).",
    )
    parser.add_argument(
        "--no-stats",
        action="store_true",
        help="Skip the Master_Stats sheet of master-data summaries.",
    )
    parser.add_argument(
        "--filter",
        default=None,
        help="Also write master rows containing this text to a Master_Filtered sheet.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    overrides = {}
    if args.threshold is not None:
        overrides["match_threshold"] = args.threshold
    if args.id_column:
        overrides["master_id_column"] = args.id_column
    try:
        settings = load_settings(args.settings, overrides)
    except (FileNotFoundError, SettingsError) as exc:
        logger.error("Invalid settings: %s", exc)
        return 2

    runs = args.runs[0] if len(args.runs) == 1 and args.runs[0].is_dir() else args.runs
    try:
        result = reconcile(args.master, runs, settings, parallel_workers=args.workers)
    except Exception as exc:
        logger.error("Reconciliation failed: %s: %s", type(exc).__name__, exc)
        return 1

    stats = None if args.no_stats else master_stats(result.master_rows, settings)
    filtered = filter_rows(result.master_rows, args.filter) if args.filter else None
    write_match_workbook(
        args.output,
        result.matches,
        result.summaries,
        result.audit,
        master_stats=stats,
        filtered_rows=filtered,
    )
    logger.info("Wrote %d matches to %s", result.matched_count, args.output)
    if args.csv:
        write_matches_csv(args.csv, result.matches)
        logger.info("Wrote CSV to %s", args.csv)
    for summary in result.summaries.values():
        if summary.error:
            print(f"{summary.run_name}: skipped ({summary.error})")
            continue
        print(
            f"{summary.run_name}: {summary.matched}/{summary.total_rows} matched "
            f"({round(summary.match_rate * 100)}%)"
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
