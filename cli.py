"""
cli.py
Command-line entry point for StreamScope.

    streamscope FILES... [--report artists|albums|tracks|obsessions|yearly|yearly-artists]
                         [--top N] [--export DIR] [--format json|xlsx]
                         [--sections ...] [--include-history] [--low-memory]
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from tqdm import tqdm

import reporting
from analysis_engine import AnalysisEngine, build_snapshot
from config import config
from export_engine import ExportError, ExportManager, ExportOptions
from export_formats import SECTIONS, export_filename
from models import ResourceHints


def setup_logging():
    """Configure logging to file and console."""
    level_str = config.log_level.upper()

    # Level "NONE" -> Disable Logging
    if level_str == "NONE":
        logging.getLogger().handlers = []
        logging.disable(logging.CRITICAL)
        return

    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
    }
    target_level = level_map.get(level_str, logging.INFO)

    # Wrap in try/except to handle "File in Use" crashes
    try:
        logging.basicConfig(
            level=target_level,
            format="%(asctime)s [%(levelname)s] %(message)s",
            handlers=[
                logging.FileHandler(config.log_file, mode="w", encoding="utf-8"),
                logging.StreamHandler(sys.stderr),
            ],
            force=True,
        )
    except PermissionError:
        # Fallback to Console Only if file is locked
        logging.basicConfig(
            level=target_level,
            format="%(asctime)s [%(levelname)s] [FILE LOCKED] %(message)s",
            handlers=[logging.StreamHandler(sys.stderr)],
            force=True,
        )
        logging.warning("Could not write to streamscope.log (File Locked). Logging to console only.")

    logging.captureWarnings(True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="streamscope",
        description="Analyze streaming-history exports from several services.",
    )
    parser.add_argument("files", nargs="+", help="Export files (JSON, CSV/TSV or Deezer XLSX)")
    parser.add_argument("--report", choices=["artists", "albums", "tracks", "obsessions", "yearly", "yearly-artists"],
                        default="artists", help="Table to print and save as CSV")
    parser.add_argument("--top", type=int, default=25, help="Number of rows to show (0 = all)")
    parser.add_argument("--by", choices=["total_listens", "total_hours_listened"], default="total_hours_listened",
                        help="Ranking metric for artists/albums/tracks")
    parser.add_argument("--no-save", action="store_true", help="Don't save the report CSV")
    parser.add_argument("--export", metavar="DIR", help="Write an export artifact into DIR")
    parser.add_argument("--format", choices=["json", "xlsx"], default="json", help="Export encoding")
    parser.add_argument("--sections", nargs="+", choices=SECTIONS,
                        help="Sections to export (default: all except history)")
    parser.add_argument("--include-history", action="store_true", help="Also export the raw play history")
    parser.add_argument("--low-memory", action="store_true", help="Use the constrained export profile")
    return parser


def print_report(result, report: str, top: int, by: str, save: bool):
    if report == "obsessions":
        df, meta = reporting.report_obsessions(result.obsessions, topn=top)
    elif report == "yearly":
        df, meta = reporting.report_yearly(result.yearly_tracks, topn=top)
    elif report == "yearly-artists":
        df, meta = reporting.report_yearly_artists(result.yearly_artists, topn=top)
    else:
        entity = report[:-1]
        entities = {"artist": result.artists, "album": result.albums, "track": result.tracks}[entity]
        df, meta = reporting.report_top(entities, entity=entity, by=by, topn=top)

    if df.empty:
        print("No data available.")
        return
    print(df.to_string(index=False))
    if save:
        reporting.save_report(df, meta=meta)


def run_export(result, args) -> Optional[str]:
    selection = {name: False for name in SECTIONS}
    for name in args.sections or [s for s in SECTIONS if s != "history"]:
        selection[name] = True
    if args.include_history:
        selection["history"] = True

    options = ExportOptions(
        format=args.format,
        selection=selection,
        hints=ResourceHints(low_memory=args.low_memory),
    )
    snapshot = build_snapshot(result, include_history=selection["history"])

    with tqdm(total=100, desc="Exporting", unit="%") as pbar:
        def on_progress(event):
            pbar.update(max(0, event["progress"] - pbar.n))
            pbar.set_postfix_str(event.get("phase") or "")

        manager = ExportManager(snapshot, options, callbacks={"on_progress": on_progress})
        try:
            payload = manager.run()
        except KeyboardInterrupt:
            # Leaving events() already tore the worker down
            manager.cancel()
            tqdm.write("Export cancelled.")
            return None
        except ExportError as e:
            tqdm.write(f"Export failed: {e}")
            return None

    if payload is None:
        return None

    os.makedirs(args.export, exist_ok=True)
    path = os.path.join(args.export, export_filename(args.format, selection["history"]))
    with open(path, "wb") as f:
        f.write(payload)
    logging.info(f"Export written to {path} ({len(payload)} bytes)")
    return path


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    missing = [p for p in args.files if not os.path.isfile(p)]
    for path in missing:
        logging.warning(f"Skipping '{path}': not a file")
    paths = [p for p in args.files if p not in missing]
    if not paths:
        print("No readable input files.")
        return 1

    result = AnalysisEngine().run(paths)
    stats = result.stats
    print(
        f"{stats.total_entries} entries from {stats.total_files} files: "
        f"{stats.processed_plays} plays, {stats.short_plays} short plays, "
        f"{stats.null_track_plays} without title, {stats.unique_tracks} unique tracks"
    )

    print_report(result, args.report, args.top, args.by, save=not args.no_save)

    if args.export:
        path = run_export(result, args)
        if path is None:
            return 1
        print(f"Export saved to {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
