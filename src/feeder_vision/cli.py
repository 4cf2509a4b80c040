#!/usr/bin/env python3
"""
Command line entry point for feeder-vision.
"""
import argparse
import logging
import sys
from collections import Counter
from pathlib import Path
from typing import List, Optional, Tuple

from .config import AppSettings, load_settings
from .core.errors import FeederVisionError, FolderReadError, ModelLoadError
from .core.export import execute_frame_export, export_csv, plan_frame_export
from .core.results import ResultSource, ScanResult
from .core.scan_engine import ScanEngine
from .utils.log_utils import configure_logging, get_logger

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feeder-vision",
        description="Classify bird feeder camera frames in a folder, offline",
    )
    parser.add_argument("folder", help="Folder holding the frames")
    parser.add_argument("--recursive", action="store_true", default=None,
                        help="Also scan subfolders")
    parser.add_argument("--rescan", action="store_true",
                        help="Ignore cached results and classify every frame again (drops manual overrides)")
    parser.add_argument("--threshold", type=float,
                        help="Presence threshold between 0 and 1 (default from settings, 0.5)")
    parser.add_argument("--background-label", action="append", dest="background_labels", metavar="LABEL",
                        help="Label meaning 'no animal'; repeat for several (default: achtergrond)")
    parser.add_argument("--batch-size", type=int, help="Frames per inference batch (default: 8)")
    parser.add_argument("--no-auto-batch", action="store_true",
                        help="Disable batch size tuning on large folders")
    parser.add_argument("--model-dir", help="Folder holding the model, labels and version files")
    parser.add_argument("--override", action="append", default=[], metavar="FILE=LABEL",
                        help="Manually label a frame (path relative to the folder); repeatable")
    parser.add_argument("--export-csv", metavar="PATH", help="Write file,present,species,confidence CSV")
    parser.add_argument("--export-dir", metavar="DIR",
                        help="Copy present frames into per-species folders under DIR")
    parser.add_argument("--ui", action="store_true", help="Show a live Rich progress display")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def parse_override(value: str) -> Tuple[str, str]:
    name, sep, label = value.partition("=")
    if not sep or not name.strip() or not label.strip():
        raise ValueError(f"Invalid override {value!r}, expected FILE=LABEL")
    return name.strip(), label.strip()


def settings_from_args(args: argparse.Namespace, settings: AppSettings) -> AppSettings:
    """Apply one-run command line overrides on top of the persisted settings."""
    if args.threshold is not None:
        settings.presence_threshold = args.threshold
    if args.background_labels:
        settings.background_labels = args.background_labels
    if args.batch_size is not None:
        settings.batch_size = args.batch_size
    if args.no_auto_batch:
        settings.auto_batch = False
    if args.recursive is not None:
        settings.recursive = args.recursive
    if args.model_dir:
        settings.model_dir = args.model_dir
    return settings


def log_summary(result: ScanResult) -> None:
    source = "cache" if result.source is ResultSource.CACHE else "model"
    logger.info(f"{len(result.rows)} frame(s) from {source} in {result.elapsed:.1f}s")
    species = Counter(row.label for row in result.present_rows)
    for label, count in species.most_common():
        logger.info(f"  {label}: {count}")
    uncertain = sum(1 for row in result.rows if row.decision is not None and row.decision.kind == "uncertain")
    empty = sum(1 for row in result.rows if row.decision is not None and row.decision.kind == "empty")
    logger.info(f"  uncertain: {uncertain}, empty: {empty}, unreadable: {len(result.failed_rows)}")


def run(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.debug else logging.INFO, enable_rich=args.ui)

    try:
        settings = settings_from_args(args, load_settings())
        overrides = [parse_override(value) for value in args.override]
    except ValueError as e:
        parser.error(str(e))

    folder = Path(args.folder)
    with ScanEngine(settings) as engine:
        try:
            engine.load_model()
            if args.ui:
                from .ui.rich_ui import RichScanUI
                result = RichScanUI(engine).run_scan(folder, rescan=args.rescan)
            else:
                result = engine.scan(folder, rescan=args.rescan)
        except ModelLoadError as e:
            logger.error(f"Model could not be loaded: {e}")
            return 2
        except FolderReadError as e:
            logger.error(str(e))
            return 1
        except FeederVisionError as e:
            logger.error(f"Scan failed: {e}")
            return 1

        if result.is_empty:
            logger.warning(f"No images found in {result.folder}")
            if args.export_csv or args.export_dir or overrides:
                logger.warning("Nothing to export or override")
            return 0

        for name, label in overrides:
            try:
                engine.apply_override(result.folder / name, label)
            except KeyError:
                logger.error(f"No frame named {name} in {result.folder}")
                return 1
        result = engine.result

        if not args.ui:
            log_summary(result)

        if args.export_csv:
            export_csv(result.rows, Path(args.export_csv), root=result.folder)
        if args.export_dir:
            plan = plan_frame_export(result.rows, Path(args.export_dir))
            summary = execute_frame_export(plan, execute=True)
            logger.info(f"Exported {summary.copied} frame(s) to {args.export_dir} ({summary.skipped} skipped)")
    return 0


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
