"""
export.py: CSV export of result rows and copying classified frames into per-label folders.

Copying is planned first (dry run) and executed separately, so callers can show
what will happen before any file is written.
"""

import csv
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional, Sequence

from .decision import Empty, Present, Uncertain
from .errors import NothingToExportError
from .folder_scanner import relative_name
from .results import ResultRow
from ..utils.log_utils import get_logger

logger = get_logger(__name__)

CSV_HEADER = ("file", "present", "species", "confidence")
_UNSAFE_PATH_CHARS = set('<>:"/\\|?*')


def format_confidence(confidence: float) -> str:
    return f"{round(confidence, 4):g}"


def csv_record(row: ResultRow, root: Optional[Path] = None) -> List[str]:
    """One CSV line. Species and confidence are only filled for present frames."""
    name = relative_name(root, row.path) if root is not None else str(row.path)
    if isinstance(row.decision, Present):
        return [name, "true", row.decision.species, format_confidence(row.decision.confidence)]
    return [name, "false", "", ""]


def export_csv(rows: Sequence[ResultRow], path: Path, root: Optional[Path] = None) -> Path:
    """
    Write `file,present,species,confidence` with one line per row.

    Args:
        rows: Committed result rows.
        path: Destination CSV file.
        root: When given, file names are written relative to it.

    Raises:
        NothingToExportError: If there are no rows.
    """
    if not rows:
        raise NothingToExportError("There are no scan results to export")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(CSV_HEADER)
        for row in rows:
            writer.writerow(csv_record(row, root))
    logger.info("Wrote %d row(s) to %s", len(rows), path)
    return path


def sanitize_for_path(text: str) -> str:
    cleaned = "".join("_" if ch in _UNSAFE_PATH_CHARS else ch for ch in text)
    return cleaned.strip().strip(".")


class PlannedCopy(NamedTuple):
    source: Path
    dest: Path
    label: str


@dataclass
class ExportSummary:
    planned: int = 0
    copied: int = 0
    skipped: int = 0


def _wanted(row: ResultRow, include_present: bool, include_uncertain: bool, include_background: bool) -> bool:
    if isinstance(row.decision, Present):
        return include_present
    if isinstance(row.decision, Uncertain):
        return include_uncertain
    if isinstance(row.decision, Empty):
        return include_background
    return False


def plan_frame_export(
    rows: Iterable[ResultRow],
    dest: Path,
    include_present: bool = True,
    include_uncertain: bool = False,
    include_background: bool = False,
) -> List[PlannedCopy]:
    """
    Work out where each selected frame would be copied: `<dest>/<label>/<label>_<filename>`.
    Frames without a decision are never exported.
    """
    dest = Path(dest)
    planned: List[PlannedCopy] = []
    for row in rows:
        if not _wanted(row, include_present, include_uncertain, include_background):
            continue
        label = sanitize_for_path(row.label or "")
        if not label:
            continue
        stem = sanitize_for_path(row.path.stem)
        file_name = f"{label}_{stem}{row.path.suffix}" if stem else f"{label}{row.path.suffix}"
        planned.append(PlannedCopy(row.path, dest / label / file_name, label))
    return planned


def execute_frame_export(plan: Sequence[PlannedCopy], execute: bool = False) -> ExportSummary:
    """Copy planned frames. Existing destinations are skipped; nothing is written unless `execute`."""
    summary = ExportSummary(planned=len(plan))
    for item in plan:
        if item.dest.exists():
            logger.debug("SKIP: %s -> %s (already exists)", item.source, item.dest)
            summary.skipped += 1
            continue
        if not execute:
            logger.debug("PLAN: %s -> %s", item.source, item.dest)
            continue
        item.dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(item.source, item.dest)
        summary.copied += 1
    if execute:
        logger.info("Copied %d frame(s), skipped %d existing", summary.copied, summary.skipped)
    return summary
