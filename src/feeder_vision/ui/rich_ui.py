"""
rich_ui.py: Rich-based terminal view of a running scan.

Runs the scan on the engine's background worker and renders a progress bar
plus a per-species summary from the engine callbacks.
"""

import time
from collections import Counter
from pathlib import Path
from typing import List, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn, TimeRemainingColumn
from rich.table import Table
from rich.text import Text

from ..core.decision import Empty, Present, Uncertain
from ..core.results import ResultSource, ScanResult
from ..core.scan_engine import ScanEngine
from ..utils.log_utils import get_logger

logger = get_logger(__name__)


def summary_table(result: ScanResult) -> Table:
    """Frame counts per species plus the uncertain, empty and unreadable totals."""
    species: Counter = Counter()
    uncertain = empty = failed = 0
    for row in result.rows:
        if isinstance(row.decision, Present):
            species[row.decision.species] += 1
        elif isinstance(row.decision, Uncertain):
            uncertain += 1
        elif isinstance(row.decision, Empty):
            empty += 1
        else:
            failed += 1

    table = Table(title=f"{len(result.rows)} frame(s) in {result.folder.name}", expand=False)
    table.add_column("Label", style="bold")
    table.add_column("Frames", justify="right")
    for label, count in species.most_common():
        table.add_row(Text(label, style="green"), str(count))
    if uncertain:
        table.add_row(Text("uncertain", style="yellow"), str(uncertain))
    if empty:
        table.add_row(Text("empty", style="dim"), str(empty))
    if failed:
        table.add_row(Text("unreadable", style="red"), str(failed))
    return table


class RichScanUI:
    """Rich-based UI for following a scan in real time."""

    def __init__(self, engine: ScanEngine, console: Optional[Console] = None):
        self.engine = engine
        self.console = console or Console()
        self.warnings: List[str] = []
        self.status_text = Text("Listing frames...", style="blue")
        self.progress = Progress(
            SpinnerColumn("dots8"),
            TextColumn("[bold yellow]Classifying frames..."),
            BarColumn(bar_width=None),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("({task.completed}/{task.total})"),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            console=self.console,
        )
        self.task_id = self.progress.add_task("classify", total=None)

    def _on_progress(self, processed: int, total: int) -> None:
        self.progress.update(self.task_id, completed=processed, total=total)

    def _on_warning(self, message: str) -> None:
        self.warnings.append(message)
        self.status_text.plain = f"Warning: {message}"
        self.status_text.style = "yellow"

    def _render(self) -> Panel:
        return Panel(Group(self.status_text, self.progress), title="[bold]Scan", border_style="blue")

    def run_scan(self, folder: Path, recursive: Optional[bool] = None, rescan: bool = False) -> ScanResult:
        """Scan `folder` in the background and keep the display live until it finishes."""
        self.engine.on_progress = self._on_progress
        self.engine.on_warning = self._on_warning
        future = self.engine.start_scan(folder, recursive=recursive, rescan=rescan)
        with Live(self._render(), console=self.console, refresh_per_second=10) as live:
            while not future.done():
                time.sleep(0.1)
                live.update(self._render())
            try:
                result = future.result()
            except Exception as e:
                self.status_text.plain = f"Scan failed: {e}"
                self.status_text.style = "red"
                live.update(self._render())
                raise
            if result.is_empty:
                self.status_text.plain = "No images found"
                self.status_text.style = "yellow"
            else:
                source = "from cache" if result.source is ResultSource.CACHE else f"in {result.elapsed:.1f}s"
                self.status_text.plain = f"✓ {len(result.rows)} frame(s) classified {source}"
                self.status_text.style = "green"
                self.progress.update(self.task_id, completed=len(result.rows), total=len(result.rows))
            live.update(self._render())
        if not result.is_empty:
            self.console.print(summary_table(result))
        return result
