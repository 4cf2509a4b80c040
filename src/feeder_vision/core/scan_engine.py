"""
scan_engine.py: Scan API tying folder listing, the batch pipeline, decisions and the result cache together.

ScanEngine scans one folder at a time. A scan lists the frames, fingerprints
the folder and either serves the cached rows or runs the classifier over every
frame. Rows are committed in one step when the scan finishes. Callbacks can be
attached to follow progress and completion from another thread.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from .batch_scheduler import BatchScheduler, FrameResult
from .classifier import Classifier, ClassifierConfig
from .decision import DecisionEngine
from .errors import ScanInProgressError
from .folder_scanner import compute_fingerprint, scan_folder
from .result_cache import CacheEntry, ResultCache
from .results import ResultRow, ResultSource, ScanResult, ScanStatus
from ..config import AppSettings
from ..utils.log_utils import get_logger

logger = get_logger(__name__)


class ScanEngine:
    """
    Runs folder scans on a dedicated background worker and owns the committed result rows.
    The classifier is loaded once and shared by reference with every batch.
    """

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        classifier_config: Optional[ClassifierConfig] = None,
        cache: Optional[ResultCache] = None,
        classifier_factory: Optional[Callable[[ClassifierConfig], Classifier]] = None,
    ):
        self.settings = settings if settings is not None else AppSettings()
        self.classifier_config = classifier_config or ClassifierConfig.from_model_dir(
            self.settings.resolved_model_dir()
        )
        self.cache = cache or ResultCache()
        self.decision_engine = DecisionEngine(
            self.settings.presence_threshold, self.settings.background_labels
        )
        self.result: Optional[ScanResult] = None
        self.chosen_batch_size: Optional[int] = None

        self._classifier_factory = classifier_factory or Classifier.load
        self._classifier: Optional[Classifier] = None
        self._entry: Optional[CacheEntry] = None
        self._lock = threading.Lock()
        self._scan_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="scan")
        self._active: Optional[Future] = None

        self.on_progress: Optional[Callable[[int, int], None]] = None
        self.on_scan_complete: Optional[Callable[[ScanResult], None]] = None
        self.on_scan_error: Optional[Callable[[BaseException], None]] = None
        self.on_warning: Optional[Callable[[str], None]] = None

    # Model lifecycle

    def load_model(self) -> Classifier:
        """Load the classifier if needed. Raises ModelLoadError on a missing or malformed bundle."""
        with self._lock:
            if self._classifier is None:
                self._classifier = self._classifier_factory(self.classifier_config)
            return self._classifier

    def reload_model(self) -> Classifier:
        with self._lock:
            self._classifier = None
        return self.load_model()

    @property
    def model_loaded(self) -> bool:
        return self._classifier is not None

    # Scanning

    @property
    def is_scanning(self) -> bool:
        return self._scan_lock.locked()

    def start_scan(self, folder: Path, recursive: Optional[bool] = None, rescan: bool = False) -> "Future[ScanResult]":
        """
        Run `scan` on the background worker and return its Future.

        Raises:
            ScanInProgressError: If a scan is already running.
        """
        with self._lock:
            if self.is_scanning or (self._active is not None and not self._active.done()):
                raise ScanInProgressError("A scan is already running")
            self._active = self._executor.submit(self.scan, folder, recursive, rescan)
            return self._active

    def scan(self, folder: Path, recursive: Optional[bool] = None, rescan: bool = False) -> ScanResult:
        """
        Scan `folder` and commit its rows.

        Args:
            folder: Folder holding the frames.
            recursive: Walk subfolders; defaults to the settings value.
            rescan: Ignore the cache and re-evaluate every frame. Manual overrides are dropped.

        Raises:
            FolderReadError: If the folder cannot be listed.
            ModelLoadError: If the classifier cannot be loaded.
            InferenceError: If the model output does not fit its label list.
            ScanInProgressError: If another scan holds the engine.
        """
        if not self._scan_lock.acquire(blocking=False):
            raise ScanInProgressError("A scan is already running")
        try:
            result = self._scan(Path(folder), self.settings.recursive if recursive is None else recursive, rescan)
        except Exception as e:
            logger.error("Scan of %s failed: %s", folder, e)
            if self.on_scan_error:
                self.on_scan_error(e)
            raise
        finally:
            self._scan_lock.release()
        if self.on_scan_complete:
            self.on_scan_complete(result)
        return result

    def _scan(self, folder: Path, recursive: bool, rescan: bool) -> ScanResult:
        started = time.perf_counter()
        listing = scan_folder(folder, recursive)
        root = listing.root
        warnings = list(listing.warnings)
        for message in warnings:
            self._warn(message)

        if listing.is_empty:
            logger.info("No images found in %s", root)
            result = ScanResult(root, [], ScanStatus.EMPTY_FOLDER, warnings=warnings,
                                elapsed=time.perf_counter() - started)
            self._commit(result, None)
            return result

        fingerprint = compute_fingerprint(root, listing.frames)
        total = len(listing.frames)

        if not rescan:
            entry = self.cache.lookup(root, fingerprint)
            if entry is not None and entry.recursive == recursive:
                rows = self.decision_engine.recompute(entry.rows)
                if rows != entry.rows:
                    entry = replace(entry, rows=rows)
                    self._store(root, entry, warnings)
                self._report_progress(total, total)
                logger.info("Loaded %d cached row(s) for %s", len(rows), root)
                result = ScanResult(root, rows, ScanStatus.COMPLETED, ResultSource.CACHE, warnings,
                                    time.perf_counter() - started)
                self._commit(result, entry)
                return result

        classifier = self.load_model()
        scheduler = BatchScheduler(classifier, batch_size=self.settings.batch_size)
        frame_results = scheduler.run(listing.frames, progress=self._report_progress,
                                      auto_batch=self.settings.auto_batch)
        self.chosen_batch_size = scheduler.chosen_batch_size

        rows = [self._row_for(item) for item in frame_results]
        entry = CacheEntry(fingerprint, rows, recursive=recursive, model_version=classifier.model_version)
        self._store(root, entry, warnings)

        elapsed = time.perf_counter() - started
        failed = sum(1 for row in rows if row.decode_failed)
        logger.info("Classified %d frame(s) in %.1fs (%d failed to decode)", len(rows), elapsed, failed)
        result = ScanResult(root, rows, ScanStatus.COMPLETED, ResultSource.PIPELINE, warnings, elapsed)
        self._commit(result, entry)
        return result

    def _row_for(self, item: FrameResult) -> ResultRow:
        if item.classification is None:
            return ResultRow(item.frame)
        return ResultRow(item.frame, item.classification, self.decision_engine.decide(item.classification))

    # Post-scan edits

    def recompute_decisions(
        self,
        presence_threshold: Optional[float] = None,
        background_labels: Optional[Iterable[str]] = None,
    ) -> Optional[ScanResult]:
        """
        Apply new decision settings to the committed rows without running the model.
        Manually overridden rows keep their decision.
        """
        self._ensure_idle()
        updated = self.settings.model_copy()
        if presence_threshold is not None:
            updated.presence_threshold = presence_threshold
        if background_labels is not None:
            updated.background_labels = list(background_labels)
        engine = DecisionEngine(updated.presence_threshold, updated.background_labels)
        # Both validated; only now touch the live settings
        self.settings.presence_threshold = updated.presence_threshold
        self.settings.background_labels = updated.background_labels
        self.decision_engine = engine
        if self.result is None or not self.result.rows:
            return self.result
        rows = self.decision_engine.recompute(self.result.rows)
        return self._update_rows(rows)

    def apply_override(self, path: Path, label: str, present: bool = True) -> ResultRow:
        """
        Replace the decision of one frame with a user-assigned label.

        Raises:
            KeyError: If `path` is not part of the committed rows.
        """
        self._ensure_idle()
        rows = list(self.result.rows) if self.result else []
        target = Path(path).resolve()
        for index, row in enumerate(rows):
            if row.path == target:
                break
        else:
            raise KeyError(str(path))
        updated = replace(rows[index], decision=self.decision_engine.manual_decision(label, present),
                          manual_override=True)
        rows[index] = updated
        self._update_rows(rows)
        logger.info("Manual override for %s: %s", updated.frame.name, updated.label)
        return updated

    def _update_rows(self, rows: List[ResultRow]) -> ScanResult:
        result = replace(self.result, rows=rows)
        entry = replace(self._entry, rows=rows) if self._entry is not None else None
        if entry is not None:
            self._store(result.folder, entry, result.warnings)
        self._commit(result, entry)
        return result

    # Helpers

    def _ensure_idle(self) -> None:
        if self.is_scanning:
            raise ScanInProgressError("Rows cannot be changed while a scan is running")

    def _commit(self, result: ScanResult, entry: Optional[CacheEntry]) -> None:
        with self._lock:
            self.result = result
            self._entry = entry

    def _store(self, root: Path, entry: CacheEntry, warnings: List[str]) -> None:
        try:
            self.cache.store(root, entry)
        except OSError as e:
            message = f"Could not write result cache for {root}: {e}"
            logger.error(message)
            warnings.append(message)
            self._warn(message)

    def _warn(self, message: str) -> None:
        if self.on_warning:
            self.on_warning(message)

    def _report_progress(self, processed: int, total: int) -> None:
        if self.on_progress:
            self.on_progress(processed, total)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "ScanEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
