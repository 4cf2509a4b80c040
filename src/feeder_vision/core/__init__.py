"""
Core pipeline: folder listing, preprocessing, batched inference, decisions and caching.
"""

from .batch_scheduler import BatchScheduler, FrameResult
from .classifier import Classification, Classifier, ClassifierConfig
from .decision import Decision, DecisionEngine, Empty, Present, Uncertain
from .errors import (
    CacheCorrupt,
    DecodeFailed,
    FeederVisionError,
    FolderReadError,
    InferenceError,
    ModelLoadError,
    NothingToExportError,
    ScanInProgressError,
)
from .folder_scanner import CacheFingerprint, FrameRecord, compute_fingerprint, scan_folder
from .result_cache import CacheEntry, ResultCache
from .results import ResultRow, ScanResult, ScanStatus
from .scan_engine import ScanEngine

__all__ = [
    "BatchScheduler",
    "FrameResult",
    "Classification",
    "Classifier",
    "ClassifierConfig",
    "Decision",
    "DecisionEngine",
    "Empty",
    "Present",
    "Uncertain",
    "CacheCorrupt",
    "DecodeFailed",
    "FeederVisionError",
    "FolderReadError",
    "InferenceError",
    "ModelLoadError",
    "NothingToExportError",
    "ScanInProgressError",
    "CacheFingerprint",
    "FrameRecord",
    "compute_fingerprint",
    "scan_folder",
    "CacheEntry",
    "ResultCache",
    "ResultRow",
    "ScanResult",
    "ScanStatus",
    "ScanEngine",
]
