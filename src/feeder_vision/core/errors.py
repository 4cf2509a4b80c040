"""
errors.py: Exception types raised by the feeder-vision pipeline.

Folder- and model-level errors abort the operation and reach the caller as is.
Per-frame errors (DecodeFailed) are recovered inside the pipeline and surface
as a tagged frame instead.
"""

from pathlib import Path
from typing import Optional


class FeederVisionError(Exception):
    """Base class for all pipeline errors."""


class FolderReadError(FeederVisionError):
    """The selected folder is missing, not a directory, or cannot be listed."""

    def __init__(self, folder: Path, reason: str):
        self.folder = folder
        self.reason = reason
        super().__init__(f"Cannot read folder {folder}: {reason}")


class DecodeFailed(FeederVisionError):
    """A single frame could not be decoded into a model input."""

    def __init__(self, path: Optional[Path], reason: str):
        self.path = path
        self.reason = reason
        where = str(path) if path is not None else "<bytes>"
        super().__init__(f"Cannot decode {where}: {reason}")


class ModelLoadError(FeederVisionError):
    """Model weights or labels are missing or malformed. Fatal for every scan."""


class InferenceError(FeederVisionError):
    """The model produced output that does not match the label list."""


class CacheCorrupt(FeederVisionError):
    """A stored cache entry could not be parsed. Treated as a cache miss."""

    def __init__(self, cache_file: Path, reason: str):
        self.cache_file = cache_file
        self.reason = reason
        super().__init__(f"Corrupt cache file {cache_file}: {reason}")


class ScanInProgressError(FeederVisionError):
    """A scan was requested while another scan is still running."""


class NothingToExportError(FeederVisionError):
    """Export was requested for an empty result set."""
