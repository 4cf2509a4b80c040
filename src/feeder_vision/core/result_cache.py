"""
result_cache.py - persistent per-folder scan results validated by a folder fingerprint.

Each scanned folder gets one JSON file under the cache directory, named after a
hash of the folder's resolved path. The file holds the folder fingerprint at
scan time and every result row (classification, decision, manual-override flag),
so an unchanged folder can be shown again without running the model.

Example:
    cache = ResultCache()
    entry = cache.lookup(folder, fingerprint)
    if entry is None:
        rows = run_pipeline(folder)
        cache.store(folder, CacheEntry(fingerprint, rows))
"""

import enum
import hashlib
import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from .errors import CacheCorrupt
from .folder_scanner import CacheFingerprint
from .results import ResultRow
from ..config import cache_dir as default_cache_dir
from ..utils.log_utils import get_logger

logger = get_logger(__name__)

# Current cache version - increment this when the stored row format changes
CACHE_VERSION = "1.0"


class CacheStatus(str, enum.Enum):
    HIT = "hit"
    MISS = "miss"
    STALE = "stale"
    CORRUPT = "corrupt"


@dataclass
class CacheEntry:
    """Fingerprint plus the full result row set of one folder scan."""
    fingerprint: CacheFingerprint
    rows: List[ResultRow]
    recursive: bool = False
    model_version: str = "unknown"
    generated_at: float = field(default_factory=time.time)
    version: str = CACHE_VERSION

    def to_dict(self, root: Path) -> Dict[str, Any]:
        return {
            "version": self.version,
            "generated_at": self.generated_at,
            "model_version": self.model_version,
            "recursive": self.recursive,
            "fingerprint": self.fingerprint.to_dict(),
            "rows": [row.to_dict(root) for row in self.rows],
        }

    @classmethod
    def from_dict(cls, root: Path, data: Dict[str, Any]) -> "CacheEntry":
        fingerprint = CacheFingerprint.from_dict(data["fingerprint"])
        if not isinstance(data["rows"], list):
            raise ValueError("rows is not a list")
        rows = [ResultRow.from_dict(root, row) for row in data["rows"]]
        if len(rows) != fingerprint.frame_count:
            raise ValueError(f"{len(rows)} rows stored for {fingerprint.frame_count} frames")
        if len({row.path for row in rows}) != len(rows):
            raise ValueError("duplicate frame paths in stored rows")
        return cls(
            fingerprint=fingerprint,
            rows=rows,
            recursive=bool(data.get("recursive", False)),
            model_version=str(data.get("model_version", "unknown")),
            generated_at=float(data.get("generated_at", 0.0)),
            version=str(data.get("version", "0.0")),
        )


def folder_key(folder: Path) -> str:
    """Stable cache key derived from the folder path (not its contents)."""
    resolved = str(Path(folder).expanduser().resolve())
    return hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]


@retry(
    stop=stop_after_attempt(3),
    wait=wait_fixed(0.2),
    retry=retry_if_exception_type(PermissionError),
    reraise=True,
)
def _replace_file(src: Path, dest: Path) -> None:
    # Windows refuses the rename while another process holds the target open
    os.replace(src, dest)


class ResultCache:
    """Key-value store of CacheEntry objects, one JSON file per folder."""

    def __init__(self, cache_dir: Optional[Path] = None):
        self.cache_dir = Path(cache_dir) if cache_dir is not None else default_cache_dir()
        self.last_status: Optional[CacheStatus] = None

    def path_for(self, folder: Path) -> Path:
        return self.cache_dir / f"{folder_key(folder)}.json"

    def read(self, folder: Path) -> Optional[CacheEntry]:
        """
        Read the stored entry for `folder`, checking only that it parses and is self-consistent.

        Returns:
            The entry, or None when nothing is stored.

        Raises:
            CacheCorrupt: If the file exists but cannot be parsed.
        """
        cache_file = self.path_for(folder)
        if not cache_file.is_file():
            return None
        root = Path(folder).expanduser().resolve()
        try:
            data = json.loads(cache_file.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("top-level value is not an object")
            return CacheEntry.from_dict(root, data)
        except OSError as e:
            raise CacheCorrupt(cache_file, e.strerror or str(e)) from e
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise CacheCorrupt(cache_file, f"{type(e).__name__}: {e}") from e

    def load(self, folder: Path) -> Optional[CacheEntry]:
        """Return the stored entry for `folder`, or None on absence, outdated version or corruption."""
        try:
            entry = self.read(folder)
        except CacheCorrupt as e:
            logger.warning("%s; treating as cache miss", e)
            self.last_status = CacheStatus.CORRUPT
            return None
        if entry is None:
            self.last_status = CacheStatus.MISS
            return None
        if entry.version != CACHE_VERSION:
            logger.info(f"Cache version mismatch. Expected {CACHE_VERSION}, got {entry.version}")
            self.last_status = CacheStatus.STALE
            return None
        self.last_status = CacheStatus.HIT
        return entry

    def lookup(self, folder: Path, fingerprint: CacheFingerprint) -> Optional[CacheEntry]:
        """Return the stored entry only if it was made from an identical folder state."""
        entry = self.load(folder)
        if entry is None:
            return None
        if entry.fingerprint != fingerprint:
            logger.info("Cache for %s is outdated (folder contents changed)", folder)
            self.last_status = CacheStatus.STALE
            return None
        return entry

    def store(self, folder: Path, entry: CacheEntry) -> None:
        """Persist `entry` for `folder`, replacing any previous entry in one atomic step."""
        root = Path(folder).expanduser().resolve()
        cache_file = self.path_for(root)
        cache_file.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(entry.to_dict(root), ensure_ascii=False)
        tmp_file = cache_file.with_suffix(".json.tmp")
        tmp_file.write_text(payload, encoding="utf-8")
        _replace_file(tmp_file, cache_file)
        logger.debug("Stored %d row(s) for %s in %s", len(entry.rows), root, cache_file)

    def invalidate(self, folder: Path) -> bool:
        """Remove the stored entry for `folder`. Returns True if one existed."""
        cache_file = self.path_for(folder)
        try:
            cache_file.unlink()
        except FileNotFoundError:
            return False
        return True
