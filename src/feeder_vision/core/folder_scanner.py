"""
folder_scanner.py: Enumerate candidate image frames in a folder.

Produces an ordered list of FrameRecord entries for files with a recognized image
extension, either for the top level only or recursively. Unreadable
subdirectories are skipped and reported as warnings; an unreadable root raises
FolderReadError so the pipeline is never entered.
"""

import enum
import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .errors import FolderReadError
from ..utils.log_utils import get_logger

logger = get_logger(__name__)

IMAGE_EXTS = {'.jpg', '.jpeg', '.png', '.heic', '.heif'}
IGNORED_NAMES = {'.DS_Store'}


class DecodeStatus(str, enum.Enum):
    PENDING = "pending"
    DECODED = "decoded"
    DECODE_FAILED = "decode_failed"


@dataclass(frozen=True)
class FrameRecord:
    """Identity of one discovered image file."""
    path: Path
    size: int
    mtime_ns: int
    decode_status: DecodeStatus = DecodeStatus.PENDING
    error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def decode_failed(self) -> bool:
        return self.decode_status is DecodeStatus.DECODE_FAILED


@dataclass
class FolderScan:
    """Frames found under a root plus any non-fatal warnings."""
    root: Path
    frames: List[FrameRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.frames


@dataclass(frozen=True)
class CacheFingerprint:
    """Compact summary of a folder's image files at scan time."""
    frame_count: int
    mtime_signature: str
    size_signature: str

    def to_dict(self) -> dict:
        return {
            "frame_count": self.frame_count,
            "mtime_signature": self.mtime_signature,
            "size_signature": self.size_signature,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheFingerprint":
        return cls(
            frame_count=int(data["frame_count"]),
            mtime_signature=str(data["mtime_signature"]),
            size_signature=str(data["size_signature"]),
        )


def is_image_file(name: str) -> bool:
    """True for names with a supported image extension, skipping macOS metadata files."""
    if name.startswith("._") or name in IGNORED_NAMES:
        return False
    return os.path.splitext(name)[1].lower() in IMAGE_EXTS


def _iter_entries(root: Path, recursive: bool, warnings: List[str]) -> Iterator[os.DirEntry]:
    """
    Yield file entries under `root` using os.scandir for speed.
    The root must be listable; subdirectories that are not are reported in `warnings`.
    """
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = list(it)
        except OSError as e:
            if current == root:
                raise FolderReadError(root, e.strerror or str(e)) from e
            message = f"Skipped unreadable folder {current}: {e.strerror or e}"
            logger.warning(message)
            warnings.append(message)
            continue
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    if recursive:
                        stack.append(Path(entry.path))
                elif entry.is_file():
                    yield entry
            except OSError as e:
                message = f"Skipped unreadable entry {entry.path}: {e.strerror or e}"
                logger.warning(message)
                warnings.append(message)


def scan_folder(root: Path, recursive: bool = False) -> FolderScan:
    """
    List image frames under `root`.

    Args:
        root: Folder to scan.
        recursive: Also walk subdirectories (default: top level only).

    Returns:
        FolderScan with frames sorted by relative path. An empty frame list
        means "no images found".

    Raises:
        FolderReadError: If the folder is missing, not a directory, or unreadable.
    """
    root = Path(root)
    if not root.exists():
        raise FolderReadError(root, "folder does not exist")
    if not root.is_dir():
        raise FolderReadError(root, "path is not a folder")
    root = root.resolve()

    result = FolderScan(root=root)
    frames: List[Tuple[str, FrameRecord]] = []
    for entry in _iter_entries(root, recursive, result.warnings):
        if not is_image_file(entry.name):
            continue
        try:
            st = entry.stat()
        except OSError as e:
            message = f"Skipped unreadable file {entry.path}: {e.strerror or e}"
            logger.warning(message)
            result.warnings.append(message)
            continue
        path = Path(entry.path)
        rel = path.relative_to(root).as_posix()
        frames.append((rel, FrameRecord(path=path, size=st.st_size, mtime_ns=st.st_mtime_ns)))

    frames.sort(key=lambda item: item[0])
    result.frames = [frame for _, frame in frames]
    logger.info("Found %d image(s) in %s%s", len(result.frames), root,
                " (recursive)" if recursive else "")
    return result


def relative_name(root: Path, path: Path) -> str:
    """Path of a frame relative to the scanned root, in posix form."""
    return Path(path).relative_to(root).as_posix()


def compute_fingerprint(root: Path, frames: List[FrameRecord]) -> CacheFingerprint:
    """
    Fingerprint a folder from its frame list.

    Both signatures hash the sorted (relative path, value) pairs, so adding,
    removing, renaming or modifying any frame changes the fingerprint.
    """
    root = Path(root)
    pairs = sorted(((relative_name(root, f.path), f) for f in frames), key=lambda p: p[0])
    mtime_hash = hashlib.sha256()
    size_hash = hashlib.sha256()
    for rel, frame in pairs:
        mtime_hash.update(f"{rel}\t{frame.mtime_ns}\n".encode("utf-8"))
        size_hash.update(f"{rel}\t{frame.size}\n".encode("utf-8"))
    return CacheFingerprint(
        frame_count=len(pairs),
        mtime_signature=mtime_hash.hexdigest(),
        size_signature=size_hash.hexdigest(),
    )
