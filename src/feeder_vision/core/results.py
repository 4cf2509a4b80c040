"""
results.py: Result rows and the scan result set returned to callers.
"""

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .classifier import Classification
from .decision import Decision, Present, decision_from_dict, decision_label, decision_to_dict
from .folder_scanner import DecodeStatus, FrameRecord, relative_name


@dataclass(frozen=True)
class ResultRow:
    """One frame plus its decision. `decision` is None only for frames that failed to decode."""
    frame: FrameRecord
    classification: Optional[Classification] = None
    decision: Optional[Decision] = None
    manual_override: bool = False

    @property
    def path(self) -> Path:
        return self.frame.path

    @property
    def present(self) -> bool:
        return isinstance(self.decision, Present)

    @property
    def decode_failed(self) -> bool:
        return self.frame.decode_failed

    @property
    def label(self) -> Optional[str]:
        return decision_label(self.decision) if self.decision is not None else None

    def to_dict(self, root: Path) -> Dict[str, Any]:
        """Serialize with the frame path relative to `root`."""
        return {
            "rel_path": relative_name(root, self.frame.path),
            "size": self.frame.size,
            "mtime_ns": self.frame.mtime_ns,
            "decode_status": self.frame.decode_status.value,
            "error": self.frame.error,
            "classification": self.classification.to_dict() if self.classification else None,
            "decision": decision_to_dict(self.decision) if self.decision else None,
            "manual_override": self.manual_override,
        }

    @classmethod
    def from_dict(cls, root: Path, data: Dict[str, Any]) -> "ResultRow":
        if not isinstance(data, dict):
            raise ValueError(f"Cached row must be a mapping, got {type(data).__name__}")
        frame = FrameRecord(
            path=Path(root) / data["rel_path"],
            size=int(data["size"]),
            mtime_ns=int(data["mtime_ns"]),
            decode_status=DecodeStatus(data["decode_status"]),
            error=data.get("error"),
        )
        classification = data.get("classification")
        decision = data.get("decision")
        return cls(
            frame=frame,
            classification=Classification.from_dict(classification) if classification else None,
            decision=decision_from_dict(decision) if decision else None,
            manual_override=bool(data.get("manual_override", False)),
        )


class ScanStatus(str, enum.Enum):
    COMPLETED = "completed"
    EMPTY_FOLDER = "empty_folder"


class ResultSource(str, enum.Enum):
    PIPELINE = "pipeline"
    CACHE = "cache"


@dataclass
class ScanResult:
    folder: Path
    rows: List[ResultRow] = field(default_factory=list)
    status: ScanStatus = ScanStatus.COMPLETED
    source: ResultSource = ResultSource.PIPELINE
    warnings: List[str] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def is_empty(self) -> bool:
        return self.status is ScanStatus.EMPTY_FOLDER

    @property
    def can_export(self) -> bool:
        return bool(self.rows)

    @property
    def present_rows(self) -> List[ResultRow]:
        return [row for row in self.rows if row.present]

    @property
    def failed_rows(self) -> List[ResultRow]:
        return [row for row in self.rows if row.decode_failed]
