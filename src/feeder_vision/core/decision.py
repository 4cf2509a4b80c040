"""
decision.py: Open-set decision rule turning a Classification into a Decision.

Rules, in this order:
    1. top-1 label is a background label  -> Empty(label)
    2. top-1 confidence below threshold   -> Uncertain(label, confidence)
    3. otherwise                          -> Present(label, confidence)

Background membership wins over confidence, so a confidently predicted
background class is never Present.
"""

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Union

from .classifier import Classification
from ..utils.log_utils import get_logger

if TYPE_CHECKING:
    from .results import ResultRow

logger = get_logger(__name__)

DEFAULT_PRESENCE_THRESHOLD = 0.5
DEFAULT_BACKGROUND_LABELS = ("achtergrond",)


@dataclass(frozen=True)
class Present:
    species: str
    confidence: float
    kind = "present"


@dataclass(frozen=True)
class Uncertain:
    best_guess: str
    confidence: float
    kind = "uncertain"


@dataclass(frozen=True)
class Empty:
    background_label: str
    kind = "empty"


Decision = Union[Present, Uncertain, Empty]


def canonical_label(label: str) -> str:
    return label.strip().lower()


def decision_label(decision: Decision) -> str:
    if isinstance(decision, Present):
        return decision.species
    if isinstance(decision, Uncertain):
        return decision.best_guess
    return decision.background_label


def decision_to_dict(decision: Decision) -> Dict[str, Any]:
    if isinstance(decision, Present):
        return {"kind": Present.kind, "label": decision.species, "confidence": decision.confidence}
    if isinstance(decision, Uncertain):
        return {"kind": Uncertain.kind, "label": decision.best_guess, "confidence": decision.confidence}
    if isinstance(decision, Empty):
        return {"kind": Empty.kind, "label": decision.background_label}
    raise TypeError(f"Not a decision: {decision!r}")


def decision_from_dict(data: Dict[str, Any]) -> Decision:
    if not isinstance(data, dict):
        raise ValueError(f"Decision must be a mapping, got {type(data).__name__}")
    kind = data["kind"]
    label = str(data["label"])
    if kind == Present.kind:
        return Present(label, float(data["confidence"]))
    if kind == Uncertain.kind:
        return Uncertain(label, float(data["confidence"]))
    if kind == Empty.kind:
        return Empty(label)
    raise ValueError(f"Unknown decision kind: {kind!r}")


class DecisionEngine:
    """Applies the presence threshold and background labels to classifications."""

    def __init__(
        self,
        presence_threshold: float = DEFAULT_PRESENCE_THRESHOLD,
        background_labels: Iterable[str] = DEFAULT_BACKGROUND_LABELS,
    ) -> None:
        if not 0.0 <= presence_threshold <= 1.0:
            raise ValueError("presence_threshold must be between 0.0 and 1.0")
        self.presence_threshold = float(presence_threshold)
        self.background_labels = frozenset(canonical_label(label) for label in background_labels)

    def is_background(self, label: str) -> bool:
        return canonical_label(label) in self.background_labels

    def decide(self, classification: Classification) -> Decision:
        label, confidence = classification.top1
        if self.is_background(label):
            return Empty(label)
        if confidence < self.presence_threshold:
            return Uncertain(label, confidence)
        return Present(label, confidence)

    def manual_decision(self, label: str, present: bool = True) -> Decision:
        """Decision for a user-assigned label. Manual labels carry full confidence."""
        label = label.strip()
        if not label:
            raise ValueError("Manual label must not be empty")
        if self.is_background(label):
            return Empty(label)
        if present:
            return Present(label, 1.0)
        return Uncertain(label, 1.0)

    def recompute(self, rows: List["ResultRow"]) -> List["ResultRow"]:
        """
        Re-derive decisions from stored classifications without inference.
        Manually overridden and undecodable rows are returned unchanged.
        """
        updated = []
        changed = 0
        for row in rows:
            if row.manual_override or row.classification is None:
                updated.append(row)
                continue
            decision = self.decide(row.classification)
            if decision != row.decision:
                changed += 1
            updated.append(replace(row, decision=decision))
        logger.info("Recomputed decisions: %d of %d row(s) changed", changed, len(rows))
        return updated
