"""
classifier.py: Load the species model once and run batched forward passes.

The model bundle is an ONNX graph plus an ordered label list (one label per
line, first CSV column). The loaded Classifier is read-only and meant to be
shared by reference across a whole scan; forward passes are serialized.

Example:
    classifier = Classifier.load(ClassifierConfig.from_model_dir(Path("models")))
    results = classifier.classify_batch(batch)  # batch: (N, 3, 224, 224) float32
"""

import csv
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import numpy as np
import onnxruntime as ort

from .errors import InferenceError, ModelLoadError
from .preprocessor import InputGeometry
from ..utils.log_utils import get_logger

logger = get_logger(__name__)

MODEL_FILE_NAME = "feeder-efficientvit-m0.onnx"
LABEL_FILE_NAME = "feeder-labels.csv"
VERSION_FILE_NAME = "model_version.txt"
UNKNOWN_MODEL_VERSION = "unknown"


class LabelScore(NamedTuple):
    label: str
    confidence: float


@dataclass(frozen=True)
class Classification:
    """Raw model output for one frame: label -> probability, in model label order."""
    probabilities: Dict[str, float]

    def __post_init__(self):
        if not self.probabilities:
            raise ValueError("Classification needs at least one label")

    @classmethod
    def from_scores(cls, labels: Sequence[str], scores: Sequence[float]) -> "Classification":
        if len(labels) != len(scores):
            raise ValueError(f"{len(scores)} scores for {len(labels)} labels")
        return cls({label: float(score) for label, score in zip(labels, scores)})

    def ranked(self) -> List[LabelScore]:
        """All labels by descending probability; ties keep model label order."""
        items = sorted(self.probabilities.items(), key=lambda kv: kv[1], reverse=True)
        return [LabelScore(label, prob) for label, prob in items]

    @property
    def top1(self) -> LabelScore:
        return self.ranked()[0]

    @property
    def top2(self) -> Optional[LabelScore]:
        ranked = self.ranked()
        return ranked[1] if len(ranked) > 1 else None

    def to_dict(self) -> Dict[str, float]:
        return dict(self.probabilities)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Classification":
        if not isinstance(data, dict):
            raise ValueError(f"Classification must be a mapping, got {type(data).__name__}")
        return cls({str(label): float(prob) for label, prob in data.items()})


@dataclass
class ClassifierConfig:
    """Where to find the model bundle and how inputs must be shaped."""
    model_path: Path = Path("models") / MODEL_FILE_NAME
    labels_path: Path = Path("models") / LABEL_FILE_NAME
    version_path: Optional[Path] = None
    geometry: InputGeometry = field(default_factory=InputGeometry)
    # 0 lets onnxruntime pick the thread count
    intra_op_threads: int = 0

    @classmethod
    def from_model_dir(cls, model_dir: Path, **kwargs: Any) -> "ClassifierConfig":
        model_dir = Path(model_dir)
        return cls(
            model_path=model_dir / MODEL_FILE_NAME,
            labels_path=model_dir / LABEL_FILE_NAME,
            version_path=model_dir / VERSION_FILE_NAME,
            **kwargs,
        )


def load_labels(path: Path) -> List[str]:
    """
    Read the ordered label list. Only the first CSV column is used; blank lines
    and repeated labels are dropped.

    Raises:
        ModelLoadError: If the file cannot be read or contains no labels.
    """
    try:
        with open(path, newline="", encoding="utf-8") as fh:
            rows = list(csv.reader(fh))
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise ModelLoadError(f"Cannot read labels file {path}: {e}") from e

    labels: List[str] = []
    seen = set()
    for row in rows:
        if not row:
            continue
        label = row[0].strip()
        if not label or label in seen:
            continue
        seen.add(label)
        labels.append(label)
    if not labels:
        raise ModelLoadError(f"Labels file {path} contains no labels")
    return labels


def read_model_version(path: Optional[Path]) -> str:
    if path is None or not Path(path).is_file():
        return UNKNOWN_MODEL_VERSION
    version = Path(path).read_text(encoding="utf-8").strip()
    return version or UNKNOWN_MODEL_VERSION


def softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits.astype(np.float64) - logits.max(axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return exp / exp.sum(axis=-1, keepdims=True)


class Classifier:
    """
    Owns the inference session and label list.

    Any object exposing onnxruntime's `get_inputs()` / `run()` interface can serve
    as the session.
    """

    def __init__(
        self,
        session: Any,
        labels: Sequence[str],
        geometry: Optional[InputGeometry] = None,
        model_version: str = UNKNOWN_MODEL_VERSION,
    ) -> None:
        if not labels:
            raise ModelLoadError("Classifier needs at least one label")
        self._session = session
        self._labels = tuple(labels)
        self.geometry = geometry or InputGeometry()
        self.model_version = model_version
        self._input_name = session.get_inputs()[0].name
        self._lock = threading.Lock()

    @property
    def labels(self) -> tuple:
        return self._labels

    @classmethod
    def load(cls, config: ClassifierConfig) -> "Classifier":
        """
        Load weights and labels.

        Raises:
            ModelLoadError: If either file is missing or malformed, or the model
                does not fit the label list or input geometry.
        """
        model_path = Path(config.model_path)
        labels_path = Path(config.labels_path)
        if not model_path.is_file():
            raise ModelLoadError(f"Model file is missing: {model_path}")
        if not labels_path.is_file():
            raise ModelLoadError(f"Labels file is missing: {labels_path}")

        labels = load_labels(labels_path)

        options = ort.SessionOptions()
        if config.intra_op_threads > 0:
            options.intra_op_num_threads = config.intra_op_threads
        try:
            session = ort.InferenceSession(
                str(model_path), sess_options=options, providers=["CPUExecutionProvider"]
            )
        except Exception as e:
            raise ModelLoadError(f"Cannot load model {model_path}: {e}") from e

        _check_model_shape(session, len(labels), config.geometry)
        version = read_model_version(config.version_path)
        logger.info("Loaded model %s (%d labels, version %s)", model_path.name, len(labels), version)
        return cls(session, labels, config.geometry, version)

    def classify_batch(self, batch: np.ndarray) -> List[Classification]:
        """
        Run one forward pass.

        Args:
            batch: Array of shape (N, 3, size, size).

        Returns:
            One Classification per input row, in input order.

        Raises:
            InferenceError: If the model output does not match the label list.
        """
        batch = np.asarray(batch, dtype=np.float32)
        if batch.ndim != 4 or batch.shape[1:] != self.geometry.shape:
            raise InferenceError(f"Unexpected batch shape {batch.shape}")
        with self._lock:
            outputs = self._session.run(None, {self._input_name: batch})
        logits = np.asarray(outputs[0])
        expected = (batch.shape[0], len(self._labels))
        if logits.shape != expected:
            raise InferenceError(f"Model output shape {logits.shape}, expected {expected}")
        probs = softmax(logits)
        return [Classification.from_scores(self._labels, row) for row in probs]


def _check_model_shape(session: Any, num_labels: int, geometry: InputGeometry) -> None:
    inputs = session.get_inputs()
    outputs = session.get_outputs()
    if not inputs or not outputs:
        raise ModelLoadError("Model has no inputs or outputs")
    out_shape = outputs[0].shape or []
    width = out_shape[-1] if out_shape else None
    if isinstance(width, int) and width != num_labels:
        raise ModelLoadError(f"Model predicts {width} classes but labels file lists {num_labels}")
    in_shape = inputs[0].shape or []
    if len(in_shape) == 4:
        height = in_shape[2]
        if isinstance(height, int) and height != geometry.size:
            raise ModelLoadError(f"Model expects {height}px input, configured for {geometry.size}px")
