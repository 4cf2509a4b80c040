from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Tuple

import numpy as np
import pytest
from PIL import Image

from feeder_vision.config import AppSettings
from feeder_vision.core.classifier import Classifier, ClassifierConfig
from feeder_vision.core.preprocessor import InputGeometry
from feeder_vision.core.result_cache import ResultCache
from feeder_vision.core.scan_engine import ScanEngine

LABELS = ["sparrow", "achtergrond", "unknown_species", "robin"]

RED = (230, 20, 20)
GREEN = (20, 230, 20)
BLUE = (20, 20, 230)

# Small input keeps the tests fast; the pipeline does not care about the size
TEST_GEOMETRY = InputGeometry(size=32)


def logits_for(labels: List[str], label: str, prob: float) -> np.ndarray:
    """Logits whose softmax puts exactly `prob` on `label` and spreads the rest evenly."""
    rest = (1.0 - prob) / (len(labels) - 1)
    return np.log(np.array([prob if name == label else rest for name in labels], dtype=np.float64))


class FakeSession:
    """
    Stands in for an onnxruntime InferenceSession.

    Each input picks its outcome from its dominant colour channel (0 red, 1 green,
    2 blue), so the test decides what the "model" sees by the colour of the frame.
    """

    def __init__(self, labels: List[str], outcomes: Dict[int, Tuple[str, float]], size: int = 32):
        self.labels = labels
        self.outcomes = outcomes
        self.size = size
        self.batch_sizes: List[int] = []

    @property
    def calls(self) -> int:
        return len(self.batch_sizes)

    @property
    def frames_seen(self) -> int:
        return sum(self.batch_sizes)

    def get_inputs(self):
        return [SimpleNamespace(name="input", shape=["batch", 3, self.size, self.size])]

    def get_outputs(self):
        return [SimpleNamespace(name="logits", shape=["batch", len(self.labels)])]

    def run(self, output_names, feeds):
        batch = feeds["input"]
        self.batch_sizes.append(batch.shape[0])
        rows = []
        for item in batch:
            channel = int(np.argmax(item.reshape(3, -1).mean(axis=1)))
            label, prob = self.outcomes[channel]
            rows.append(logits_for(self.labels, label, prob))
        return [np.stack(rows).astype(np.float32)]


def write_frame(path: Path, color=RED, size=(40, 30), fmt: str = "JPEG") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path, fmt)
    return path


def write_corrupt_frame(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"this is not a jpeg")
    return path


@pytest.fixture
def labels() -> List[str]:
    return list(LABELS)


@pytest.fixture
def fake_session(labels) -> FakeSession:
    """Red frames are sparrows, green frames are background, blue frames are unsure."""
    return FakeSession(
        labels,
        {
            0: ("sparrow", 0.91),
            1: ("achtergrond", 0.98),
            2: ("unknown_species", 0.42),
        },
        size=TEST_GEOMETRY.size,
    )


@pytest.fixture
def classifier(fake_session, labels) -> Classifier:
    return Classifier(fake_session, labels, TEST_GEOMETRY, model_version="test-1")


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(presence_threshold=0.6, background_labels=["achtergrond"], auto_batch=False)


@pytest.fixture
def cache(tmp_path: Path) -> ResultCache:
    return ResultCache(tmp_path / "cache")


@pytest.fixture
def engine(settings, cache, classifier):
    """ScanEngine wired to the fake model and a cache in tmp_path."""
    loads = []

    def factory(config: ClassifierConfig) -> Classifier:
        loads.append(config)
        return classifier

    eng = ScanEngine(
        settings,
        ClassifierConfig(geometry=TEST_GEOMETRY),
        cache,
        classifier_factory=factory,
    )
    eng.model_loads = loads
    yield eng
    eng.shutdown()


@pytest.fixture
def frames_dir(tmp_path: Path) -> Path:
    """Folder with 6 sparrow frames and 4 background frames."""
    folder = tmp_path / "frames"
    for i in range(6):
        write_frame(folder / f"sparrow_{i:02d}.jpg", RED)
    for i in range(4):
        write_frame(folder / f"empty_{i:02d}.jpg", GREEN)
    return folder
