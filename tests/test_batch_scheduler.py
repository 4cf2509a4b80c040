"""Tests for the two-stage preprocessing / inference pipeline."""
import threading
import time

import pytest

from feeder_vision.core import batch_scheduler
from feeder_vision.core.batch_scheduler import BatchScheduler, choose_batch_size
from feeder_vision.core.errors import InferenceError
from feeder_vision.core.folder_scanner import scan_folder
from feeder_vision.core.preprocessor import prepare_frame

from conftest import BLUE, GREEN, RED, write_corrupt_frame, write_frame


def make_frames(folder, count, colors=(RED,)):
    for i in range(count):
        write_frame(folder / f"frame_{i:03d}.jpg", colors[i % len(colors)], size=(16, 16))
    return scan_folder(folder).frames


class InFlightTracker:
    """Counts frames that were preprocessed but not yet classified."""

    def __init__(self, classifier, delay=0.01):
        self.inner = classifier
        self.geometry = classifier.geometry
        self.delay = delay
        self.prepared = 0
        self.classified = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def preprocess(self, index, frame, geometry):
        with self._lock:
            self.prepared += 1
            self.max_in_flight = max(self.max_in_flight, self.prepared - self.classified)
        return prepare_frame(index, frame, geometry)

    def classify_batch(self, batch):
        time.sleep(self.delay)
        results = self.inner.classify_batch(batch)
        with self._lock:
            self.classified += len(results)
        return results


class FailingClassifier:
    def __init__(self, geometry):
        self.geometry = geometry

    def classify_batch(self, batch):
        raise InferenceError("boom")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TestRun:
    def test_results_in_input_order(self, tmp_path, classifier):
        frames = make_frames(tmp_path, 10, colors=(RED, GREEN, BLUE))
        results = BatchScheduler(classifier, batch_size=3).run(frames)
        assert [r.frame.path for r in results] == [f.path for f in frames]
        labels = [r.classification.top1.label for r in results]
        assert labels[:3] == ["sparrow", "achtergrond", "unknown_species"]

    def test_partial_final_batch(self, tmp_path, classifier, fake_session):
        frames = make_frames(tmp_path, 10)
        results = BatchScheduler(classifier, batch_size=4).run(frames)
        assert len(results) == 10
        assert fake_session.batch_sizes == [4, 4, 2]

    def test_empty_input(self, classifier, fake_session):
        assert BatchScheduler(classifier).run([]) == []
        assert fake_session.calls == 0

    def test_decode_failure_does_not_abort_batch(self, tmp_path, classifier, fake_session):
        make_frames(tmp_path, 9)
        write_corrupt_frame(tmp_path / "frame_004b.jpg")
        frames = scan_folder(tmp_path).frames
        results = BatchScheduler(classifier, batch_size=8).run(frames)
        assert len(results) == 10
        failed = [r for r in results if r.classification is None]
        assert [r.frame.name for r in failed] == ["frame_004b.jpg"]
        assert failed[0].frame.decode_failed
        assert all(r.frame.decode_status.value == "decoded" for r in results if r.classification)
        assert fake_session.frames_seen == 9

    def test_batch_of_only_failures_skips_inference(self, tmp_path, classifier, fake_session):
        write_corrupt_frame(tmp_path / "a.jpg")
        write_corrupt_frame(tmp_path / "b.jpg")
        results = BatchScheduler(classifier, batch_size=8).run(scan_folder(tmp_path).frames)
        assert [r.classification for r in results] == [None, None]
        assert fake_session.calls == 0

    def test_progress_reaches_total(self, tmp_path, classifier):
        frames = make_frames(tmp_path, 7)
        seen = []
        BatchScheduler(classifier, batch_size=3).run(frames, progress=lambda done, total: seen.append((done, total)))
        assert seen == [(3, 7), (6, 7), (7, 7)]

    def test_at_most_two_batches_in_flight(self, tmp_path, classifier):
        frames = make_frames(tmp_path, 24)
        tracker = InFlightTracker(classifier)
        scheduler = BatchScheduler(tracker, batch_size=4, max_workers=4, preprocess=tracker.preprocess)
        results = scheduler.run(frames)
        assert len(results) == 24
        assert tracker.max_in_flight <= 2 * 4

    def test_records_timings(self, tmp_path, classifier):
        frames = make_frames(tmp_path, 5)
        scheduler = BatchScheduler(classifier, batch_size=2)
        scheduler.run(frames)
        assert [t.frames for t in scheduler.timings] == [2, 2, 1]
        assert all(t.total_ms >= t.forward_ms for t in scheduler.timings)

    def test_inference_error_propagates(self, tmp_path, classifier):
        frames = make_frames(tmp_path, 6)
        scheduler = BatchScheduler(FailingClassifier(classifier.geometry), batch_size=2)
        with pytest.raises(InferenceError):
            scheduler.run(frames)


# ---------------------------------------------------------------------------
# Batch size tuning
# ---------------------------------------------------------------------------

class TestChooseBatchSize:
    def test_keeps_baseline_without_measurements(self):
        assert choose_batch_size({}, 8) == 8

    def test_larger_batch_needs_fifteen_percent(self):
        assert choose_batch_size({8: 1.0, 12: 0.9}, 8) == 8
        assert choose_batch_size({8: 1.0, 12: 0.8}, 8) == 12

    def test_slower_larger_batch_is_ignored(self):
        assert choose_batch_size({8: 1.0, 12: 1.2}, 8) == 8


class TestAutoBatch:
    def test_small_scans_are_not_tuned(self, tmp_path, classifier, fake_session):
        frames = make_frames(tmp_path, 10)
        scheduler = BatchScheduler(classifier, batch_size=4)
        scheduler.run(frames, auto_batch=True)
        assert scheduler.chosen_batch_size == 4
        assert fake_session.batch_sizes == [4, 4, 2]

    def test_tuning_covers_every_frame(self, tmp_path, classifier, fake_session, monkeypatch):
        monkeypatch.setattr(batch_scheduler, "AUTO_BATCH_MIN_TOTAL", 20)
        frames = make_frames(tmp_path, 40)
        scheduler = BatchScheduler(classifier, batch_size=2)
        results = scheduler.run(frames, auto_batch=True)
        assert [r.frame.path for r in results] == [f.path for f in frames]
        assert scheduler.chosen_batch_size in (2, 3)
        # 4 tuning batches of 2, then 4 of 3
        assert fake_session.batch_sizes[:8] == [2, 2, 2, 2, 3, 3, 3, 3]
        assert fake_session.frames_seen == 40
