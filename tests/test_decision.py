"""Tests for the open-set decision rule."""
import pytest

from feeder_vision.core.classifier import Classification
from feeder_vision.core.decision import (
    DecisionEngine,
    Empty,
    Present,
    Uncertain,
    decision_from_dict,
    decision_to_dict,
)
from feeder_vision.core.folder_scanner import FrameRecord
from feeder_vision.core.results import ResultRow


def classification(label: str, confidence: float) -> Classification:
    other = "other" if label != "other" else "second"
    return Classification({label: confidence, other: 1.0 - confidence})


class TestDecide:
    def test_present_above_threshold(self):
        engine = DecisionEngine(0.6, ["achtergrond"])
        assert engine.decide(classification("sparrow", 0.91)) == Present("sparrow", 0.91)

    def test_threshold_is_inclusive(self):
        engine = DecisionEngine(0.6, [])
        assert engine.decide(classification("sparrow", 0.6)) == Present("sparrow", 0.6)

    def test_uncertain_below_threshold(self):
        engine = DecisionEngine(0.6, ["achtergrond"])
        c = Classification({"unknown_species": 0.42, "a": 0.3, "b": 0.28})
        assert engine.decide(c) == Uncertain("unknown_species", 0.42)

    def test_background_wins_over_confidence(self):
        engine = DecisionEngine(0.6, ["achtergrond"])
        assert engine.decide(classification("achtergrond", 0.98)) == Empty("achtergrond")

    def test_background_wins_even_below_threshold(self):
        engine = DecisionEngine(0.6, ["achtergrond"])
        c = Classification({"achtergrond": 0.4, "a": 0.35, "b": 0.25})
        assert engine.decide(c) == Empty("achtergrond")

    def test_background_match_ignores_case(self):
        engine = DecisionEngine(0.5, ["Achtergrond"])
        assert engine.decide(classification("achtergrond", 0.9)) == Empty("achtergrond")

    def test_present_never_carries_background_label(self):
        engine = DecisionEngine(0.0, ["achtergrond"])
        for conf in (0.51, 0.75, 1.0):
            decision = engine.decide(classification("achtergrond", conf))
            assert not isinstance(decision, Present)

    @pytest.mark.parametrize("threshold", [-0.1, 1.5])
    def test_threshold_range(self, threshold):
        with pytest.raises(ValueError):
            DecisionEngine(threshold)


class TestManualDecision:
    def test_present_has_full_confidence(self):
        assert DecisionEngine().manual_decision("robin") == Present("robin", 1.0)

    def test_not_present(self):
        assert DecisionEngine().manual_decision("robin", present=False) == Uncertain("robin", 1.0)

    def test_background_label(self):
        assert DecisionEngine().manual_decision("Achtergrond") == Empty("Achtergrond")

    def test_blank_label_rejected(self):
        with pytest.raises(ValueError):
            DecisionEngine().manual_decision("  ")


class TestRecompute:
    def _row(self, tmp_path, name, c, decision=None, manual=False):
        frame = FrameRecord(tmp_path / name, 10, 1)
        return ResultRow(frame, c, decision, manual)

    def test_applies_new_threshold(self, tmp_path):
        rows = [self._row(tmp_path, "a.jpg", classification("sparrow", 0.7), Present("sparrow", 0.7))]
        updated = DecisionEngine(0.8).recompute(rows)
        assert updated[0].decision == Uncertain("sparrow", 0.7)

    def test_keeps_manual_overrides(self, tmp_path):
        row = self._row(tmp_path, "a.jpg", classification("sparrow", 0.7), Present("robin", 1.0), manual=True)
        assert DecisionEngine(0.99, ["robin"]).recompute([row]) == [row]

    def test_keeps_undecodable_rows(self, tmp_path):
        row = self._row(tmp_path, "bad.jpg", None)
        assert DecisionEngine().recompute([row]) == [row]

    def test_new_background_label(self, tmp_path):
        rows = [self._row(tmp_path, "a.jpg", classification("squirrel", 0.9), Present("squirrel", 0.9))]
        updated = DecisionEngine(0.5, ["squirrel"]).recompute(rows)
        assert updated[0].decision == Empty("squirrel")

    def test_is_deterministic(self, tmp_path):
        rows = [self._row(tmp_path, f"{i}.jpg", classification("sparrow", 0.5 + i / 20)) for i in range(10)]
        engine = DecisionEngine(0.7, ["achtergrond"])
        assert engine.recompute(rows) == engine.recompute(engine.recompute(rows))


class TestSerialization:
    @pytest.mark.parametrize("decision", [Present("sparrow", 0.91), Uncertain("x", 0.42), Empty("achtergrond")])
    def test_round_trip(self, decision):
        assert decision_from_dict(decision_to_dict(decision)) == decision

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            decision_from_dict({"kind": "maybe", "label": "x"})
