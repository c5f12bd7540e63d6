"""
Tests for the turn latency trackers.

Coverage:
- StageTracker: rolling stats, percentiles
- TurnLatencyTracker: one mark per stage, budget violations
- LatencyTracker: aggregation across turns, budget checks, optimization hints
"""
import pytest

from voice.latency import LatencyBudget, LatencyTracker, StageTracker, TurnLatencyTracker, TurnStage

from tests.fakes import FakeClock


class TestStageTracker:
    def test_record_and_stats(self):
        t = StageTracker(TurnStage.FIRST_SENTENCE)
        for ms in [100, 120, 110, 130, 90]:
            t.record(ms)
        assert t.count == 5
        assert t.avg_ms == pytest.approx(110.0, abs=0.1)

    def test_percentiles(self):
        t = StageTracker(TurnStage.FIRST_DELTA)
        for i in range(100):
            t.record(float(i))
        assert t.percentile(50) == pytest.approx(50, abs=2)
        assert t.percentile(90) == pytest.approx(90, abs=2)
        assert t.percentile(99) == pytest.approx(99, abs=2)

    def test_empty_tracker(self):
        t = StageTracker(TurnStage.PHASE2)
        assert t.avg_ms == 0.0
        assert t.percentile(50) == 0.0
        assert t.count == 0

    def test_window_is_bounded(self):
        t = StageTracker(TurnStage.PHASE1, window_size=3)
        for ms in [1000, 1000, 1000, 10, 10, 10]:
            t.record(ms)
        assert t.percentile(99) == 10
        assert t.count == 6

    def test_to_dict(self):
        t = StageTracker(TurnStage.TURN_TOTAL)
        t.record(500)
        d = t.to_dict()
        assert d["stage"] == "turn_total"
        assert d["count"] == 1
        assert d["avg_ms"] == 500.0


class TestTurnLatencyTracker:
    def test_marks_are_measured_from_turn_start(self):
        clock = FakeClock()
        tracker = TurnLatencyTracker("t1", clock=clock)
        clock.advance(0.25)
        assert tracker.mark(TurnStage.FIRST_DELTA) == pytest.approx(250.0)
        assert tracker.get(TurnStage.FIRST_DELTA) == pytest.approx(250.0)
        assert tracker.get(TurnStage.PHASE1) is None

    def test_each_stage_recorded_once(self):
        clock = FakeClock()
        tracker = TurnLatencyTracker("t1", clock=clock)
        clock.advance(0.1)
        tracker.mark(TurnStage.FIRST_SENTENCE)
        clock.advance(5)
        assert tracker.mark(TurnStage.FIRST_SENTENCE) is None
        assert tracker.get(TurnStage.FIRST_SENTENCE) == pytest.approx(100.0)

    def test_budget_violation(self):
        clock = FakeClock()
        tracker = TurnLatencyTracker("t1", LatencyBudget(first_sentence_ms=500), clock)
        clock.advance(0.6)
        tracker.mark(TurnStage.FIRST_SENTENCE)
        assert tracker.violations == [{"stage": "first_sentence", "duration_ms": 600.0, "budget_ms": 500}]

    def test_no_violation_within_budget(self):
        clock = FakeClock()
        tracker = TurnLatencyTracker("t1", clock=clock)
        clock.advance(0.2)
        tracker.mark(TurnStage.FIRST_DELTA)
        assert tracker.violations == []

    def test_to_dict(self):
        clock = FakeClock()
        tracker = TurnLatencyTracker("t1", clock=clock)
        tracker.mark(TurnStage.PHASE1)
        d = tracker.to_dict()
        assert d["turn_id"] == "t1"
        assert "phase1" in d["stages"]
        assert d["violations"] == 0


class TestLatencyTracker:
    def _turn(self, agg: LatencyTracker, clock: FakeClock, first_sentence_s: float, phase2_s: float = None):
        tracker = agg.begin_turn("t")
        clock.advance(first_sentence_s)
        tracker.mark(TurnStage.FIRST_SENTENCE)
        if phase2_s is not None:
            clock.advance(phase2_s)
            tracker.mark(TurnStage.PHASE2)
        agg.finish_turn(tracker)

    def test_finish_turn_aggregates(self):
        clock = FakeClock()
        agg = LatencyTracker(clock=clock)
        self._turn(agg, clock, 0.1)
        self._turn(agg, clock, 0.3)
        stats = agg.stage_stats(TurnStage.FIRST_SENTENCE)
        assert stats["count"] == 2
        assert stats["avg_ms"] == pytest.approx(200.0)
        assert agg.stage_stats(TurnStage.TURN_TOTAL)["count"] == 2
        assert agg.to_dict()["turns"] == 2

    def test_is_within_budget(self):
        clock = FakeClock()
        agg = LatencyTracker(LatencyBudget(first_sentence_ms=200), clock)
        for _ in range(10):
            self._turn(agg, clock, 0.1)
        assert agg.is_within_budget(TurnStage.FIRST_SENTENCE) is True

    def test_exceeds_budget(self):
        clock = FakeClock()
        agg = LatencyTracker(LatencyBudget(first_sentence_ms=50), clock)
        for _ in range(10):
            self._turn(agg, clock, 0.1)
        assert agg.is_within_budget(TurnStage.FIRST_SENTENCE) is False

    def test_slow_first_sentence_suggests_fast_first(self):
        clock = FakeClock()
        agg = LatencyTracker(clock=clock)
        for _ in range(5):
            self._turn(agg, clock, 2.5)
        hints = agg.optimization_hints(fast_first_enabled=False)
        assert [h["hint"] for h in hints] == ["enable_fast_first"]
        assert agg.optimization_hints(fast_first_enabled=True) == []

    def test_slow_continuation_suggests_smaller_budget(self):
        clock = FakeClock()
        agg = LatencyTracker(clock=clock)
        for _ in range(5):
            self._turn(agg, clock, 0.5, phase2_s=7.0)
        hints = agg.optimization_hints(fast_first_enabled=True)
        assert [h["hint"] for h in hints] == ["lower_sentence_budget"]

    def test_to_dict_skips_unused_stages(self):
        agg = LatencyTracker(clock=FakeClock())
        d = agg.to_dict()
        assert d == {"turns": 0}


class TestLatencyBudget:
    def test_budget_for_stages(self):
        budget = LatencyBudget(first_delta_ms=100, first_sentence_ms=200, phase1_ms=300,
                               phase2_ms=400, turn_total_ms=500)
        assert budget.budget_for(TurnStage.FIRST_DELTA) == 100
        assert budget.budget_for(TurnStage.FIRST_SENTENCE) == 200
        assert budget.budget_for(TurnStage.PHASE1) == 300
        assert budget.budget_for(TurnStage.PHASE2) == 400
        assert budget.budget_for(TurnStage.TURN_TOTAL) == 500
