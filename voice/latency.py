"""
Latency Tracker — time-to-speech measurement per turn.

Every turn is measured from the moment it starts to a few checkpoints:
- first streamed token
- first complete sentence handed to the speech sink
- end of Phase 1 / Phase 2 in fast-first turns
- turn finished

Per-turn trackers check each checkpoint against a budget; the aggregate
tracker keeps rolling percentiles per checkpoint and suggests when the
fast-first strategy would help.
"""
from __future__ import annotations

import time
import structlog
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

logger = structlog.get_logger()


class TurnStage(str, Enum):
    """Checkpoints of a turn, each measured from turn start."""
    FIRST_DELTA = "first_delta"          # first streamed token arrived
    FIRST_SENTENCE = "first_sentence"    # first sentence delivered
    PHASE1 = "phase1"                    # fast-first draft done
    PHASE2 = "phase2"                    # fast-first continuation done
    TURN_TOTAL = "turn_total"            # turn finished


@dataclass
class LatencyBudget:
    first_delta_ms: int = 800
    first_sentence_ms: int = 1500
    phase1_ms: int = 1500
    phase2_ms: int = 6000
    turn_total_ms: int = 10000

    def budget_for(self, stage: TurnStage) -> int:
        return getattr(self, f"{stage.value}_ms")


@dataclass
class LatencyMeasurement:
    stage: TurnStage
    duration_ms: float
    turn_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


class StageTracker:
    """Rolling window of one checkpoint's durations."""

    def __init__(self, stage: TurnStage, window_size: int = 200):
        self.stage = stage
        self._window: deque[float] = deque(maxlen=window_size)
        self._count = 0
        self._total = 0.0

    def record(self, duration_ms: float) -> None:
        self._window.append(duration_ms)
        self._count += 1
        self._total += duration_ms

    @property
    def count(self) -> int:
        return self._count

    @property
    def avg_ms(self) -> float:
        return self._total / self._count if self._count else 0.0

    def percentile(self, pct: int) -> float:
        if not self._window:
            return 0.0
        ordered = sorted(self._window)
        return ordered[min(int(len(ordered) * pct / 100), len(ordered) - 1)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "count": self._count,
            "avg_ms": round(self.avg_ms, 1),
            "p50_ms": round(self.percentile(50), 1),
            "p90_ms": round(self.percentile(90), 1),
            "p99_ms": round(self.percentile(99), 1),
        }


# ══════════════════════════════════════════════════════════════
#  TURN LATENCY TRACKER
# ══════════════════════════════════════════════════════════════

class TurnLatencyTracker:
    """
    Checkpoints for a single turn. Each stage is recorded at most once.

    Usage:
        tracker = TurnLatencyTracker("t1")
        tracker.mark(TurnStage.FIRST_SENTENCE)
        tracker.mark(TurnStage.TURN_TOTAL)
    """

    def __init__(
        self,
        turn_id: str,
        budget: LatencyBudget = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.turn_id = turn_id
        self.budget = budget or LatencyBudget()
        self._clock = clock
        self._started = clock()
        self._measurements: dict[TurnStage, LatencyMeasurement] = {}
        self.violations: list[dict[str, Any]] = []

    def mark(self, stage: TurnStage, **metadata) -> Optional[float]:
        if stage in self._measurements:
            return None
        duration_ms = (self._clock() - self._started) * 1000
        self._measurements[stage] = LatencyMeasurement(stage, duration_ms, self.turn_id, metadata)

        budget = self.budget.budget_for(stage)
        if duration_ms > budget:
            violation = {
                "stage": stage.value,
                "duration_ms": round(duration_ms, 1),
                "budget_ms": budget,
            }
            self.violations.append(violation)
            logger.warning("latency_budget_exceeded", turn_id=self.turn_id, **violation)
        return duration_ms

    def get(self, stage: TurnStage) -> Optional[float]:
        m = self._measurements.get(stage)
        return m.duration_ms if m else None

    @property
    def measurements(self) -> list[LatencyMeasurement]:
        return list(self._measurements.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "stages": {s.value: round(m.duration_ms, 1) for s, m in self._measurements.items()},
            "violations": len(self.violations),
        }


# ══════════════════════════════════════════════════════════════
#  AGGREGATE LATENCY TRACKER
# ══════════════════════════════════════════════════════════════

class LatencyTracker:
    """Per-engine aggregate across turns."""

    def __init__(self, budget: LatencyBudget = None, clock: Callable[[], float] = time.monotonic):
        self.budget = budget or LatencyBudget()
        self._clock = clock
        self._stages = {stage: StageTracker(stage) for stage in TurnStage}
        self._turns = 0

    def begin_turn(self, turn_id: str) -> TurnLatencyTracker:
        return TurnLatencyTracker(turn_id, self.budget, self._clock)

    def finish_turn(self, tracker: TurnLatencyTracker) -> None:
        tracker.mark(TurnStage.TURN_TOTAL)
        for m in tracker.measurements:
            self._stages[m.stage].record(m.duration_ms)
        self._turns += 1
        logger.debug("turn_latency", **tracker.to_dict())

    def stage_stats(self, stage: TurnStage) -> dict[str, Any]:
        return self._stages[stage].to_dict()

    def is_within_budget(self, stage: TurnStage) -> bool:
        return self._stages[stage].percentile(90) <= self.budget.budget_for(stage)

    def optimization_hints(self, fast_first_enabled: bool) -> list[dict[str, Any]]:
        hints = []
        first = self._stages[TurnStage.FIRST_SENTENCE]
        if first.count and not fast_first_enabled and not self.is_within_budget(TurnStage.FIRST_SENTENCE):
            hints.append({
                "stage": TurnStage.FIRST_SENTENCE.value,
                "hint": "enable_fast_first",
                "reason": f"first sentence p90 {first.percentile(90):.0f}ms exceeds "
                          f"budget {self.budget.first_sentence_ms}ms",
            })
        phase2 = self._stages[TurnStage.PHASE2]
        if phase2.count and not self.is_within_budget(TurnStage.PHASE2):
            hints.append({
                "stage": TurnStage.PHASE2.value,
                "hint": "lower_sentence_budget",
                "reason": f"continuation p90 {phase2.percentile(90):.0f}ms exceeds "
                          f"budget {self.budget.phase2_ms}ms",
            })
        return hints

    def to_dict(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            stage.value: tracker.to_dict()
            for stage, tracker in self._stages.items() if tracker.count
        }
        stats["turns"] = self._turns
        return stats
