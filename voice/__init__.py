"""
Voice Subsystem — speech-facing side of the turn engine.

Modules:
- interruption: Barge-in, preemption and utterance merging decisions
- latency: Per-turn time-to-speech tracking, budgets, and optimization hints
"""
from voice.latency import (
    TurnStage, LatencyBudget, LatencyMeasurement, StageTracker,
    TurnLatencyTracker, LatencyTracker,
)
from voice.interruption import (
    InterruptionCoordinator, ListeningSession, SpeechSink,
    TIMEOUT_SENTINEL, NO_SPEECH_NOTICE,
)

__all__ = [
    "TurnStage", "LatencyBudget", "LatencyMeasurement", "StageTracker",
    "TurnLatencyTracker", "LatencyTracker",
    "InterruptionCoordinator", "ListeningSession", "SpeechSink",
    "TIMEOUT_SENTINEL", "NO_SPEECH_NOTICE",
]
