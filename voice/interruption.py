"""
Interruption Coordinator — barge-in and utterance merging.

Consumes the speech-capture signal stream and decides what happens to the
turn in flight:

- The user starts talking before the assistant said anything: the turn is
  aborted silently and the user's text is kept as a preempt candidate. The
  next transcript is merged with it ("book a table" + "for two" → one turn),
  or, if the new transcript is empty, the original request is retried.
- The user starts talking after at least one sentence was spoken: a real
  barge-in. Generation and speech stop; nothing is carried over.
- Empty transcripts with nothing pending are noise; whether listening
  continues is a policy setting.
- The session timeout sentinel ends listening but leaves generation alone.

Every signal handler returns an action dict describing what was done.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol, Union

import structlog

from config.settings import EmptyTranscriptPolicy

if TYPE_CHECKING:
    from core.engine import TurnEngine

logger = structlog.get_logger()

TIMEOUT_SENTINEL = "<<timeout>>"
NO_SPEECH_NOTICE = "No speech detected."


class ListeningSession(Protocol):
    """Speech capture controls the coordinator needs."""

    def reset(self) -> None: ...

    def stop(self) -> None: ...


class SpeechSink(Protocol):
    """Text-to-speech output."""

    @property
    def is_speaking(self) -> bool: ...

    def stop(self) -> None: ...


class InterruptionCoordinator:
    def __init__(
        self,
        engine: TurnEngine,
        model: Union[str, Callable[[], str]],
        *,
        listening: Optional[ListeningSession] = None,
        speech: Optional[SpeechSink] = None,
        policy: EmptyTranscriptPolicy = EmptyTranscriptPolicy.RESUME_LISTENING,
        on_notice: Optional[Callable[[str], Any]] = None,
    ):
        self.engine = engine
        self._model = model
        self.listening = listening
        self.speech = speech
        self.policy = policy
        self.on_notice = on_notice
        self._candidate: Optional[str] = None

    @property
    def model(self) -> str:
        return self._model() if callable(self._model) else self._model

    @property
    def preempt_candidate(self) -> Optional[str]:
        return self._candidate

    def clear(self) -> None:
        self._candidate = None

    # ── Signals ──────────────────────────────────────────────

    def on_speech_started(self) -> dict[str, Any]:
        """User voice detected. Returns action dict."""
        preempt = self.engine.interrupt()
        if not preempt.aborted:
            stopped = self._stop_speech()
            return {"action": "listen", "stop_tts": stopped}

        if preempt.sentences_delivered == 0:
            self._candidate = preempt.user_text
            logger.info("turn_preempted", candidate_chars=len(preempt.user_text or ""))
            return {"action": "preempted", "candidate": self._candidate}

        self._candidate = None
        self._stop_speech()
        logger.info("barge_in", delivered=preempt.sentences_delivered)
        return {"action": "barge_in", "stop_tts": True, "delivered": preempt.sentences_delivered}

    def on_final_transcript(self, text: Optional[str]) -> dict[str, Any]:
        """Recognizer finished an utterance. Returns action dict."""
        if text == TIMEOUT_SENTINEL:
            if self.listening:
                self.listening.stop()
            logger.info("listening_session_timeout", generating=self.engine.is_active())
            return {"action": "session_end"}

        text = (text or "").strip()
        candidate = self._candidate

        if not text and candidate is None:
            return self._on_noise()

        if not text:
            # nothing new was said: retry the interrupted request as it was
            self._candidate = None
            self.engine.replace_last_user_message(candidate)
            turn_id = self.engine.start_turn_with_current_history(self.model)
            logger.info("preempt_retry", turn_id=turn_id)
            return {"action": "retry", "text": candidate, "turn_id": turn_id}

        if candidate is not None:
            merged = f"{candidate} {text}"
            self._candidate = None
            self.engine.replace_last_user_message(merged)
            turn_id = self.engine.start_turn_with_current_history(self.model)
            logger.info("preempt_combined", turn_id=turn_id)
            self._notify("Combined your new request with the previous unfinished one.")
            return {"action": "combined", "text": merged, "turn_id": turn_id}

        turn_id = self.engine.start_turn(text, self.model)
        return {"action": "new_turn", "text": text, "turn_id": turn_id}

    # ── Helpers ──────────────────────────────────────────────

    def _on_noise(self) -> dict[str, Any]:
        if self.policy == EmptyTranscriptPolicy.STOP_LISTENING:
            if self.listening:
                self.listening.stop()
            self._notify(NO_SPEECH_NOTICE)
            return {"action": "noise", "listening": "stopped"}
        if self.listening:
            self.listening.reset()
        return {"action": "noise", "listening": "resumed"}

    def _stop_speech(self) -> bool:
        if self.speech and self.speech.is_speaking:
            self.speech.stop()
            return True
        return False

    def _notify(self, text: str) -> None:
        if self.on_notice:
            self.on_notice(text)
