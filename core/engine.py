"""
Turn Engine — one user utterance in, speakable sentences out.

Owns the conversation history and the turn state machine:

    IDLE ──start_turn──▶ GENERATING ──▶ FINISHED
                              │
                              └──abort──▶ ABORTED

Each turn runs as one background task driving a generation strategy. The
task never calls the application directly: every observable event goes onto
a single queue drained by one dispatcher task, so callbacks run one at a
time, in generation order, and `on_turn_finish` is always a turn's last
event. The dispatcher checks the abort flag right before each callback, so
nothing from an aborted turn is delivered after abort() returns.

Streamed replies are cut into sentences as they arrive (see
core.emission); the sentence budget paces what is spoken without dropping
text that was computed in a single piece.
"""
from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from config.settings import Settings, clamp_sentences
from core.emission import SentenceEmitter
from core.retry import RetryPolicy
from core.strategies import GenerationStrategy, StrategyEvent, StrategyEventKind, TurnRequest, create_strategy
from models.schemas import Msg, PreemptResult, Role, TurnInfo, TurnState
from providers.errors import ProviderError
from providers.factory import ProviderRegistry
from providers.routing import fast_model_for, normalize_model_id, provider_for_model, provider_label
from voice.latency import LatencyTracker, TurnLatencyTracker, TurnStage

logger = structlog.get_logger()

INTERRUPTED_NOTICE = "Generation interrupted."

Callback = Callable[..., Union[Any, Awaitable[Any]]]


@dataclass
class EngineCallbacks:
    """Hooks into the surrounding application. Sync or async callables."""
    on_first_sentence: Optional[Callback] = None        # (sentence)
    on_remaining_sentences: Optional[Callback] = None   # (sentences)
    on_stream_delta: Optional[Callback] = None          # (delta)
    on_stream_sentence: Optional[Callback] = None       # (sentence)
    on_final_response: Optional[Callback] = None        # (full_text)
    on_system: Optional[Callback] = None                # (notice)
    on_error: Optional[Callback] = None                 # (message)
    on_turn_finish: Optional[Callback] = None           # ()


# callbacks that hand sentences to the speech sink
_SENTENCE_CALLBACKS = {"on_first_sentence", "on_remaining_sentences", "on_stream_sentence"}


@dataclass
class _Turn:
    user_text: str
    model: str
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: TurnState = TurnState.GENERATING
    task: Optional[asyncio.Task] = None
    latency: Optional[TurnLatencyTracker] = None
    produced: list[str] = field(default_factory=list)    # queued for delivery
    delivered: list[str] = field(default_factory=list)   # handed to callbacks
    written_back: bool = False

    @property
    def aborted(self) -> bool:
        return self.state == TurnState.ABORTED


@dataclass
class _Dispatch:
    turn: _Turn
    name: str
    args: tuple = ()
    control: bool = False    # delivered even after the turn was aborted


_STOP = object()


class TurnEngine:
    """Drives turns against the configured providers. Bound to one event loop."""

    def __init__(
        self,
        registry: ProviderRegistry,
        callbacks: EngineCallbacks = None,
        *,
        system_prompt: Union[str, Callable[[], str]] = "",
        max_sentences: int = 4,
        fast_first: bool = False,
        web_search: bool = False,
        retry: RetryPolicy = None,
        min_request_interval: float = 1.2,
        history_max_turns: int = 10,
        strategy_options: dict[str, Any] = None,
        latency: LatencyTracker = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.callbacks = callbacks or EngineCallbacks()
        self._system_prompt = system_prompt
        self.max_sentences = clamp_sentences(max_sentences)
        self.fast_first = fast_first
        self.web_search = web_search
        self.retry = retry or RetryPolicy()
        self.min_request_interval = min_request_interval
        self.history_max_turns = history_max_turns
        self.strategy_options = strategy_options or {}
        self.latency = latency or LatencyTracker()
        self._sleep = sleep
        self._clock = clock

        self._history: list[Msg] = []
        self._current: Optional[_Turn] = None
        self._last_request_at: Optional[float] = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._dispatcher: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: ProviderRegistry,
        callbacks: EngineCallbacks = None,
        **overrides,
    ) -> TurnEngine:
        eng = settings.engine
        options = dict(
            system_prompt=lambda: settings.engine.system_prompt,
            max_sentences=eng.max_sentences,
            fast_first=eng.fast_first,
            web_search=any(p.web_search for p in settings.providers.values()),
            retry=RetryPolicy.from_config(settings.retry),
            min_request_interval=eng.min_request_interval_s,
            history_max_turns=eng.history_max_turns,
            strategy_options={
                "phase1_temperature": eng.phase1_temperature,
                "phase2_temperature": eng.phase2_temperature,
                "phase1_override": eng.phase1_prompt,
                "phase2_override": eng.phase2_prompt,
            },
        )
        options.update(overrides)
        return cls(registry, callbacks, **options)

    # ── Configuration ────────────────────────────────────────

    @property
    def system_prompt(self) -> str:
        prompt = self._system_prompt() if callable(self._system_prompt) else self._system_prompt
        return prompt or ""

    def set_max_sentences(self, n: int):
        self.max_sentences = clamp_sentences(n)

    def set_faster_first(self, enabled: bool):
        self.fast_first = bool(enabled)

    # ── State ────────────────────────────────────────────────

    def is_active(self) -> bool:
        return self._current is not None and self._current.state == TurnState.GENERATING

    @property
    def state(self) -> TurnState:
        return self._current.state if self._current else TurnState.IDLE

    def current_turn(self) -> Optional[TurnInfo]:
        turn = self._current
        if turn is None:
            return None
        return TurnInfo(
            turn_id=turn.turn_id,
            user_text=turn.user_text,
            model=turn.model,
            state=turn.state,
            sentences_delivered=len(turn.delivered),
        )

    # ── History ──────────────────────────────────────────────

    def history_snapshot(self) -> list[Msg]:
        return list(self._history)

    def seed_history(self, messages: list[Msg]):
        self.abort(silent=True)
        self._history = list(messages)
        self._trim_history()

    def clear_history(self):
        self.abort(silent=True)
        self._history.clear()
        logger.info("history_cleared")

    def replace_last_user_message(self, text: str):
        """Swap the trailing user message, or append one if the history ends otherwise."""
        msg = Msg.user(text.strip())
        if self._history and self._history[-1].role == Role.USER:
            self._history[-1] = msg
        else:
            self._history.append(msg)

    def inject_assistant_draft(self, text: str):
        """Put assistant text into history without running a turn."""
        self._set_trailing_assistant(text)

    def _set_trailing_assistant(self, text: str):
        msg = Msg.assistant(text)
        if self._history and self._history[-1].role == Role.ASSISTANT:
            self._history[-1] = msg
        else:
            self._history.append(msg)

    def _trim_history(self):
        user_positions = [i for i, m in enumerate(self._history) if m.role == Role.USER]
        if len(user_positions) > self.history_max_turns:
            del self._history[:user_positions[-self.history_max_turns]]

    def _write_back(self, turn: _Turn, text: str):
        if turn.written_back or not text.strip():
            return
        turn.written_back = True
        self._set_trailing_assistant(text.strip())

    # ── Turn control ─────────────────────────────────────────

    def start_turn(self, text: str, model: str) -> Optional[str]:
        """Append the user's text and generate a reply. Returns the turn id."""
        text = (text or "").strip()
        if not text:
            logger.debug("start_turn_ignored_blank")
            return None
        self.abort(silent=True)
        self._history.append(Msg.user(text))
        self._trim_history()
        return self._launch(model)

    def start_turn_with_current_history(self, model: str) -> Optional[str]:
        """Generate a reply to the user message already at the end of history."""
        self.abort(silent=True)
        if not self._history or self._history[-1].role != Role.USER:
            logger.warning("start_turn_without_user_message", history_size=len(self._history))
            return None
        return self._launch(model)

    def _launch(self, model: str) -> str:
        turn = _Turn(user_text=self._history[-1].text, model=normalize_model_id(model))
        turn.latency = self.latency.begin_turn(turn.turn_id)
        snapshot = self.history_snapshot()
        self._current = turn
        self._ensure_dispatcher()
        turn.task = asyncio.get_running_loop().create_task(self._run_turn(turn, snapshot))
        self._tasks.add(turn.task)
        turn.task.add_done_callback(self._tasks.discard)
        logger.info(
            "turn_started",
            turn_id=turn.turn_id, model=turn.model,
            fast_first=self.fast_first, max_sentences=self.max_sentences,
            history_size=len(snapshot),
        )
        return turn.turn_id

    def abort(self, silent: bool = False) -> bool:
        """Stop the active turn now. Returns False if nothing was generating."""
        turn = self._current
        if turn is None or turn.state != TurnState.GENERATING:
            return False

        turn.state = TurnState.ABORTED
        if turn.task and not turn.task.done():
            turn.task.cancel()
        if turn.delivered:
            self._write_back(turn, " ".join(turn.delivered))
        if not silent:
            self._post(turn, "on_system", INTERRUPTED_NOTICE, control=True)
        self._post(turn, "on_turn_finish", control=True)
        self._current = None
        logger.info("turn_aborted", turn_id=turn.turn_id, silent=silent, delivered=len(turn.delivered))
        return True

    def interrupt(self) -> PreemptResult:
        """Atomically read the turn's progress and abort it silently."""
        turn = self._current
        if turn is None or turn.state != TurnState.GENERATING:
            return PreemptResult(aborted=False)
        delivered = len(turn.delivered)
        self.abort(silent=True)
        return PreemptResult(aborted=True, user_text=turn.user_text, sentences_delivered=delivered)

    # ── Turn execution ───────────────────────────────────────

    def _strategy(self) -> GenerationStrategy:
        return create_strategy(self.fast_first, self.registry, self.retry, **self.strategy_options)

    def _cooling_provider(self, model: str) -> Optional[str]:
        providers = [provider_for_model(model)]
        if self.fast_first:
            providers.append(provider_for_model(fast_model_for(model)))
        for provider in providers:
            if self.retry.cooldowns.is_cooling(provider):
                return provider
        return None

    async def _throttle(self):
        now = self._clock()
        if self._last_request_at is not None:
            wait = self.min_request_interval - (now - self._last_request_at)
            if wait > 0:
                logger.debug("turn_throttled", wait_s=round(wait, 3))
                await self._sleep(wait)
        self._last_request_at = self._clock()

    async def _run_turn(self, turn: _Turn, history: list[Msg]):
        try:
            cooling = self._cooling_provider(turn.model)
            if cooling:
                seconds = max(1, round(self.retry.cooldowns.remaining(cooling)))
                logger.info("turn_skipped_cooldown", turn_id=turn.turn_id, provider=cooling, seconds=seconds)
                self._post(turn, "on_system",
                           f"{provider_label(cooling)} is cooling down for ~{seconds}s "
                           f"due to recent rate limits. Please wait...")
                return

            await self._throttle()
            request = TurnRequest(
                model=turn.model,
                history=history,
                system_prompt=self.system_prompt,
                max_sentences=self.max_sentences,
                web_search=self.web_search,
            )
            emitter = SentenceEmitter(self.max_sentences)
            events = self._strategy().run(request)
            try:
                async for event in events:
                    if turn.aborted:
                        break
                    self._handle(turn, emitter, event)
            finally:
                await events.aclose()

        except ProviderError as e:
            logger.error(
                "turn_provider_error",
                turn_id=turn.turn_id, provider=e.provider, model=e.model,
                kind=e.kind.value, status=e.status_code, body=e.body_snippet[:120],
            )
            self._post(turn, "on_error", e.user_message())
        except ValueError as e:
            # unknown model id
            logger.error("turn_rejected", turn_id=turn.turn_id, error=str(e))
            self._post(turn, "on_error", str(e))
        except asyncio.CancelledError:
            logger.debug("turn_task_cancelled", turn_id=turn.turn_id)
            raise
        except Exception as e:
            logger.exception("turn_failed", turn_id=turn.turn_id)
            self._post(turn, "on_error", f"Unexpected error: {e}")
        finally:
            if not turn.aborted:
                # turns that ended without a final text keep what was spoken
                if turn.produced:
                    self._write_back(turn, " ".join(turn.produced))
                turn.state = TurnState.FINISHED
                if self._current is turn:
                    self._current = None
                self._post(turn, "on_turn_finish")
                self.latency.finish_turn(turn.latency)
                logger.info("turn_finished", turn_id=turn.turn_id)

    def _handle(self, turn: _Turn, emitter: SentenceEmitter, event: StrategyEvent):
        kind = event.kind
        if kind == StrategyEventKind.DELTA:
            turn.latency.mark(TurnStage.FIRST_DELTA)
            self._post(turn, "on_stream_delta", event.text)
            for sentence in emitter.feed(event.text):
                self._post(turn, "on_stream_sentence", sentence)
        elif kind == StrategyEventKind.FIRST_SENTENCE:
            self._post(turn, "on_first_sentence", event.text)
        elif kind == StrategyEventKind.REMAINING:
            self._post(turn, "on_remaining_sentences", list(event.sentences))
        elif kind == StrategyEventKind.NOTICE:
            self._post(turn, "on_system", event.text)
        elif kind == StrategyEventKind.MARK:
            turn.latency.mark(TurnStage(event.text))
        elif kind == StrategyEventKind.FINAL:
            if event.streamed:
                for sentence in emitter.finish():
                    self._post(turn, "on_stream_sentence", sentence)
                if emitter.single_chunk and emitter.overflow:
                    # computed in one piece: speak it all rather than drop it
                    for sentence in emitter.release_overflow():
                        self._post(turn, "on_stream_sentence", sentence)
            if event.text:
                self._post(turn, "on_final_response", event.text)
                self._write_back(turn, event.text)

    # ── Dispatch ─────────────────────────────────────────────

    def _post(self, turn: _Turn, name: str, *args, control: bool = False):
        if name == "on_remaining_sentences":
            turn.produced.extend(args[0])
        elif name in _SENTENCE_CALLBACKS:
            turn.produced.append(args[0])
        self._events.put_nowait(_Dispatch(turn, name, args, control))

    def _ensure_dispatcher(self):
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch_loop())

    async def _dispatch_loop(self):
        while True:
            item = await self._events.get()
            try:
                if item is _STOP:
                    return
                # abort flag is checked here, immediately before delivery
                if item.turn.aborted and not item.control:
                    continue
                await self._deliver(item)
            except Exception:
                logger.exception("engine_callback_failed", callback=getattr(item, "name", None))
            finally:
                self._events.task_done()

    async def _deliver(self, item: _Dispatch):
        turn = item.turn
        if item.name in _SENTENCE_CALLBACKS:
            sentences = item.args[0] if item.name == "on_remaining_sentences" else [item.args[0]]
            if sentences and not turn.delivered:
                turn.latency.mark(TurnStage.FIRST_SENTENCE)
            turn.delivered.extend(sentences)

        callback = getattr(self.callbacks, item.name, None)
        if callback is None:
            return
        result = callback(*item.args)
        if inspect.isawaitable(result):
            await result

    async def wait_idle(self):
        """Wait until the current turn is over and every queued event was delivered."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._dispatcher is not None and not self._dispatcher.done():
            await self._events.join()

    async def close(self):
        self.abort(silent=True)
        await self.wait_idle()
        if self._dispatcher is not None and not self._dispatcher.done():
            self._events.put_nowait(_STOP)
            await self._dispatcher
        self._dispatcher = None
