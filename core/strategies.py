"""
Generation strategies.

A strategy turns one prepared turn (history snapshot, model, sentence
budget) into a sequence of StrategyEvents. It never touches the engine or
its callbacks: the engine consumes the events and decides what to deliver.

  Regular    one request to the selected model, streamed when the client
             can stream, one-shot otherwise
  FastFirst  Phase 1 drafts a single opening sentence on a faster model,
             Phase 2 asks the selected model to continue from it

Hard provider errors (auth, unknown model, bad request, exhausted network
retries) propagate out of run(). Rate limits and overload end the turn with
a service notice instead.
"""
from __future__ import annotations

import abc
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Optional

import structlog

from core.grounding import CombinedSources
from core.prompts import PHASE1_RETRY_PROMPT, effective_system_prompt, phase1_prompt, phase2_prompt
from core.retry import RetryPolicy
from core.sentence_splitter import (
    extract_first,
    find_sentence_end,
    is_speakable,
    normalize_whitespace,
    split_sentences,
)
from models.schemas import ChatRequest, GroundingSource, Msg, ProviderReply
from providers.base import ProviderClient
from providers.errors import ProviderError
from providers.factory import ProviderRegistry
from providers.routing import fast_model_for, normalize_model_id

logger = structlog.get_logger()

EMPTY_RESPONSE_NOTICE = "The model returned an empty response. Please try again."

_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


# ══════════════════════════════════════════════════════════════
#  EVENTS
# ══════════════════════════════════════════════════════════════

class StrategyEventKind(str, Enum):
    DELTA = "delta"                    # raw streamed text
    FIRST_SENTENCE = "first_sentence"  # one complete opening sentence
    REMAINING = "remaining"            # the rest of the answer as sentences
    NOTICE = "notice"                  # inline system text, not an error
    MARK = "mark"                      # latency checkpoint
    FINAL = "final"                    # full text of the turn


@dataclass
class StrategyEvent:
    kind: StrategyEventKind
    text: str = ""
    sentences: list[str] = field(default_factory=list)
    streamed: bool = False

    @classmethod
    def delta(cls, text: str) -> StrategyEvent:
        return cls(StrategyEventKind.DELTA, text=text)

    @classmethod
    def first(cls, text: str) -> StrategyEvent:
        return cls(StrategyEventKind.FIRST_SENTENCE, text=text)

    @classmethod
    def remaining(cls, sentences: list[str]) -> StrategyEvent:
        return cls(StrategyEventKind.REMAINING, sentences=list(sentences))

    @classmethod
    def notice(cls, text: str) -> StrategyEvent:
        return cls(StrategyEventKind.NOTICE, text=text)

    @classmethod
    def mark(cls, stage: str) -> StrategyEvent:
        return cls(StrategyEventKind.MARK, text=stage)

    @classmethod
    def final(cls, text: str, streamed: bool = False) -> StrategyEvent:
        return cls(StrategyEventKind.FINAL, text=text, streamed=streamed)


@dataclass
class TurnRequest:
    """Everything a strategy needs for one turn, frozen at turn start."""
    model: str
    history: list[Msg]
    system_prompt: str
    max_sentences: int
    web_search: bool = False


# ══════════════════════════════════════════════════════════════
#  REPLY PARSING
# ══════════════════════════════════════════════════════════════

def _strip_fences(text: str) -> str:
    return _FENCE.sub("", (text or "").strip()).strip()


def _load_json(text: str) -> Any:
    body = _strip_fences(text)
    if not body.startswith(("{", "[")):
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def parse_first_sentence(text: str) -> str:
    """Opening sentence from plain text or {"first_sentence": ...}."""
    data = _load_json(text)
    if isinstance(data, dict) and isinstance(data.get("first_sentence"), str):
        return normalize_whitespace(data["first_sentence"])
    return normalize_whitespace(_strip_fences(text))


def parse_sentences(text: str) -> list[str]:
    """Sentences from plain text or {"sentences": [...]}; unspeakable ones dropped."""
    data = _load_json(text)
    if isinstance(data, dict) and isinstance(data.get("sentences"), list):
        items = [normalize_whitespace(s) for s in data["sentences"] if isinstance(s, str)]
    elif isinstance(data, list):
        items = [normalize_whitespace(s) for s in data if isinstance(s, str)]
    else:
        items = split_sentences(_strip_fences(text))
    return [s for s in items if is_speakable(s)]


# ══════════════════════════════════════════════════════════════
#  STRATEGIES
# ══════════════════════════════════════════════════════════════

class GenerationStrategy(abc.ABC):
    """Shared plumbing: request building, retries, stream-or-call, grounding."""

    name = "base"

    def __init__(
        self,
        registry: ProviderRegistry,
        retry: RetryPolicy,
        temperature: Optional[float] = None,
    ):
        self.registry = registry
        self.retry = retry
        self.temperature = temperature

    @abc.abstractmethod
    def run(self, turn: TurnRequest) -> AsyncIterator[StrategyEvent]:
        """Async generator of events for one turn."""
        ...

    def _request(
        self,
        turn: TurnRequest,
        model: str,
        system_prompt: str,
        messages: list[Msg] = None,
        temperature: Optional[float] = None,
    ) -> ChatRequest:
        return ChatRequest(
            model=model,
            system_prompt=system_prompt,
            messages=list(turn.history if messages is None else messages),
            temperature=temperature,
            web_search=turn.web_search,
        )

    async def _call(self, client: ProviderClient, request: ChatRequest) -> ProviderReply:
        return await self.retry.execute(lambda: client.call(request))

    async def _stream_then_call(
        self,
        client: ProviderClient,
        request: ChatRequest,
        collected: list[GroundingSource],
        parts: list[str],
    ) -> AsyncIterator[StrategyEvent]:
        """Stream deltas into parts; zero tokens falls back to one-shot.

        A one-shot fallback leaves its reply as the only entry in parts and
        yields no deltas.
        """
        if client.supports_streaming(request.model):
            leading = ""
            stream = client.stream_call(request)
            try:
                async for chunk in stream:
                    collected.extend(chunk.sources)
                    if not chunk.text:
                        continue
                    parts.append(chunk.text)
                    # hold back whitespace until the first real token
                    if leading is not None:
                        leading += chunk.text
                        if not leading.strip():
                            continue
                        chunk_text, leading = leading, None
                    else:
                        chunk_text = chunk.text
                    yield StrategyEvent.delta(chunk_text)
            except ProviderError as e:
                # nothing heard yet: a retried one-shot call can still save the turn
                if "".join(parts).strip() or not self.retry.is_retryable(e):
                    self.retry.record_failure(e)
                    raise
                logger.warning("stream_failed_before_first_token", provider=e.provider, kind=e.kind.value)
            finally:
                await stream.aclose()
            if "".join(parts).strip():
                return
            logger.info("stream_empty_fallback_to_call", model=request.model)
            parts.clear()

        reply = await self._call(client, request)
        collected.extend(reply.sources)
        parts.append(reply.text)

    @staticmethod
    def _sources_notice(sources: CombinedSources) -> Optional[StrategyEvent]:
        rendered = sources.render()
        return StrategyEvent.notice(rendered) if rendered else None


class RegularStrategy(GenerationStrategy):
    """Single request to the selected model."""

    name = "regular"

    async def run(self, turn: TurnRequest) -> AsyncIterator[StrategyEvent]:
        model = normalize_model_id(turn.model)
        client = self.registry.for_model(model)
        system = effective_system_prompt(turn.system_prompt, turn.max_sentences)
        request = self._request(turn, model, system, temperature=self.temperature)

        collected: list[GroundingSource] = []
        parts: list[str] = []
        streamed = False
        try:
            async for event in self._stream_then_call(client, request, collected, parts):
                streamed = True
                yield event
        except ProviderError as e:
            if not e.is_soft:
                raise
            logger.warning("turn_soft_failure", provider=e.provider, model=model, kind=e.kind.value)
            partial = "".join(parts).strip()
            # a finished sentence reached the listener, not just a fragment
            spoke = streamed and find_sentence_end(partial, 0, final=True) is not None
            yield StrategyEvent.notice(e.service_note(delivered_first=spoke))
            yield StrategyEvent.final(partial, streamed=streamed)
            return

        text = "".join(parts).strip()
        if not text:
            yield StrategyEvent.notice(EMPTY_RESPONSE_NOTICE)
            yield StrategyEvent.final("", streamed=streamed)
            return

        if not streamed:
            sentences = [s for s in split_sentences(text) if is_speakable(s)]
            if sentences:
                yield StrategyEvent.first(sentences[0])
            if len(sentences) > 1:
                yield StrategyEvent.remaining(sentences[1:])

        sources = CombinedSources()
        sources.add_all(collected)
        notice = self._sources_notice(sources)
        if notice:
            yield notice
        yield StrategyEvent.final(text, streamed=streamed)


class FastFirstStrategy(GenerationStrategy):
    """Fast opening sentence, then a continuation from the selected model."""

    name = "fast_first"

    def __init__(
        self,
        registry: ProviderRegistry,
        retry: RetryPolicy,
        phase1_temperature: float = 0.2,
        phase2_temperature: float = 0.7,
        phase1_override: str = "",
        phase2_override: str = "",
    ):
        super().__init__(registry, retry, temperature=phase2_temperature)
        self.phase1_temperature = phase1_temperature
        self.phase2_temperature = phase2_temperature
        self.phase1_override = phase1_override
        self.phase2_override = phase2_override

    async def _draft_first(self, turn: TurnRequest, sources: CombinedSources) -> str:
        """Phase 1 with one stricter retry. Returns "" when both come back blank."""
        fast_model = fast_model_for(turn.model)
        client = self.registry.for_model(fast_model)
        base = (turn.system_prompt or "").strip()
        for attempt, instruction in enumerate((phase1_prompt(self.phase1_override), PHASE1_RETRY_PROMPT), 1):
            system = f"{base}\n\n{instruction}" if base else instruction
            request = self._request(turn, fast_model, system, temperature=self.phase1_temperature)
            reply = await self._call(client, request)
            sources.add_all(reply.sources)
            first, _ = extract_first(parse_first_sentence(reply.text))
            if is_speakable(first):
                logger.debug("fast_first_phase1_done", model=fast_model, attempt=attempt)
                return first
            logger.warning("fast_first_phase1_blank", model=fast_model, attempt=attempt)
        return ""

    async def _single_phase(self, turn: TurnRequest, model: str, sources: CombinedSources) -> list[str]:
        client = self.registry.for_model(model)
        system = effective_system_prompt(turn.system_prompt, turn.max_sentences, fast_first=True)
        reply = await self._call(client, self._request(turn, model, system, temperature=self.phase2_temperature))
        sources.add_all(reply.sources)
        return parse_sentences(reply.text)[:turn.max_sentences]

    async def _continue(self, turn: TurnRequest, model: str, first: str, sources: CombinedSources) -> list[str]:
        remaining = turn.max_sentences - 1
        client = self.registry.for_model(model)
        messages = list(turn.history) + [
            Msg.assistant(first),
            Msg.user(phase2_prompt(first, turn.max_sentences, self.phase2_override)),
        ]
        system = effective_system_prompt(turn.system_prompt, remaining)
        request = self._request(turn, model, system, messages=messages, temperature=self.phase2_temperature)
        reply = await self._call(client, request)
        sources.add_all(reply.sources)
        rest = [s for s in parse_sentences(reply.text) if s != first]
        return rest[:remaining]

    async def run(self, turn: TurnRequest) -> AsyncIterator[StrategyEvent]:
        model = normalize_model_id(turn.model)
        sources = CombinedSources()

        try:
            first = await self._draft_first(turn, sources)
        except ProviderError as e:
            if not e.is_soft:
                raise
            logger.warning("turn_soft_failure", provider=e.provider, model=e.model, phase=1, kind=e.kind.value)
            yield StrategyEvent.notice(e.service_note())
            yield StrategyEvent.final("")
            return
        yield StrategyEvent.mark("phase1")

        if not first:
            # no opening sentence to speak: answer in one phase instead
            try:
                sentences = await self._single_phase(turn, model, sources)
            except ProviderError as e:
                if not e.is_soft:
                    raise
                yield StrategyEvent.notice(e.service_note())
                yield StrategyEvent.final("")
                return
            if not sentences:
                yield StrategyEvent.notice(EMPTY_RESPONSE_NOTICE)
                yield StrategyEvent.final("")
                return
            yield StrategyEvent.remaining(sentences)
            notice = self._sources_notice(sources)
            if notice:
                yield notice
            yield StrategyEvent.final(" ".join(sentences))
            return

        yield StrategyEvent.first(first)

        rest: list[str] = []
        if turn.max_sentences > 1:
            try:
                rest = await self._continue(turn, model, first, sources)
            except ProviderError as e:
                if not e.is_soft:
                    raise
                logger.warning("turn_soft_failure", provider=e.provider, model=model, phase=2, kind=e.kind.value)
                yield StrategyEvent.notice(e.service_note(delivered_first=True))
            yield StrategyEvent.mark("phase2")
            if rest:
                yield StrategyEvent.remaining(rest)
            else:
                logger.info("fast_first_phase2_empty", model=model)

        notice = self._sources_notice(sources)
        if notice:
            yield notice
        yield StrategyEvent.final(" ".join([first] + rest))


def create_strategy(
    fast_first: bool,
    registry: ProviderRegistry,
    retry: RetryPolicy,
    **options,
) -> GenerationStrategy:
    if fast_first:
        return FastFirstStrategy(registry, retry, **options)
    return RegularStrategy(registry, retry, temperature=options.get("phase2_temperature"))
