"""Fakes shared by the test modules: scripted providers, recorders, time."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from core.engine import EngineCallbacks
from models.schemas import ChatRequest, GroundingSource, ProviderReply, StreamChunk
from providers.base import ProviderClient
from providers.errors import ErrorKind, ProviderError


# ══════════════════════════════════════════════════════════════
#  SCRIPTED PROVIDER
# ══════════════════════════════════════════════════════════════

@dataclass
class Reply:
    text: str
    sources: list[GroundingSource] = field(default_factory=list)


@dataclass
class Stream:
    """Streamed reply. With a gate, the stream pauses after `pause_after` chunks."""
    chunks: list[str]
    error: Optional[ProviderError] = None
    pause_after: Optional[int] = None
    gate: Optional[asyncio.Event] = None


class ScriptedProvider(ProviderClient):
    """Plays back a script of replies; each call or stream consumes one step."""

    def __init__(self, name: str, script: list[Any] = None, streaming: bool = False):
        super().__init__(transport=None, api_key="test-key", base_url="")
        self.name = name
        self.script = list(script or [])
        self.streaming = streaming
        self.requests: list[ChatRequest] = []
        self.stream_closed = False

    @property
    def calls(self) -> int:
        return len(self.requests)

    def _next(self, request: ChatRequest) -> Any:
        self.requests.append(request)
        if not self.script:
            raise AssertionError(f"{self.name}: unexpected call #{len(self.requests)}")
        step = self.script.pop(0)
        if isinstance(step, ProviderError):
            raise step
        return step

    def supports_streaming(self, model: str) -> bool:
        return self.streaming

    def supports_web_search(self, model: str) -> bool:
        return False

    async def call(self, request: ChatRequest) -> ProviderReply:
        step = self._next(request)
        if isinstance(step, Reply):
            return ProviderReply(text=step.text, model=request.model, sources=step.sources)
        if isinstance(step, Stream):
            return ProviderReply(text="".join(step.chunks), model=request.model)
        return ProviderReply(text=step, model=request.model)

    async def stream_call(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        step = self._next(request)
        if isinstance(step, str):
            step = Stream([step] if step else [])
        try:
            for i, chunk in enumerate(step.chunks):
                if step.gate is not None and step.pause_after == i:
                    await step.gate.wait()
                yield StreamChunk(text=chunk)
            if step.error is not None:
                raise step.error
        finally:
            self.stream_closed = True


def rate_limited(provider: str = "openai", retry_after: float = None) -> ProviderError:
    return ProviderError(provider, ErrorKind.RATE_LIMITED, "quota", model="gpt-4o",
                         status_code=429, retry_after=retry_after)


def overloaded(provider: str = "openai") -> ProviderError:
    return ProviderError(provider, ErrorKind.OVERLOADED, "overloaded", model="gpt-4o", status_code=503)


def auth_error(provider: str = "openai") -> ProviderError:
    return ProviderError(provider, ErrorKind.AUTH, "bad key", status_code=401)


# ══════════════════════════════════════════════════════════════
#  CALLBACK RECORDER
# ══════════════════════════════════════════════════════════════

class Recorder:
    """Collects every engine callback as (name, payload) in delivery order."""

    def __init__(self):
        self.events: list[tuple[str, Any]] = []

    def _add(self, name: str):
        def record(*args):
            self.events.append((name, args[0] if args else None))
        return record

    def callbacks(self) -> EngineCallbacks:
        return EngineCallbacks(
            on_first_sentence=self._add("first"),
            on_remaining_sentences=self._add("remaining"),
            on_stream_delta=self._add("delta"),
            on_stream_sentence=self._add("sentence"),
            on_final_response=self._add("final"),
            on_system=self._add("system"),
            on_error=self._add("error"),
            on_turn_finish=self._add("finish"),
        )

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, name: str) -> list[Any]:
        return [payload for n, payload in self.events if n == name]


class FakeSleep:
    """Records requested delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds




# ══════════════════════════════════════════════════════════════
#  SCRIPTED REPLIES
# ══════════════════════════════════════════════════════════════

OBAMA_FIRST = '{"first_sentence": "Obama was the 44th president of the United States."}'
OBAMA_REST = (
    '{"sentences": ['
    '"He served two terms from 2009 to 2017.", '
    '"Before that he was a senator from Illinois.", '
    '"He was born in Honolulu, Hawaii in 1961.", '
    '"He won the Nobel Peace Prize in 2009."]}'
)
