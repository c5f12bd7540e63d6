"""
Gemini client for the generativelanguage v1beta REST API.

generateContent for one-shot calls, streamGenerateContent?alt=sse for
streaming. Grounding chunks from the googleSearch tool become sources.
"""
from __future__ import annotations

from typing import Any, AsyncIterator

import structlog

from models.schemas import ChatRequest, GroundingSource, ProviderReply, Role, StreamChunk
from providers.base import KeySource, ProviderClient
from providers.routing import GEMINI, normalize_model_id
from providers.transport import HttpTransport

logger = structlog.get_logger()

SEARCH_GROUNDING_HINT = (
    "Always use Google Search to ground your answer and include citations "
    "with source titles when available."
)


class GeminiClient(ProviderClient):
    name = GEMINI

    def __init__(
        self,
        transport: HttpTransport,
        api_key: KeySource,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        stream: bool = True,
        web_search: bool = False,
    ):
        super().__init__(transport, api_key, base_url)
        self.stream = stream
        self.web_search = web_search

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key(), "Content-Type": "application/json"}

    def supports_streaming(self, model: str) -> bool:
        return self.stream

    def supports_web_search(self, model: str) -> bool:
        return self.web_search

    def _payload(self, request: ChatRequest) -> dict[str, Any]:
        search = request.web_search and self.web_search
        system = request.system_prompt
        if search:
            system = f"{system}\n\n{SEARCH_GROUNDING_HINT}" if system else SEARCH_GROUNDING_HINT

        contents = [
            {
                "role": "model" if m.role == Role.ASSISTANT else "user",
                "parts": [{"text": m.text}],
            }
            for m in request.messages
        ]
        payload: dict[str, Any] = {"contents": contents}
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if request.temperature is not None:
            payload["generationConfig"] = {"temperature": request.temperature}
        if search:
            payload["tools"] = [{"googleSearch": {}}]
        return payload

    async def call(self, request: ChatRequest) -> ProviderReply:
        model = normalize_model_id(request.model)
        data = await self.transport.post_json(
            self.name, f"{self.base_url}/models/{model}:generateContent",
            self._payload(request), headers=self._headers(), model=model,
        )
        block = (data.get("promptFeedback") or {}).get("blockReason")
        if block:
            logger.warning("gemini_prompt_blocked", model=model, reason=block)
            return ProviderReply(text="", model=model)
        return ProviderReply(text=candidate_text(data).strip(), model=model, sources=grounding_sources(data))

    async def stream_call(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        model = normalize_model_id(request.model)
        events = self.transport.stream_events(
            self.name, f"{self.base_url}/models/{model}:streamGenerateContent?alt=sse",
            self._payload(request), headers=self._headers(), model=model,
        )
        try:
            async for event in events:
                text = candidate_text(event)
                sources = grounding_sources(event)
                if text or sources:
                    yield StreamChunk(text=text, sources=sources)
        finally:
            await events.aclose()


def _first_candidate(data: dict[str, Any]) -> dict[str, Any]:
    candidates = data.get("candidates") or []
    return candidates[0] if candidates and isinstance(candidates[0], dict) else {}


def candidate_text(data: dict[str, Any]) -> str:
    parts = (_first_candidate(data).get("content") or {}).get("parts") or []
    return "".join(p.get("text") or "" for p in parts if isinstance(p, dict))


def grounding_sources(data: dict[str, Any]) -> list[GroundingSource]:
    cand = _first_candidate(data)
    meta = cand.get("groundingMetadata") or cand.get("grounding_metadata") or {}
    chunks = meta.get("groundingChunks") or meta.get("grounding_chunks") or []
    sources = []
    for chunk in chunks:
        web = (chunk or {}).get("web") or {}
        if web.get("uri"):
            sources.append(GroundingSource(url=web["uri"], title=web.get("title") or None))
    return sources
