"""
OpenAI client.

Chat Completions for ordinary one-shot and streamed calls. The GPT-5 family
goes through the Responses API for one-shot calls so the web_search tool and
its url_citation annotations are available.
"""
from __future__ import annotations

from typing import Any, AsyncIterator

import structlog

from models.schemas import ChatRequest, GroundingSource, ProviderReply, StreamChunk
from providers.base import KeySource, ProviderClient
from providers.routing import OPENAI, is_gpt5_family, normalize_model_id
from providers.transport import HttpTransport

logger = structlog.get_logger()


class OpenAIClient(ProviderClient):
    name = OPENAI

    def __init__(
        self,
        transport: HttpTransport,
        api_key: KeySource,
        base_url: str = "https://api.openai.com/v1",
        stream: bool = True,
        stream_gpt5: bool = False,
        web_search: bool = False,
    ):
        super().__init__(transport, api_key, base_url)
        self.stream = stream
        self.stream_gpt5 = stream_gpt5
        self.web_search = web_search

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key()}",
            "Content-Type": "application/json",
        }

    def supports_streaming(self, model: str) -> bool:
        if is_gpt5_family(model):
            return self.stream and self.stream_gpt5
        return self.stream

    def supports_web_search(self, model: str) -> bool:
        return self.web_search and is_gpt5_family(model)

    # ── Chat Completions ──────────────────────────────────────

    def _chat_payload(self, request: ChatRequest, stream: bool) -> dict[str, Any]:
        model = normalize_model_id(request.model)
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend({"role": m.role.value, "content": m.text} for m in request.messages)
        payload: dict[str, Any] = {"model": model, "messages": messages}
        # GPT-5 only accepts its default temperature
        if request.temperature is not None and not is_gpt5_family(model):
            payload["temperature"] = request.temperature
        if stream:
            payload["stream"] = True
        return payload

    async def call(self, request: ChatRequest) -> ProviderReply:
        model = normalize_model_id(request.model)
        if is_gpt5_family(model):
            return await self._call_responses(request)

        data = await self.transport.post_json(
            self.name, f"{self.base_url}/chat/completions",
            self._chat_payload(request, stream=False),
            headers=self._headers(), model=model,
        )
        choices = data.get("choices") or []
        message = (choices[0].get("message") or {}) if choices else {}
        text = (message.get("content") or "").strip()
        return ProviderReply(text=text, model=model, sources=_citations(message.get("annotations")))

    async def stream_call(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        model = normalize_model_id(request.model)
        events = self.transport.stream_events(
            self.name, f"{self.base_url}/chat/completions",
            self._chat_payload(request, stream=True),
            headers=self._headers(), model=model,
        )
        try:
            async for event in events:
                for choice in event.get("choices") or []:
                    content = (choice.get("delta") or {}).get("content")
                    if content:
                        yield StreamChunk(text=content)
        finally:
            await events.aclose()

    # ── Responses API ─────────────────────────────────────────

    def _responses_payload(self, request: ChatRequest) -> dict[str, Any]:
        model = normalize_model_id(request.model)
        payload: dict[str, Any] = {
            "model": model,
            "input": [{"role": m.role.value, "content": m.text} for m in request.messages],
            "reasoning": {"effort": "low"},
            "text": {"verbosity": "low"},
        }
        if request.system_prompt:
            payload["instructions"] = request.system_prompt
        if request.web_search and self.supports_web_search(model):
            payload["tools"] = [{"type": "web_search"}]
            payload["tool_choice"] = "auto"
            payload["include"] = ["web_search_call.action.sources"]
        return payload

    async def _call_responses(self, request: ChatRequest) -> ProviderReply:
        model = normalize_model_id(request.model)
        data = await self.transport.post_json(
            self.name, f"{self.base_url}/responses",
            self._responses_payload(request),
            headers=self._headers(), model=model,
        )
        text, sources = parse_responses_payload(data)
        logger.debug("openai_responses_reply", model=model, chars=len(text), sources=len(sources))
        return ProviderReply(text=text, model=model, sources=sources)


def _citations(annotations: Any) -> list[GroundingSource]:
    sources = []
    for ann in annotations or []:
        if not isinstance(ann, dict) or ann.get("type") != "url_citation":
            continue
        # chat completions nest the citation, the Responses API does not
        cite = ann.get("url_citation") or ann
        url = cite.get("url") or ""
        if url:
            sources.append(GroundingSource(url=url, title=cite.get("title") or None))
    return sources


def parse_responses_payload(data: dict[str, Any]) -> tuple[str, list[GroundingSource]]:
    """Text and cited sources from a Responses API body."""
    sources: list[GroundingSource] = []
    parts: list[str] = []
    for item in data.get("output") or []:
        if item.get("type") == "web_search_call":
            for src in (item.get("action") or {}).get("sources") or []:
                if src.get("url"):
                    sources.append(GroundingSource(url=src["url"], title=src.get("title") or None))
        if item.get("type") != "message":
            continue
        for part in item.get("content") or []:
            parts.append(part.get("text") or "")
            sources.extend(_citations(part.get("annotations")))

    direct = data.get("output_text")
    text = direct if isinstance(direct, str) and direct.strip() else "".join(parts)

    seen: set[str] = set()
    unique = []
    for src in sources:
        if src.url not in seen:
            seen.add(src.url)
            unique.append(src)
    return text.strip(), unique
