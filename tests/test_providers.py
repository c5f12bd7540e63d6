"""
Tests for the provider layer.

Coverage:
- Routing tables: provider lookup, fast model downgrade, alias normalization
- Error taxonomy: status classification, retry hints, error body parsing
- OpenAI / Gemini clients over httpx.MockTransport: payloads, one-shot and
  streamed replies, grounding extraction, HTTP and network failures
- Registry construction from settings
"""
import json

import httpx
import pytest

from config.settings import Settings
from models.schemas import ChatRequest, Msg
from providers.errors import (
    ErrorKind,
    ProviderError,
    classify_status,
    error_from_response,
    parse_retry_after,
)
from providers.factory import ProviderRegistry, create_provider_registry
from providers.gemini_client import GeminiClient
from providers.openai_client import OpenAIClient, parse_responses_payload
from providers.routing import (
    alternate_model_hint,
    fast_model_for,
    is_gpt5_family,
    normalize_model_id,
    provider_for_model,
    provider_label,
)
from providers.transport import HttpTransport


def sse(*events) -> bytes:
    lines = []
    for e in events:
        lines.append(f"data: {e if isinstance(e, str) else json.dumps(e)}\n\n")
    return "".join(lines).encode()


def make_transport(handler) -> HttpTransport:
    return HttpTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def chat_request(model="gpt-4o", **kw) -> ChatRequest:
    return ChatRequest(
        model=model,
        system_prompt="Be brief.",
        messages=[Msg.user("What is the capital of France?")],
        **kw,
    )


# ══════════════════════════════════════════════════════════════
#  ROUTING
# ══════════════════════════════════════════════════════════════

class TestRouting:

    @pytest.mark.parametrize("model,provider", [
        ("gpt-4o", "openai"),
        ("gpt-5-mini", "openai"),
        ("o3-mini", "openai"),
        ("gemini-2.5-flash", "gemini"),
        ("gemini-pro-latest", "gemini"),
    ])
    def test_provider_for_model(self, model, provider):
        assert provider_for_model(model) == provider

    def test_unknown_model_raises(self):
        with pytest.raises(ValueError):
            provider_for_model("llama-3-70b")

    @pytest.mark.parametrize("model,fast", [
        ("gpt-5", "gpt-5"),
        ("gpt-5-turbo-preview", "gpt-5"),
        ("gemini-2.5-pro", "gemini-2.5-flash"),
        ("gemini-2.5-pro-latest", "gemini-2.5-flash"),
        ("gemini-2.5-flash", "gemini-2.5-flash"),
        ("gpt-4o", "gpt-4o"),
        ("some-unknown-model", "some-unknown-model"),
    ])
    def test_fast_model_for(self, model, fast):
        assert fast_model_for(model) == fast

    def test_normalize_aliases(self):
        assert normalize_model_id("gemini-pro-latest") == "gemini-2.5-pro"
        assert normalize_model_id("gemini-flash-latest") == "gemini-2.5-flash"
        assert normalize_model_id(" gpt-4o ") == "gpt-4o"

    def test_gpt5_family(self):
        assert is_gpt5_family("gpt-5-mini")
        assert not is_gpt5_family("gpt-4o")

    def test_labels_and_alternates(self):
        assert provider_label("openai") == "OpenAI"
        assert provider_label("gemini") == "Gemini"
        assert alternate_model_hint("gpt-5") == "gemini-2.5-flash"
        assert alternate_model_hint("gemini-2.5-pro") == "gpt-5-mini"
        assert alternate_model_hint("mystery") == "a different model"


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class TestErrors:

    @pytest.mark.parametrize("status,kind", [
        (401, ErrorKind.AUTH),
        (403, ErrorKind.AUTH),
        (404, ErrorKind.NOT_FOUND),
        (400, ErrorKind.BAD_REQUEST),
        (429, ErrorKind.RATE_LIMITED),
        (503, ErrorKind.OVERLOADED),
        (500, ErrorKind.SERVER),
    ])
    def test_classify_status(self, status, kind):
        assert classify_status(status) == kind

    def test_overloaded_text_on_other_status(self):
        assert classify_status(500, "The model is overloaded.") == ErrorKind.OVERLOADED

    def test_retry_after_from_header(self):
        assert parse_retry_after("12") == 12.0

    def test_retry_after_from_phrase(self):
        body = '{"error": {"message": "Quota exceeded. Please retry in 17.5s."}}'
        assert parse_retry_after(None, body) == 17.5

    def test_retry_after_from_retry_delay(self):
        body = '{"error": {"details": [{"retryDelay": "33s"}]}}'
        assert parse_retry_after(None, body) == 33.0

    def test_retry_after_missing(self):
        assert parse_retry_after("soon", "nothing here") is None

    def test_error_from_openai_body(self):
        body = json.dumps({"error": {"message": "Invalid API key", "type": "invalid_request_error"}})
        err = error_from_response("openai", 401, body, model="gpt-4o")
        assert err.kind == ErrorKind.AUTH
        assert err.message == "Invalid API key"
        assert err.status == "invalid_request_error"
        assert not err.is_soft

    def test_error_from_gemini_body(self):
        body = json.dumps({"error": {"code": 429, "message": "Resource exhausted, retry in 4s",
                                     "status": "RESOURCE_EXHAUSTED"}})
        err = error_from_response("gemini", 429, body, model="gemini-2.5-pro")
        assert err.kind == ErrorKind.RATE_LIMITED
        assert err.status == "RESOURCE_EXHAUSTED"
        assert err.retry_after == 4.0
        assert err.is_soft and err.is_transient

    def test_non_json_body(self):
        err = error_from_response("openai", 502, "<html>bad gateway</html>")
        assert err.kind == ErrorKind.SERVER
        assert err.message == "HTTP 502"
        assert "bad gateway" in err.body_snippet

    def test_service_note_mentions_provider_model_and_hint(self):
        err = ProviderError("gemini", ErrorKind.OVERLOADED, model="gemini-2.5-pro", retry_after=20)
        note = err.service_note(delivered_first=True)
        assert "Gemini" in note
        assert "gemini-2.5-pro" in note
        assert "~20s" in note
        assert "first sentence" in note
        assert "gpt-5-mini" in note

    def test_user_messages(self):
        assert "API key" in ProviderError("openai", ErrorKind.AUTH).user_message()
        assert "gpt-9" in ProviderError("openai", ErrorKind.NOT_FOUND, model="gpt-9").user_message()
        assert "reach OpenAI" in ProviderError("openai", ErrorKind.NETWORK).user_message()


# ══════════════════════════════════════════════════════════════
#  OPENAI CLIENT
# ══════════════════════════════════════════════════════════════

class TestOpenAIClient:

    @pytest.mark.asyncio
    async def test_chat_completion_call(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "choices": [{"message": {"role": "assistant", "content": " Paris is the capital. "}}],
            })

        client = OpenAIClient(make_transport(handler), api_key="sk-test")
        reply = await client.call(chat_request(temperature=0.2))
        assert reply.text == "Paris is the capital."
        assert seen["url"].endswith("/chat/completions")
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["messages"][0] == {"role": "system", "content": "Be brief."}
        assert seen["body"]["messages"][1]["role"] == "user"
        assert seen["body"]["temperature"] == 0.2
        assert "stream" not in seen["body"]

    @pytest.mark.asyncio
    async def test_stream_call(self):
        def handler(request: httpx.Request):
            assert json.loads(request.content)["stream"] is True
            body = sse(
                {"choices": [{"delta": {"role": "assistant"}}]},
                {"choices": [{"delta": {"content": "Paris is "}}]},
                {"choices": [{"delta": {"content": "the capital."}}]},
                "[DONE]",
                {"choices": [{"delta": {"content": "ignored"}}]},
            )
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        client = OpenAIClient(make_transport(handler), api_key="sk-test")
        chunks = [c.text async for c in client.stream_call(chat_request())]
        assert chunks == ["Paris is ", "the capital."]

    @pytest.mark.asyncio
    async def test_gpt5_uses_responses_api_without_temperature(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"output_text": "Paris.", "output": []})

        client = OpenAIClient(make_transport(handler), api_key="sk-test", web_search=True)
        reply = await client.call(chat_request(model="gpt-5-mini", temperature=0.7, web_search=True))
        assert reply.text == "Paris."
        assert seen["url"].endswith("/responses")
        assert seen["body"]["instructions"] == "Be brief."
        assert "temperature" not in seen["body"]
        assert seen["body"]["tools"] == [{"type": "web_search"}]

    def test_gpt5_streaming_disabled_by_default(self):
        client = OpenAIClient(make_transport(lambda r: httpx.Response(200)), api_key="k")
        assert not client.supports_streaming("gpt-5")
        assert client.supports_streaming("gpt-4o")
        assert OpenAIClient(None, api_key="k", stream_gpt5=True).supports_streaming("gpt-5")

    def test_parse_responses_payload_collects_citations(self):
        data = {
            "output": [
                {"type": "web_search_call", "action": {"sources": [{"url": "https://a.example.com/x"}]}},
                {"type": "message", "content": [
                    {"type": "output_text", "text": "Paris is the capital.",
                     "annotations": [
                         {"type": "url_citation", "url": "https://www.britannica.com/paris", "title": "Paris"},
                         {"type": "url_citation", "url": "https://a.example.com/x"},
                     ]},
                ]},
            ],
        }
        text, sources = parse_responses_payload(data)
        assert text == "Paris is the capital."
        assert [s.url for s in sources] == ["https://a.example.com/x", "https://www.britannica.com/paris"]

    @pytest.mark.asyncio
    async def test_http_error_is_classified(self):
        def handler(request):
            return httpx.Response(
                429, headers={"retry-after": "7"},
                json={"error": {"message": "Rate limit reached", "type": "requests"}},
            )

        client = OpenAIClient(make_transport(handler), api_key="sk-test")
        with pytest.raises(ProviderError) as exc:
            await client.call(chat_request())
        assert exc.value.kind == ErrorKind.RATE_LIMITED
        assert exc.value.retry_after == 7.0
        assert exc.value.model == "gpt-4o"

    @pytest.mark.asyncio
    async def test_stream_http_error_is_classified(self):
        def handler(request):
            return httpx.Response(503, json={"error": {"message": "overloaded"}})

        client = OpenAIClient(make_transport(handler), api_key="sk-test")
        with pytest.raises(ProviderError) as exc:
            async for _ in client.stream_call(chat_request()):
                pass
        assert exc.value.kind == ErrorKind.OVERLOADED

    @pytest.mark.asyncio
    async def test_network_failure_maps_to_network_kind(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        client = OpenAIClient(make_transport(handler), api_key="sk-test")
        with pytest.raises(ProviderError) as exc:
            await client.call(chat_request())
        assert exc.value.kind == ErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_missing_key_fails_before_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        client = OpenAIClient(make_transport(handler), api_key=lambda: "  ")
        with pytest.raises(ProviderError) as exc:
            await client.call(chat_request())
        assert exc.value.kind == ErrorKind.AUTH
        assert calls == []

    @pytest.mark.asyncio
    async def test_key_is_read_per_request(self):
        keys = iter(["first", "second"])
        seen = []

        def handler(request):
            seen.append(request.headers["authorization"])
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        client = OpenAIClient(make_transport(handler), api_key=lambda: next(keys))
        await client.call(chat_request())
        await client.call(chat_request())
        assert seen == ["Bearer first", "Bearer second"]


# ══════════════════════════════════════════════════════════════
#  GEMINI CLIENT
# ══════════════════════════════════════════════════════════════

class TestGeminiClient:

    @pytest.mark.asyncio
    async def test_generate_content_with_grounding(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["key"] = request.headers["x-goog-api-key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "candidates": [{
                    "content": {"role": "model", "parts": [{"text": "Paris is "}, {"text": "the capital."}]},
                    "groundingMetadata": {"groundingChunks": [
                        {"web": {"uri": "https://vertexaisearch.cloud.google.com/r/1", "title": "britannica.com"}},
                    ]},
                }],
            })

        client = GeminiClient(make_transport(handler), api_key="g-key", web_search=True)
        messages = [Msg.user("Capital of France?"), Msg.assistant("Paris."), Msg.user("And Spain?")]
        reply = await client.call(ChatRequest(
            model="gemini-pro-latest", system_prompt="Be brief.", messages=messages,
            temperature=0.2, web_search=True,
        ))
        assert reply.text == "Paris is the capital."
        assert reply.sources[0].title == "britannica.com"
        assert "/models/gemini-2.5-pro:generateContent" in seen["url"]
        assert seen["key"] == "g-key"
        body = seen["body"]
        assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
        assert body["systemInstruction"]["parts"][0]["text"].startswith("Be brief.")
        assert body["generationConfig"] == {"temperature": 0.2}
        assert body["tools"] == [{"googleSearch": {}}]

    @pytest.mark.asyncio
    async def test_stream_generate_content(self):
        def handler(request: httpx.Request):
            assert "streamGenerateContent" in str(request.url)
            assert request.url.params["alt"] == "sse"
            body = sse(
                {"candidates": [{"content": {"parts": [{"text": "Madrid is "}]}}]},
                {"candidates": [{"content": {"parts": [{"text": "the capital of Spain."}]}}]},
            )
            return httpx.Response(200, content=body)

        client = GeminiClient(make_transport(handler), api_key="g-key")
        chunks = [c.text async for c in client.stream_call(chat_request(model="gemini-2.5-flash"))]
        assert "".join(chunks) == "Madrid is the capital of Spain."

    @pytest.mark.asyncio
    async def test_blocked_prompt_returns_empty(self):
        def handler(request):
            return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

        client = GeminiClient(make_transport(handler), api_key="g-key")
        reply = await client.call(chat_request(model="gemini-2.5-flash"))
        assert reply.text == ""

    @pytest.mark.asyncio
    async def test_error_event_inside_stream(self):
        def handler(request):
            body = sse({"error": {"code": 503, "message": "The model is overloaded.", "status": "UNAVAILABLE"}})
            return httpx.Response(200, content=body)

        client = GeminiClient(make_transport(handler), api_key="g-key")
        with pytest.raises(ProviderError) as exc:
            async for _ in client.stream_call(chat_request(model="gemini-2.5-flash")):
                pass
        assert exc.value.kind == ErrorKind.OVERLOADED


# ══════════════════════════════════════════════════════════════
#  REGISTRY
# ══════════════════════════════════════════════════════════════

class TestRegistry:

    def test_create_from_settings(self):
        settings = Settings()
        settings.provider("openai").api_key = "sk"
        registry = create_provider_registry(settings, transport=HttpTransport())
        assert registry.names == ["gemini", "openai"]
        assert isinstance(registry.for_model("gpt-4o"), OpenAIClient)
        assert isinstance(registry.for_model("gemini-2.5-pro"), GeminiClient)
        assert registry.get("openai").api_key() == "sk"

    def test_key_changes_apply_without_rebuild(self):
        settings = Settings()
        registry = create_provider_registry(settings, transport=HttpTransport())
        settings.provider("gemini").api_key = "new-key"
        assert registry.get("gemini").api_key() == "new-key"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            ProviderRegistry().get("anthropic")
