"""
HTTP transport shared by the provider clients.

Two capabilities: post a JSON body and get one JSON body back, or post and
read a server-sent-event stream of `data:` payloads. Non-2xx responses and
connection failures come back as ProviderError.
"""
from __future__ import annotations

import json
from typing import Any, AsyncIterator, Optional

import httpx
import structlog

from providers.errors import ErrorKind, ProviderError, error_from_response

logger = structlog.get_logger()

DONE_SENTINEL = "[DONE]"


class HttpTransport:
    """Lazily-created httpx.AsyncClient, reused across calls."""

    def __init__(
        self,
        timeout_s: float = 30.0,
        connect_timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = httpx.Timeout(timeout_s, connect=connect_timeout_s)
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def post_json(
        self,
        provider: str,
        url: str,
        payload: dict[str, Any],
        *,
        headers: Optional[dict[str, str]] = None,
        model: str = "",
    ) -> dict[str, Any]:
        client = await self._get_client()
        try:
            resp = await client.post(url, json=payload, headers=headers)
        except httpx.TransportError as e:
            raise ProviderError(provider, ErrorKind.NETWORK, str(e) or type(e).__name__, model=model) from e

        if resp.status_code >= 400:
            error = error_from_response(
                provider, resp.status_code, resp.text,
                model=model, retry_after_header=resp.headers.get("retry-after"),
            )
            logger.warning(
                "provider_http_error",
                provider=provider, model=model,
                status=resp.status_code, kind=error.kind.value,
            )
            raise error

        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(
                provider, ErrorKind.UNKNOWN, "Malformed JSON body",
                model=model, status_code=resp.status_code, body_snippet=resp.text[:300],
            ) from e

    async def stream_events(
        self,
        provider: str,
        url: str,
        payload: dict[str, Any],
        *,
        headers: Optional[dict[str, str]] = None,
        model: str = "",
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield each decoded `data:` payload until [DONE] or end of stream.

        Closing the generator (or cancelling the task consuming it) exits the
        `stream` context, which closes the response and frees the connection.
        """
        client = await self._get_client()
        try:
            async with client.stream("POST", url, json=payload, headers=headers) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    error = error_from_response(
                        provider, resp.status_code, body,
                        model=model, retry_after_header=resp.headers.get("retry-after"),
                    )
                    logger.warning(
                        "provider_stream_http_error",
                        provider=provider, model=model,
                        status=resp.status_code, kind=error.kind.value,
                    )
                    raise error

                async for line in resp.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if not data:
                        continue
                    if data == DONE_SENTINEL:
                        return
                    try:
                        event = json.loads(data)
                    except ValueError:
                        logger.debug("provider_stream_bad_line", provider=provider, line=data[:120])
                        continue
                    if isinstance(event, dict) and "error" in event:
                        err = event["error"] if isinstance(event["error"], dict) else {}
                        code = err.get("code")
                        status_code = code if isinstance(code, int) else 500
                        raise error_from_response(provider, status_code, data, model=model)
                    yield event
        except httpx.TransportError as e:
            raise ProviderError(provider, ErrorKind.NETWORK, str(e) or type(e).__name__, model=model) from e

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None
