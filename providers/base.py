"""
Provider client interface.

A client translates a provider-neutral ChatRequest into one backend's wire
format and back. Clients are stateless apart from the shared transport.
"""
from __future__ import annotations

import abc
from typing import AsyncIterator, Callable, Union

from models.schemas import ChatRequest, ProviderReply, StreamChunk
from providers.errors import ErrorKind, ProviderError
from providers.transport import HttpTransport

KeySource = Union[str, Callable[[], str]]


class ProviderClient(abc.ABC):
    """Abstract base for all LLM provider clients."""

    name: str = ""

    def __init__(self, transport: HttpTransport, api_key: KeySource, base_url: str):
        self.transport = transport
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")

    def api_key(self) -> str:
        """Read the key at call time so a changed key applies to the next request."""
        key = self._api_key() if callable(self._api_key) else self._api_key
        key = (key or "").strip()
        if not key:
            raise ProviderError(self.name, ErrorKind.AUTH, "API key is not configured")
        return key

    @abc.abstractmethod
    def supports_streaming(self, model: str) -> bool:
        ...

    @abc.abstractmethod
    def supports_web_search(self, model: str) -> bool:
        ...

    @abc.abstractmethod
    async def call(self, request: ChatRequest) -> ProviderReply:
        """One request, one complete reply."""
        ...

    @abc.abstractmethod
    def stream_call(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        """Incremental reply as raw text deltas."""
        ...
