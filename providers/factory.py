"""
Provider registry.

Maps provider names to client instances and resolves a model id to the
client that serves it.
"""
from __future__ import annotations

from typing import Optional

import structlog

from config.settings import Settings
from providers.base import ProviderClient
from providers.gemini_client import GeminiClient
from providers.openai_client import OpenAIClient
from providers.routing import GEMINI, OPENAI, provider_for_model
from providers.transport import HttpTransport

logger = structlog.get_logger()


class ProviderRegistry:
    def __init__(self):
        self._clients: dict[str, ProviderClient] = {}

    def register(self, client: ProviderClient):
        self._clients[client.name] = client

    def get(self, name: str) -> ProviderClient:
        try:
            return self._clients[name]
        except KeyError:
            raise ValueError(f"Unknown provider: '{name}'. Registered: {', '.join(sorted(self._clients))}")

    def for_model(self, model: str) -> ProviderClient:
        return self.get(provider_for_model(model))

    @property
    def names(self) -> list[str]:
        return sorted(self._clients)

    async def close(self):
        transports = {id(c.transport): c.transport for c in self._clients.values()}
        for transport in transports.values():
            await transport.close()


def create_provider_registry(
    settings: Settings,
    transport: Optional[HttpTransport] = None,
) -> ProviderRegistry:
    """Build the registry from settings. Keys are read lazily from settings."""
    openai_cfg = settings.provider(OPENAI)
    gemini_cfg = settings.provider(GEMINI)
    if transport is None:
        transport = HttpTransport(
            timeout_s=max(openai_cfg.timeout_s, gemini_cfg.timeout_s),
            connect_timeout_s=max(openai_cfg.connect_timeout_s, gemini_cfg.connect_timeout_s),
        )

    registry = ProviderRegistry()
    registry.register(OpenAIClient(
        transport,
        api_key=lambda: settings.provider(OPENAI).api_key,
        base_url=openai_cfg.base_url or "https://api.openai.com/v1",
        stream=openai_cfg.stream,
        stream_gpt5=settings.engine.stream_gpt5,
        web_search=openai_cfg.web_search,
    ))
    registry.register(GeminiClient(
        transport,
        api_key=lambda: settings.provider(GEMINI).api_key,
        base_url=gemini_cfg.base_url or "https://generativelanguage.googleapis.com/v1beta",
        stream=gemini_cfg.stream,
        web_search=gemini_cfg.web_search,
    ))
    logger.info("provider_registry_created", providers=registry.names)
    return registry
