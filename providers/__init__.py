"""LLM provider clients: wire formats, transport and error taxonomy."""

from providers.base import ProviderClient
from providers.errors import ErrorKind, ProviderError
from providers.factory import ProviderRegistry, create_provider_registry
from providers.gemini_client import GeminiClient
from providers.openai_client import OpenAIClient
from providers.transport import HttpTransport

__all__ = [
    "ProviderClient",
    "ErrorKind",
    "ProviderError",
    "ProviderRegistry",
    "create_provider_registry",
    "GeminiClient",
    "OpenAIClient",
    "HttpTransport",
]
