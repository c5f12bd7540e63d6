"""
Provider error taxonomy.

Every backend failure, whatever its wire shape, is normalized into a
ProviderError so the strategies and the engine never look at raw payloads.
"""
from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Optional

from providers.routing import alternate_model_hint, provider_label


class ErrorKind(str, Enum):
    AUTH = "auth"                  # 401 / 403 / missing key
    NOT_FOUND = "not_found"        # 404, usually an unknown model id
    BAD_REQUEST = "bad_request"    # 400
    RATE_LIMITED = "rate_limited"  # 429
    OVERLOADED = "overloaded"      # 503 or textual "overloaded"
    NETWORK = "network"            # connect / read failures
    SERVER = "server"              # other 5xx
    UNKNOWN = "unknown"


SOFT_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.OVERLOADED})
TRANSIENT_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.OVERLOADED, ErrorKind.NETWORK})

_RETRY_IN = re.compile(r'retry in\s+([0-9]+(?:\.[0-9]+)?)\s*s', re.IGNORECASE)
_RETRY_DELAY = re.compile(r'"retryDelay"\s*:\s*"([0-9]+(?:\.[0-9]+)?)s"')


class ProviderError(Exception):
    """A failed provider call, classified."""

    def __init__(
        self,
        provider: str,
        kind: ErrorKind,
        message: str = "",
        *,
        model: str = "",
        status_code: Optional[int] = None,
        status: str = "",
        retry_after: Optional[float] = None,
        body_snippet: str = "",
    ):
        super().__init__(message or kind.value)
        self.provider = provider
        self.kind = kind
        self.message = message
        self.model = model
        self.status_code = status_code
        self.status = status
        self.retry_after = retry_after
        self.body_snippet = body_snippet

    @property
    def is_soft(self) -> bool:
        return self.kind in SOFT_KINDS

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    def retry_hint(self) -> str:
        if self.retry_after is None:
            return "a moment"
        return f"~{max(1, round(self.retry_after))}s"

    def reason(self) -> str:
        return {
            ErrorKind.RATE_LIMITED: "rate-limited",
            ErrorKind.OVERLOADED: "overloaded",
            ErrorKind.AUTH: "rejecting the API key",
            ErrorKind.NOT_FOUND: "not serving this model",
            ErrorKind.BAD_REQUEST: "rejecting the request",
            ErrorKind.NETWORK: "unreachable",
        }.get(self.kind, "failing")

    def user_message(self) -> str:
        """Short text for the error callback or a system notice."""
        service = provider_label(self.provider)
        model = self.model or "the selected model"
        if self.kind == ErrorKind.OVERLOADED:
            return f"{service} is overloaded for {model}. Try again in {self.retry_hint()} or switch models."
        if self.kind == ErrorKind.RATE_LIMITED:
            return f"{service} rate limit reached for {model}. Try again in {self.retry_hint()}."
        if self.kind == ErrorKind.AUTH:
            return f"{service} rejected the API key. Check your {service} key in settings."
        if self.kind == ErrorKind.NOT_FOUND:
            return f"{service} does not know the model '{model}'. Pick another model."
        if self.kind == ErrorKind.BAD_REQUEST:
            detail = f": {self.message}" if self.message else ""
            return f"{service} rejected the request{detail}"
        if self.kind == ErrorKind.NETWORK:
            return f"Could not reach {service}. Check your connection."
        detail = self.message or (f"HTTP {self.status_code}" if self.status_code else "unknown error")
        return f"{service} error: {detail}"

    def service_note(self, delivered_first: bool = False) -> str:
        """Notice posted for a soft failure; the turn ends without an error."""
        service = provider_label(self.provider)
        model = self.model or "the selected model"
        alt = alternate_model_hint(self.model)
        if delivered_first:
            return (
                f"Service note: {service} is {self.reason()} for {model}. "
                f"I already delivered the first sentence; the remainder was skipped. "
                f"Try again in {self.retry_hint()} or switch models (e.g., {alt})."
            )
        return (
            f"Service note: {service} is {self.reason()} for {model}. "
            f"Try again in {self.retry_hint()} or switch models (e.g., {alt})."
        )


def classify_status(status_code: int, body: str = "") -> ErrorKind:
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 400:
        return ErrorKind.BAD_REQUEST
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code == 503 or "overloaded" in body.lower():
        return ErrorKind.OVERLOADED
    if status_code >= 500:
        return ErrorKind.SERVER
    return ErrorKind.UNKNOWN


def parse_retry_after(header: Optional[str], body: str = "") -> Optional[float]:
    """Seconds to wait, from the Retry-After header or a hint in the body."""
    if header:
        try:
            return max(0.0, float(header.strip()))
        except ValueError:
            pass
    for pattern in (_RETRY_DELAY, _RETRY_IN):
        match = pattern.search(body or "")
        if match:
            return float(match.group(1))
    return None


def _error_fields(body: str) -> tuple[str, str]:
    """Pull (message, status) out of {"error": {...}} bodies, either shape."""
    try:
        data: Any = json.loads(body)
    except (ValueError, TypeError):
        return "", ""
    if isinstance(data, list) and data:
        data = data[0]
    if not isinstance(data, dict):
        return "", ""
    err = data.get("error")
    if isinstance(err, dict):
        status = err.get("status") or err.get("type") or err.get("code") or ""
        return str(err.get("message") or ""), str(status)
    if isinstance(err, str):
        return err, ""
    return "", ""


def error_from_response(
    provider: str,
    status_code: int,
    body: str,
    *,
    model: str = "",
    retry_after_header: Optional[str] = None,
) -> ProviderError:
    message, status = _error_fields(body)
    kind = classify_status(status_code, message or body)
    return ProviderError(
        provider,
        kind,
        message or f"HTTP {status_code}",
        model=model,
        status_code=status_code,
        status=status,
        retry_after=parse_retry_after(retry_after_header, body),
        body_snippet=(body or "")[:300],
    )
