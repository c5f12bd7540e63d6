"""
Grounding source accumulation.

Sources from every call of a turn are merged by brand: the registrable name
of the host ("www.bbc.co.uk" → "bbc", any ".gov" → "usgovernment"). When a
brand shows up both as a search-redirect link and a direct link, the direct
link wins.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import urlparse

from models.schemas import GroundingSource

MAX_LISTED_SOURCES = 5

_DOMAIN_LIKE = re.compile(r"^[a-z0-9.-]+\.[a-z]{2,}$")
_HOST_PREFIXES = ("www.", "m.", "en.")


def host_of(url: str) -> str:
    try:
        host = urlparse(url).hostname
    except ValueError:
        host = None
    return (host or url).lower()


def is_redirect_host(host: str) -> bool:
    host = host.lower()
    return "vertex" in host and "google" in host


def is_domain_like(text: Optional[str]) -> bool:
    return bool(text) and bool(_DOMAIN_LIKE.match(text.strip().lower()))


def brand_from_host(host: str) -> str:
    host = host.lower().strip()
    if host.endswith(".gov"):
        return "usgovernment"
    for prefix in _HOST_PREFIXES:
        if host.startswith(prefix):
            host = host[len(prefix):]
    return host.split(".")[0] if host else ""


def pretty_label(brand: str) -> str:
    if brand == "usgovernment":
        return "USGovernment"
    return brand[:1].upper() + brand[1:]


@dataclass
class _Entry:
    url: str
    title: Optional[str]
    brand: str
    redirect: bool


class CombinedSources:
    """Per-turn source set; insertion order is kept for display."""

    def __init__(self):
        self._by_brand: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._by_brand)

    def add_all(self, sources: Iterable[GroundingSource]):
        for src in sources:
            self.add(src.url, src.title)

    def add(self, url: str, title: Optional[str] = None):
        if not url:
            return
        host = host_of(url)
        # redirect links carry the real site in their title
        label_host = title.strip().lower() if is_domain_like(title) else host
        brand = brand_from_host(label_host)
        if not brand:
            return
        entry = _Entry(url=url, title=title, brand=brand, redirect=is_redirect_host(host))
        existing = self._by_brand.get(brand)
        if existing is None or (existing.redirect and not entry.redirect):
            self._by_brand[brand] = entry

    def items(self, limit: int = MAX_LISTED_SOURCES) -> list[tuple[str, str]]:
        """(label, url) pairs, capped."""
        return [(pretty_label(e.brand), e.url) for e in list(self._by_brand.values())[:limit]]

    def render(self, limit: int = MAX_LISTED_SOURCES) -> Optional[str]:
        pairs = self.items(limit)
        if not pairs:
            return None
        return "Web sources: " + ", ".join(f"{label} ({url})" for label, url in pairs)

    def clear(self):
        self._by_brand.clear()
