"""
Model routing tables.

Pure lookups: which provider serves a model, which cheaper model drafts the
first sentence, and how retired aliases map onto served model ids.
"""
from __future__ import annotations

OPENAI = "openai"
GEMINI = "gemini"

_LABELS = {OPENAI: "OpenAI", GEMINI: "Gemini"}

# Aliases the API no longer accepts, mapped to what it serves.
_MODEL_ALIASES = {
    "gemini-pro-latest": "gemini-2.5-pro",
    "gemini-2.5-pro-latest": "gemini-2.5-pro",
    "gemini-flash-latest": "gemini-2.5-flash",
    "gemini-2.5-flash-latest": "gemini-2.5-flash",
}

# Prefix → fast drafting model. First match wins, so longer prefixes go first.
_FAST_MODELS = (
    ("gpt-5", "gpt-5"),
    ("gemini-2.5-pro", "gemini-2.5-flash"),
)

_ALTERNATES = {
    OPENAI: "gemini-2.5-flash",
    GEMINI: "gpt-5-mini",
}


def normalize_model_id(model: str) -> str:
    key = (model or "").strip()
    return _MODEL_ALIASES.get(key.lower(), key)


def provider_for_model(model: str) -> str:
    name = normalize_model_id(model).lower()
    if name.startswith("gemini"):
        return GEMINI
    if name.startswith(("gpt", "o1", "o3", "o4")):
        return OPENAI
    raise ValueError(f"No provider serves model '{model}'")


def fast_model_for(model: str) -> str:
    """Cheaper/faster model for the first-sentence draft. Unknown models pass through."""
    name = normalize_model_id(model)
    lowered = name.lower()
    for prefix, fast in _FAST_MODELS:
        if lowered.startswith(prefix):
            return fast
    return name


def is_gpt5_family(model: str) -> bool:
    return normalize_model_id(model).lower().startswith("gpt-5")


def provider_label(provider: str) -> str:
    return _LABELS.get(provider, provider.capitalize() if provider else "The provider")


def alternate_model_hint(model: str) -> str:
    """A model from the other provider, suggested after a soft failure."""
    try:
        provider = provider_for_model(model)
    except ValueError:
        return "a different model"
    return _ALTERNATES.get(provider, "a different model")
