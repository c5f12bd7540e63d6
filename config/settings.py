"""
Configuration loader for the sentence turn engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv


class EmptyTranscriptPolicy(str, Enum):
    """What to do when the recognizer finalizes with no text."""
    RESUME_LISTENING = "resume_listening"
    STOP_LISTENING = "stop_listening"


@dataclass
class ProviderConfig:
    api_key: str = ""
    base_url: str = ""
    timeout_s: float = 30.0
    connect_timeout_s: float = 10.0
    web_search: bool = False
    stream: bool = True


@dataclass
class EngineConfig:
    default_model: str = "gemini-2.5-flash"
    system_prompt: str = "You are a helpful, concise voice assistant."
    max_sentences: int = 4
    fast_first: bool = False
    min_request_interval_s: float = 1.2
    history_max_turns: int = 10
    phase1_prompt: str = ""                  # blank = built-in prompt
    phase2_prompt: str = ""                  # blank = built-in prompt
    phase1_temperature: float = 0.2
    phase2_temperature: float = 0.7
    stream_gpt5: bool = False


@dataclass
class RetryConfig:
    max_attempts: int = 3
    initial_delay_s: float = 0.5
    backoff_factor: float = 2.0
    max_delay_s: float = 8.0
    jitter_s: float = 0.25
    default_cooldown_s: float = 60.0


@dataclass
class InterruptionConfig:
    empty_transcript_policy: EmptyTranscriptPolicy = EmptyTranscriptPolicy.RESUME_LISTENING


@dataclass
class Settings:
    app_name: str = "SentenceTurnEngine"
    debug: bool = False
    providers: dict[str, ProviderConfig] = field(default_factory=lambda: {
        "openai": ProviderConfig(base_url="https://api.openai.com/v1"),
        "gemini": ProviderConfig(base_url="https://generativelanguage.googleapis.com/v1beta"),
    })
    engine: EngineConfig = field(default_factory=EngineConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    interruption: InterruptionConfig = field(default_factory=InterruptionConfig)

    def provider(self, name: str) -> ProviderConfig:
        return self.providers.setdefault(name, ProviderConfig())


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _unresolved(value: str) -> str:
    # "${OPENAI_API_KEY}" left in place means the variable is unset
    return "" if re.fullmatch(r'\$\{\w+\}', value or "") else value


def _build_dataclass(cls, raw: dict[str, Any], defaults):
    kwargs = {}
    for name in defaults.__dataclass_fields__:
        kwargs[name] = raw.get(name, getattr(defaults, name))
    return cls(**kwargs)


def load_settings(config_path: str = None, env_file: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    load_dotenv(env_file)

    if config_path is None:
        config_path = os.environ.get(
            "CONVERSE_ENGINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        for name, data in (raw.get("providers") or {}).items():
            base = settings.providers.get(name, ProviderConfig())
            cfg = _build_dataclass(ProviderConfig, data or {}, base)
            cfg.api_key = _unresolved(cfg.api_key)
            settings.providers[name] = cfg

        if "engine" in raw:
            settings.engine = _build_dataclass(EngineConfig, raw["engine"] or {}, settings.engine)
            settings.engine.max_sentences = clamp_sentences(settings.engine.max_sentences)

        if "retry" in raw:
            settings.retry = _build_dataclass(RetryConfig, raw["retry"] or {}, settings.retry)

        if "interruption" in raw:
            ir = raw["interruption"] or {}
            settings.interruption = InterruptionConfig(
                empty_transcript_policy=EmptyTranscriptPolicy(
                    ir.get("empty_transcript_policy", EmptyTranscriptPolicy.RESUME_LISTENING.value)
                ),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def clamp_sentences(value: int) -> int:
    """Sentence budget is always within 1..10."""
    return max(1, min(10, int(value)))
