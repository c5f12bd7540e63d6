"""
Core data models for the sentence turn engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class TurnState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    ABORTED = "aborted"
    FINISHED = "finished"


# ──────────────────────────────────────────────────────────────
#  Conversation history
# ──────────────────────────────────────────────────────────────

class Msg(BaseModel):
    """One history entry. Frozen: a changed turn text is a new Msg."""
    model_config = ConfigDict(frozen=True)

    role: Role
    text: str

    @classmethod
    def user(cls, text: str) -> Msg:
        return cls(role=Role.USER, text=text)

    @classmethod
    def assistant(cls, text: str) -> Msg:
        return cls(role=Role.ASSISTANT, text=text)


class GroundingSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    title: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Provider exchange
# ──────────────────────────────────────────────────────────────

class ChatRequest(BaseModel):
    """Provider-neutral request. Clients translate it to their wire format."""
    model: str
    system_prompt: str = ""
    messages: list[Msg] = Field(default_factory=list)
    temperature: Optional[float] = None
    web_search: bool = False


class ProviderReply(BaseModel):
    text: str = ""
    model: str = ""
    sources: list[GroundingSource] = Field(default_factory=list)


class StreamChunk(BaseModel):
    """One streamed delta. Sources may arrive on any chunk."""
    text: str = ""
    sources: list[GroundingSource] = Field(default_factory=list)


# ──────────────────────────────────────────────────────────────
#  Turn bookkeeping
# ──────────────────────────────────────────────────────────────

class TurnInfo(BaseModel):
    """Snapshot of a turn, handed to callers that want to inspect it."""
    turn_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    user_text: str = ""
    model: str = ""
    state: TurnState = TurnState.IDLE
    sentences_delivered: int = 0


class PreemptResult(BaseModel):
    """Outcome of an atomic interrupt decision on the engine."""
    aborted: bool = False
    user_text: Optional[str] = None
    sentences_delivered: int = 0
