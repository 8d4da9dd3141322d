"""
Core data models for the answerphone service.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageRole(str, Enum):
    VISITOR = "visitor"
    RESPONDER = "responder"


class MessageStatus(str, Enum):
    PENDING = "pending"
    RECEIVED = "received"
    ERROR = "error"
    # store-level archival states
    READ = "read"
    ARCHIVED = "archived"
    SPAM = "spam"


class ResponseSource(str, Enum):
    RULE = "rule"
    LLM = "llm"
    FALLBACK = "fallback"
    GREETING = "greeting"


class SpamAction(str, Enum):
    FLAG = "flag"
    DROP = "drop"


class JobEvent(str, Enum):
    """Event names pushed to live listeners of a conversation."""
    CONNECTED = "connected"
    PROCESSING = "processing"
    MESSAGE = "message"
    CANCELLED = "cancelled"
    ERROR = "error"
    HEARTBEAT = "heartbeat"


# ──────────────────────────────────────────────────────────────
#  Persona — how the responder talks
# ──────────────────────────────────────────────────────────────

class Persona(BaseModel):
    name: str = "answerphone"
    description: str = "An answering machine"
    system_prompt: str = "You are a helpful answering machine on a personal website."
    greeting: str = "Hey! Leave a message and I'll make sure it gets through."
    fallback: str = "I don't have information about that. Want me to pass your question along?"
    languages: list[str] = Field(default_factory=lambda: ["en"])
    blocked_topics: list[str] = []


# ──────────────────────────────────────────────────────────────
#  Rules — keyword overrides and spam filters
# ──────────────────────────────────────────────────────────────

class KeywordMatch(BaseModel):
    type: Literal["keywords"] = "keywords"
    keywords: list[str]
    all: bool = False                         # require ALL keywords instead of ANY


class PatternMatch(BaseModel):
    type: Literal["pattern"] = "pattern"
    pattern: str
    flags: str = "i"


class ExactMatch(BaseModel):
    type: Literal["exact"] = "exact"
    value: str


MatchSpec = Union[KeywordMatch, PatternMatch, ExactMatch]


class Rule(BaseModel):
    """Canned answer fired before the model is consulted."""
    id: str
    label: str = ""
    match: MatchSpec = Field(discriminator="type")
    response: str
    priority: int = 0                         # higher wins
    enabled: bool = True


class SpamRule(BaseModel):
    id: str
    label: str = ""
    match: Union[KeywordMatch, PatternMatch] = Field(discriminator="type")
    action: SpamAction = SpamAction.FLAG


# ──────────────────────────────────────────────────────────────
#  Knowledge
# ──────────────────────────────────────────────────────────────

class DataSource(BaseModel):
    name: str
    path: str
    format: Literal["markdown", "json", "text"] = "text"
    description: str = ""


class DataChunk(BaseModel):
    source: str
    content: str
    metadata: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  LLM + responder results
# ──────────────────────────────────────────────────────────────

class LLMMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class LLMResponse(BaseModel):
    content: str
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


class RespondResult(BaseModel):
    content: str
    source: ResponseSource
    spam: bool = False
    drop: bool = False
