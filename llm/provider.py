"""
LLM provider abstraction.

An adapter takes the system prompt plus conversation turns and returns the
model's answer. No streaming: the visitor leaves a message, the model thinks,
the answer is written back.

Errors:
  - LLMError: the provider failed (HTTP status, bad payload, SDK error)
  - LLMTimeoutError: the provider did not answer inside the time budget
  - JobCancelledError: the caller's cancellation token fired first
"""
from __future__ import annotations

import abc
from typing import Optional

from core.cancellation import CancellationToken
from models.schemas import LLMMessage, LLMResponse


class LLMError(Exception):
    """Base exception for all model-provider failures."""

    def __init__(self, message: str, provider: str = "", retryable: bool = False):
        self.provider = provider
        self.retryable = retryable
        super().__init__(message)


class LLMTimeoutError(LLMError):
    def __init__(self, provider: str = "", timeout: float = 0.0):
        self.timeout = timeout
        super().__init__(f"{provider or 'LLM'} did not answer within {timeout:g}s", provider, retryable=True)


class LLMAdapter(abc.ABC):
    """Abstract base for all model providers."""

    provider: str = ""

    def __init__(self, model: str = ""):
        self.model = model

    @property
    def name(self) -> str:
        """Human-readable name for logs, e.g. ``ollama/qwen2.5:3b``."""
        return f"{self.provider}/{self.model}"

    async def chat(
        self, messages: list[LLMMessage], token: Optional[CancellationToken] = None,
    ) -> LLMResponse:
        """
        Generate a response from a conversation. The first message should be
        the system prompt.

        When `token` fires mid-request the in-flight call is abandoned and
        JobCancelledError is raised.
        """
        if token is None:
            return await self._chat(messages)
        return await token.guard(self._chat(messages))

    @abc.abstractmethod
    async def _chat(self, messages: list[LLMMessage]) -> LLMResponse:
        ...

    @abc.abstractmethod
    async def health(self) -> bool:
        """Check if the provider is reachable."""
        ...

    async def aclose(self) -> None:
        """Release any pooled connections."""
        return None
