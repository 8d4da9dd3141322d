"""Shared test fixtures for answerphone."""
import asyncio
import json
from typing import Any, Optional

import pytest

from channels.base import ChannelClosedError, ListenerChannel
from channels.listeners import ListenerRegistry
from core.cancellation import CancellationToken
from core.orchestrator import JobOrchestrator
from database.store_memory import InMemoryMessageStore
from llm.provider import LLMAdapter
from models.schemas import (
    KeywordMatch, LLMMessage, LLMResponse, PatternMatch, Persona, RespondResult,
    ResponseSource, Rule, SpamAction, SpamRule,
)
from rules.engine import RulesEngine


# ──────────────────────────────────────────────────────────────
#  Test doubles
# ──────────────────────────────────────────────────────────────

class RecordingChannel(ListenerChannel):
    """Collects every event it receives; can be told to fail."""

    kind = "test"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events: list[tuple[str, Any]] = []

    async def send(self, event: str, data: str) -> None:
        if self.fail:
            raise ChannelClosedError(self.kind)
        self.events.append((event, json.loads(data)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def payloads(self, event: str) -> list[Any]:
        return [payload for name, payload in self.events if name == event]


class GatedResponder:
    """
    Responder double whose answer is held until the test releases it.

    Records every (question, history) it was asked. `result` is returned once
    the gate opens; `error` is raised instead when set.
    """

    def __init__(self, content: str = "Hello back!", source: ResponseSource = ResponseSource.LLM):
        self.calls: list[tuple[str, list[LLMMessage]]] = []
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()
        self.result = RespondResult(content=content, source=source)
        self.error: Optional[Exception] = None
        self.honour_token = False

    def release(self) -> None:
        self.gate.set()

    async def respond(self, question: str, history: list[LLMMessage] = None,
                      token: CancellationToken = None) -> RespondResult:
        self.calls.append((question, list(history or [])))
        self.entered.set()
        if self.honour_token and token is not None:
            await token.guard(self.gate.wait())
        else:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


class FakeLLM(LLMAdapter):
    provider = "fake"

    def __init__(self, content: str = "From the model", healthy: bool = True, delay: float = 0.0):
        super().__init__("test-model")
        self.content = content
        self.healthy = healthy
        self.delay = delay
        self.requests: list[list[LLMMessage]] = []

    async def _chat(self, messages: list[LLMMessage]) -> LLMResponse:
        self.requests.append(list(messages))
        if self.delay:
            await asyncio.sleep(self.delay)
        return LLMResponse(content=self.content, prompt_tokens=10, completion_tokens=5)

    async def health(self) -> bool:
        return self.healthy


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def listeners() -> ListenerRegistry:
    return ListenerRegistry()


@pytest.fixture
def orchestrator(store, listeners) -> JobOrchestrator:
    return JobOrchestrator(store, listeners, history_window=10)


@pytest.fixture
def responder() -> GatedResponder:
    return GatedResponder()


@pytest.fixture
def persona() -> Persona:
    return Persona(
        name="Ada's machine",
        system_prompt="You answer on behalf of Ada.",
        greeting="Hi, Ada is away. Leave a message!",
        fallback="Ada will get back to you on that.",
        languages=["en", "pt"],
        blocked_topics=["salary"],
    )


@pytest.fixture
def rules_engine() -> RulesEngine:
    return RulesEngine(
        rules=[
            Rule(id="contact", match=KeywordMatch(keywords=["email", "contact"]),
                 response="Use the contact form.", priority=5),
            Rule(id="hours", match=PatternMatch(pattern=r"\bhours\b"),
                 response="Replies within two days."),
        ],
        spam_rules=[
            SpamRule(id="crypto", match=KeywordMatch(keywords=["crypto"]), action=SpamAction.DROP),
            SpamRule(id="seo", match=KeywordMatch(keywords=["backlinks"]), action=SpamAction.FLAG),
        ],
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Spin the event loop until `predicate()` is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
