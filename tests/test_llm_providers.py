"""Tests for the LLM adapters and the provider factory."""
import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest
from tenacity import wait_none

from config.settings import ConfigError, LLMConfig
from core.cancellation import CancellationToken, JobCancelledError
from llm import (
    AnthropicAdapter, LLMError, LLMTimeoutError, OllamaAdapter, OpenAIAdapter,
    create_llm_adapter,
)
from llm.cloud import _split_system
from models.schemas import LLMMessage


MESSAGES = [
    LLMMessage(role="system", content="Be brief."),
    LLMMessage(role="user", content="hi"),
]


def ollama_reply(content="Hello!"):
    return httpx.Response(200, json={
        "message": {"role": "assistant", "content": content},
        "prompt_eval_count": 12,
        "eval_count": 3,
    })


def make_ollama(handler, **config):
    cfg = LLMConfig(base_url="http://pi.local:11434/", model="qwen2.5:3b", **config)
    return OllamaAdapter(cfg, transport=httpx.MockTransport(handler), retry_wait=wait_none())


class TestOllamaAdapter:

    @pytest.mark.asyncio
    async def test_chat_payload_and_parsing(self):
        seen = []

        def handler(request):
            seen.append(request)
            return ollama_reply()

        llm = make_ollama(handler, max_tokens=64, temperature=0.2)
        response = await llm.chat(MESSAGES)

        assert response.content == "Hello!"
        assert response.prompt_tokens == 12
        assert response.completion_tokens == 3

        [request] = seen
        assert request.url.path == "/api/chat"
        assert request.url.host == "pi.local"
        body = json.loads(request.content)
        assert body == {
            "model": "qwen2.5:3b",
            "messages": [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "hi"},
            ],
            "stream": False,
            "options": {"num_predict": 64, "temperature": 0.2},
        }
        await llm.aclose()

    @pytest.mark.asyncio
    async def test_missing_message_is_empty_content(self):
        llm = make_ollama(lambda request: httpx.Response(200, json={"done": True}))
        response = await llm.chat(MESSAGES)
        assert response.content == ""
        assert response.prompt_tokens is None

    @pytest.mark.asyncio
    async def test_server_error(self):
        llm = make_ollama(lambda request: httpx.Response(500, text="model not loaded"))
        with pytest.raises(LLMError, match="Ollama error \\(500\\): model not loaded") as exc:
            await llm.chat(MESSAGES)
        assert exc.value.retryable
        assert exc.value.provider == "ollama/qwen2.5:3b"

    @pytest.mark.asyncio
    async def test_client_error_not_retryable(self):
        llm = make_ollama(lambda request: httpx.Response(404, text="model not found"))
        with pytest.raises(LLMError) as exc:
            await llm.chat(MESSAGES)
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        llm = make_ollama(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(LLMError, match="invalid JSON"):
            await llm.chat(MESSAGES)

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        llm = make_ollama(handler, timeout_seconds=120)
        with pytest.raises(LLMTimeoutError) as exc:
            await llm.chat(MESSAGES)
        assert exc.value.timeout == 120
        assert "did not answer within 120s" in str(exc.value)

    @pytest.mark.asyncio
    async def test_connect_errors_are_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                raise httpx.ConnectError("refused", request=request)
            return ollama_reply("third time")

        llm = make_ollama(handler, connect_retries=3)
        response = await llm.chat(MESSAGES)
        assert response.content == "third time"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_connect_retries_exhausted(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("refused", request=request)

        llm = make_ollama(handler, connect_retries=2)
        with pytest.raises(LLMError, match="Ollama unreachable") as exc:
            await llm.chat(MESSAGES)
        assert exc.value.retryable
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_status_errors_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(503)

        llm = make_ollama(handler, connect_retries=3)
        with pytest.raises(LLMError):
            await llm.chat(MESSAGES)
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_cancel_abandons_request(self):
        async def handler(request):
            await asyncio.sleep(5)
            return ollama_reply()

        llm = make_ollama(handler)
        token = CancellationToken()
        call = asyncio.create_task(llm.chat(MESSAGES, token))
        await asyncio.sleep(0.01)
        token.cancel()
        with pytest.raises(JobCancelledError):
            await asyncio.wait_for(call, timeout=1)

    @pytest.mark.asyncio
    async def test_health(self):
        def handler(request):
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": []})

        assert await make_ollama(handler).health()

    @pytest.mark.asyncio
    async def test_health_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert not await make_ollama(handler).health()


# ──────────────────────────────────────────────────────────────
#  Hosted providers, driven through fake SDK clients
# ──────────────────────────────────────────────────────────────

class FakeOpenAIClient:
    def __init__(self, content="From OpenAI", error=None):
        self.calls = []
        self.error = error
        self.closed = False
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))
        self.models = SimpleNamespace(list=self._list)
        self._content = content

    async def _create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=self._content))],
            usage=SimpleNamespace(prompt_tokens=20, completion_tokens=4),
        )

    async def _list(self):
        return []

    async def close(self):
        self.closed = True


class FakeAnthropicClient:
    def __init__(self):
        self.calls = []
        self.messages = SimpleNamespace(create=self._create)

    async def _create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text="Hello "), SimpleNamespace(type="text", text="there")],
            usage=SimpleNamespace(input_tokens=30, output_tokens=2),
        )


class TestCloudAdapters:

    def test_split_system(self):
        system, turns = _split_system(MESSAGES)
        assert system == "Be brief."
        assert turns == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_openai_chat(self):
        client = FakeOpenAIClient()
        llm = OpenAIAdapter(LLMConfig(provider="openai", model="gpt-4o-mini", max_tokens=100), client=client)
        response = await llm.chat(MESSAGES)

        assert response.content == "From OpenAI"
        assert response.prompt_tokens == 20
        [call] = client.calls
        assert call["model"] == "gpt-4o-mini"
        assert call["max_tokens"] == 100
        assert call["messages"][0] == {"role": "system", "content": "Be brief."}

    @pytest.mark.asyncio
    async def test_openai_errors_are_wrapped(self):
        client = FakeOpenAIClient(error=RuntimeError("rate limited"))
        llm = OpenAIAdapter(LLMConfig(provider="openai", model="gpt-4o-mini"), client=client)
        with pytest.raises(LLMError, match="rate limited") as exc:
            await llm.chat(MESSAGES)
        assert exc.value.provider == "openai/gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_openai_health_and_close(self):
        client = FakeOpenAIClient()
        llm = OpenAIAdapter(LLMConfig(provider="openai"), client=client)
        assert await llm.health()
        await llm.aclose()
        assert client.closed

    @pytest.mark.asyncio
    async def test_anthropic_sends_system_separately(self):
        client = FakeAnthropicClient()
        llm = AnthropicAdapter(LLMConfig(provider="anthropic", model="claude-haiku"), client=client)
        response = await llm.chat(MESSAGES)

        assert response.content == "Hello there"
        assert response.prompt_tokens == 30
        assert response.completion_tokens == 2
        [call] = client.calls
        assert call["system"] == "Be brief."
        assert call["messages"] == [{"role": "user", "content": "hi"}]


class TestFactory:

    def test_ollama_default(self):
        llm = create_llm_adapter(LLMConfig())
        assert isinstance(llm, OllamaAdapter)
        assert llm.name == "ollama/qwen2.5:3b"

    @pytest.mark.parametrize("provider,cls", [
        ("openai", OpenAIAdapter),
        ("anthropic", AnthropicAdapter),
    ])
    def test_cloud_providers(self, provider, cls):
        assert isinstance(create_llm_adapter(LLMConfig(provider=provider)), cls)

    def test_unknown_provider(self):
        with pytest.raises(ConfigError, match="Unknown LLM provider"):
            create_llm_adapter(LLMConfig(provider="mystery"))
