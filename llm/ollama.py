"""
Ollama adapter — talks to a local Ollama instance over HTTP.

This is the default provider: no API keys, no cloud, nothing leaves the
network. Small boards can take minutes per answer, hence the generous
read timeout. Only connection failures are retried; a request that reached
the model is never sent twice.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from config.settings import LLMConfig
from llm.provider import LLMAdapter, LLMError, LLMTimeoutError
from models.schemas import LLMMessage, LLMResponse

logger = structlog.get_logger()


class OllamaAdapter(LLMAdapter):
    provider = "ollama"

    def __init__(
        self,
        config: LLMConfig = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_wait=None,
    ):
        self.config = config or LLMConfig()
        super().__init__(self.config.model)
        self._transport = transport
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, max=5)
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self.client

    def _payload(self, messages: list[LLMMessage]) -> dict[str, Any]:
        return {
            "model": self.config.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "options": {
                "num_predict": self.config.max_tokens,
                "temperature": self.config.temperature,
            },
        }

    async def _post_chat(self, payload: dict[str, Any]) -> dict[str, Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.connect_retries)),
            wait=self._retry_wait,
            retry=retry_if_exception_type(httpx.ConnectError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                client = await self._get_client()
                response = await client.post("/api/chat", json=payload)
                response.raise_for_status()
                return response.json()

    async def _chat(self, messages: list[LLMMessage]) -> LLMResponse:
        try:
            data = await self._post_chat(self._payload(messages))
        except httpx.TimeoutException as e:
            logger.warning("ollama_timeout", model=self.config.model,
                           timeout=self.config.timeout_seconds, error=type(e).__name__)
            raise LLMTimeoutError(self.name, self.config.timeout_seconds) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise LLMError(
                f"Ollama error ({status}): {e.response.text}",
                self.name, retryable=status >= 500,
            ) from e
        except httpx.HTTPError as e:
            raise LLMError(f"Ollama unreachable: {e}", self.name, retryable=True) from e
        except ValueError as e:
            raise LLMError(f"Ollama returned invalid JSON: {e}", self.name) from e

        message = data.get("message") or {}
        return LLMResponse(
            content=message.get("content") or "",
            prompt_tokens=data.get("prompt_eval_count"),
            completion_tokens=data.get("eval_count"),
        )

    async def health(self) -> bool:
        try:
            client = await self._get_client()
            response = await client.get("/api/tags", timeout=5.0)
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug("ollama_health_failed", error=str(e))
            return False

    async def aclose(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()
