"""
Hosted model providers — OpenAI and Anthropic.

Both SDKs are optional extras and imported lazily, so a Raspberry Pi install
running Ollama never needs them.
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import LLMConfig
from llm.provider import LLMAdapter, LLMError, LLMTimeoutError
from models.schemas import LLMMessage, LLMResponse

logger = structlog.get_logger()


def _split_system(messages: list[LLMMessage]) -> tuple[str, list[dict[str, str]]]:
    system = "\n\n".join(m.content for m in messages if m.role == "system")
    turns = [{"role": m.role, "content": m.content} for m in messages if m.role != "system"]
    return system, turns


class _SDKAdapter(LLMAdapter):
    """Shared client caching and error mapping for the vendor SDKs."""

    def __init__(self, config: LLMConfig = None, client=None):
        self.config = config or LLMConfig()
        super().__init__(self.config.model)
        self._client = client

    def _create_client(self):
        raise NotImplementedError

    def _timeout_error_type(self) -> type:
        raise NotImplementedError

    async def _get_client(self):
        if self._client is None:
            try:
                self._client = self._create_client()
                logger.info("llm_client_initialized", provider=self.provider, model=self.model)
            except ImportError as e:
                raise LLMError(
                    f"{self.provider} SDK is not installed (pip install '.[{self.provider}]')",
                    self.provider,
                ) from e
        return self._client

    async def _call(self, messages: list[LLMMessage]) -> LLMResponse:
        raise NotImplementedError

    async def _chat(self, messages: list[LLMMessage]) -> LLMResponse:
        await self._get_client()
        try:
            return await self._call(messages)
        except LLMError:
            raise
        except Exception as e:
            if isinstance(e, self._timeout_error_type()):
                raise LLMTimeoutError(self.name, self.config.timeout_seconds) from e
            raise LLMError(str(e), self.name) from e

    async def health(self) -> bool:
        try:
            client = await self._get_client()
            await client.models.list()
            return True
        except Exception as e:
            logger.debug("llm_health_failed", provider=self.provider, error=str(e))
            return False

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


class OpenAIAdapter(_SDKAdapter):
    provider = "openai"

    def _create_client(self):
        from openai import AsyncOpenAI
        kwargs = {"api_key": self.config.api_key, "timeout": self.config.timeout_seconds}
        # base_url left at the Ollama default means the public endpoint
        if self.config.base_url and "11434" not in self.config.base_url:
            kwargs["base_url"] = self.config.base_url
        return AsyncOpenAI(**kwargs)

    def _timeout_error_type(self) -> type:
        import openai
        return openai.APITimeoutError

    async def _call(self, messages: list[LLMMessage]) -> LLMResponse:
        # OpenAI: system prompt is a message in the messages list
        response = await self._client.chat.completions.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            messages=[{"role": m.role, "content": m.content} for m in messages],
        )
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=response.choices[0].message.content or "",
            prompt_tokens=getattr(usage, "prompt_tokens", None),
            completion_tokens=getattr(usage, "completion_tokens", None),
        )


class AnthropicAdapter(_SDKAdapter):
    provider = "anthropic"

    def _create_client(self):
        import anthropic
        return anthropic.AsyncAnthropic(
            api_key=self.config.api_key, timeout=self.config.timeout_seconds,
        )

    def _timeout_error_type(self) -> type:
        import anthropic
        return anthropic.APITimeoutError

    async def _call(self, messages: list[LLMMessage]) -> LLMResponse:
        # Anthropic: system prompt is a separate parameter
        system, turns = _split_system(messages)
        kwargs = {}
        if system:
            kwargs["system"] = system
        response = await self._client.messages.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            messages=turns,
            **kwargs,
        )
        text = "".join(
            getattr(block, "text", "") for block in response.content
        )
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=text,
            prompt_tokens=getattr(usage, "input_tokens", None),
            completion_tokens=getattr(usage, "output_tokens", None),
        )


def get_cloud_adapter(config: LLMConfig, client=None) -> Optional[LLMAdapter]:
    if config.provider == "openai":
        return OpenAIAdapter(config, client=client)
    if config.provider == "anthropic":
        return AnthropicAdapter(config, client=client)
    return None
