"""
LLM providers.

Quick start:
  from llm import create_llm_adapter
  llm = create_llm_adapter(get_settings().llm)
  reply = await llm.chat([LLMMessage(role="user", content="hi")])
"""
from config.settings import ConfigError, LLMConfig
from llm.provider import LLMAdapter, LLMError, LLMTimeoutError
from llm.ollama import OllamaAdapter
from llm.cloud import AnthropicAdapter, OpenAIAdapter, get_cloud_adapter


def create_llm_adapter(config: LLMConfig) -> LLMAdapter:
    """Create the adapter named by ``config.provider``."""
    if config.provider == "ollama":
        return OllamaAdapter(config)
    adapter = get_cloud_adapter(config)
    if adapter is None:
        raise ConfigError(f"Unknown LLM provider: {config.provider!r}")
    return adapter


__all__ = [
    "LLMAdapter", "LLMError", "LLMTimeoutError",
    "OllamaAdapter", "OpenAIAdapter", "AnthropicAdapter",
    "create_llm_adapter",
]
