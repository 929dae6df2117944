"""LLM provider abstraction module."""

from sentra_agent.providers.base import LLMProvider, LLMProviderError, LLMResponse
from sentra_agent.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMProviderError", "LLMResponse", "LiteLLMProvider"]
