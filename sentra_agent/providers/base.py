"""Base LLM provider interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


class LLMProviderError(RuntimeError):
    """Raised when the upstream provider call fails (network, auth, quota)."""


@dataclass
class LLMResponse:
    """Response from an LLM provider."""

    content: str | None
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)
    model: str = ""


class LLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    Implementations raise ``LLMProviderError`` on failure so callers can
    decide their own retry policy.
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """
        Send a chat completion request.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            model: Model identifier (provider default when omitted).
            max_tokens: Maximum tokens in response.
            temperature: Sampling temperature.

        Returns:
            LLMResponse with the reply text.
        """

    @abstractmethod
    def get_default_model(self) -> str:
        """Get the default model for this provider."""
