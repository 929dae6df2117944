"""LiteLLM provider implementation for multi-provider support."""

from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from sentra_agent.providers.base import LLMProvider, LLMProviderError, LLMResponse


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    One instance serves the main model as well as the lightweight models
    (intervention, format repair); ``chat()`` takes a per-call ``model``.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "",
        temperature: float = 0.7,
        max_tokens: int = 4096,
        timeout: float = 60.0,
        extra_headers: dict[str, str] | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.extra_headers = extra_headers or {}

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True
        # Drop unsupported parameters for providers (e.g., gpt-5 rejects some params)
        litellm.drop_params = True

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """
        Send a chat completion request via LiteLLM.

        Raises:
            LLMProviderError: on any upstream failure (raw details are logged).
        """
        model = model or self.default_model
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
            "timeout": self.timeout,
        }
        limit = self.max_tokens if max_tokens is None else max_tokens
        # non-positive limits mean "let the provider decide"
        if limit and limit > 0:
            kwargs["max_tokens"] = limit
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            logger.error(f"LLM call failed ({model}): {e}")
            raise LLMProviderError(str(e)) from e
        return self._parse_response(response, resolved_model=model)

    def _parse_response(self, response: Any, *, resolved_model: str = "") -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        choice = response.choices[0]
        usage = {}
        if hasattr(response, "usage") and response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }
        return LLMResponse(
            content=choice.message.content,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
            model=resolved_model or getattr(response, "model", ""),
        )

    def get_default_model(self) -> str:
        """Get the default model."""
        return self.default_model
