"""LLM call with format validation, bounded retry and automatic repair."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from sentra_agent.agent.format_repair import FormatRepairer
from sentra_agent.protocol.codec import extract_text_segments
from sentra_agent.providers.base import LLMProvider
from sentra_agent.utils.tokens import count_tokens

# Input-only tags: they feed context to the model and must never be echoed back.
FORBIDDEN_OUTPUT_TAGS: tuple[str, ...] = (
    "<sentra-tools>",
    "<sentra-result>",
    "<sentra-result-group>",
    "<sentra-user-question>",
    "<sentra-pending-messages>",
    "<sentra-emo>",
)

FORMAT_EMPTY = "empty"
FORMAT_MISSING_TAG = "missing_tag"
FORMAT_FORBIDDEN_TAG = "forbidden_tag"

# Failure kinds that warrant restating the output contract before retrying.
_REMINDER_KINDS = frozenset({FORMAT_MISSING_TAG, FORMAT_FORBIDDEN_TAG})


@dataclass
class ChatAttemptResult:
    response: str | None
    retries: int
    success: bool
    reason: str | None = None


@dataclass(frozen=True)
class FormatCheck:
    valid: bool
    reason: str = ""
    kind: str = ""


def validate_response_format(response: Any) -> FormatCheck:
    """Structural check of a raw model reply against the Sentra protocol."""
    if not response or not isinstance(response, str):
        return FormatCheck(False, "empty or non-string response", FORMAT_EMPTY)
    if "<sentra-response>" not in response:
        return FormatCheck(False, "missing <sentra-response> tag", FORMAT_MISSING_TAG)
    for tag in FORBIDDEN_OUTPUT_TAGS:
        if tag in response:
            return FormatCheck(False, f"contains forbidden read-only tag: {tag}", FORMAT_FORBIDDEN_TAG)
    return FormatCheck(True)


def build_protocol_reminder() -> str:
    return "\n".join([
        "CRITICAL OUTPUT RULES:",
        "1) Wrap the whole reply in <sentra-response>...</sentra-response>",
        "2) Use segments <text1>, <text2>, <text3>, ... (one natural sentence each)",
        "3) Never output read-only input tags: <sentra-user-question>/<sentra-result>/"
        "<sentra-result-group>/<sentra-pending-messages>/<sentra-emo>/<sentra-tools>",
        "4) Do not mention tools or technical terms (tool/success/return/data field ...)",
        "5) Do not XML-escape the content of text tags",
        "6) <resources> may be empty; without resources output <resources></resources>",
    ])


def _response_text(raw: Any) -> str:
    """Accept ``LLMResponse``, ``{"content": ...}`` or a bare string."""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        return raw.get("content") or ""
    return getattr(raw, "content", None) or ""


class ResponseGenerator:
    """Wraps the main-model call with the reply contract.

    Format violations and token overflows are content problems fixed by
    asking again (optionally with a reminder or a repair pass); provider
    errors get a flat backoff.  Both share one retry budget, so a single
    invocation never makes more than ``max_retries + 1`` provider calls.
    """

    def __init__(
        self,
        provider: LLMProvider,
        *,
        model: str | None = None,
        max_retries: int = 2,
        max_response_tokens: int = 260,
        token_count_model: str = "gpt-4o-mini",
        strict_format_check: bool = True,
        repairer: FormatRepairer | None = None,
        format_retry_delay: float = 1.0,
        overflow_retry_delay: float = 0.5,
        error_retry_delay: float = 1.0,
        token_counter: Callable[[str, str], int] = count_tokens,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.provider = provider
        self.model = model
        self.max_retries = max(0, max_retries)
        self.max_response_tokens = max_response_tokens
        self.token_count_model = token_count_model
        self.strict_format_check = strict_format_check
        self.repairer = repairer
        self.format_retry_delay = format_retry_delay
        self.overflow_retry_delay = overflow_retry_delay
        self.error_retry_delay = error_retry_delay
        self._count_tokens = token_counter
        self._sleep = sleep

    def _count_response_tokens(self, response: str) -> tuple[str, int]:
        text = " ".join(extract_text_segments(response))
        return text, self._count_tokens(text, self.token_count_model)

    async def _try_repair(self, response: str, tag: str) -> str | None:
        if self.repairer is None or not response.strip():
            return None
        try:
            repaired = await self.repairer.repair_response(response)
        except Exception as e:
            logger.warning(f"[{tag}] format repair failed: {e}")
            return None
        if validate_response_format(repaired).valid:
            return repaired
        logger.warning(f"[{tag}] format repair produced an invalid reply")
        return None

    async def chat_with_retry(
        self,
        conversation: list[dict[str, Any]],
        model: str | None = None,
        correlation_id: str = "",
    ) -> ChatAttemptResult:
        """Call the model until the reply passes validation or the budget runs out."""
        tag = correlation_id or "-"
        model = model or self.model
        retries = 0
        last_kind = ""

        while True:
            logger.debug(f"[{tag}] LLM attempt {retries + 1}/{self.max_retries + 1}")

            messages = conversation
            if self.strict_format_check and last_kind in _REMINDER_KINDS:
                messages = [*conversation, {"role": "system", "content": build_protocol_reminder()}]
                logger.info(f"[{tag}] protocol reminder injected ({last_kind})")

            try:
                raw = await self.provider.chat(messages, model=model)
            except Exception as e:
                logger.error(f"[{tag}] LLM request failed on attempt {retries + 1}: {e}")
                last_kind = ""
                if retries < self.max_retries:
                    retries += 1
                    await self._sleep(self.error_retry_delay)
                    continue
                return ChatAttemptResult(None, retries, False, str(e) or type(e).__name__)

            response = _response_text(raw)

            if self.strict_format_check:
                check = validate_response_format(response)
                if not check.valid:
                    last_kind = check.kind
                    logger.warning(f"[{tag}] format check failed: {check.reason}")
                    if retries < self.max_retries:
                        retries += 1
                        await self._sleep(self.format_retry_delay)
                        continue
                    repaired = await self._try_repair(response, tag)
                    if repaired is not None:
                        logger.info(f"[{tag}] reply repaired after {retries} retries")
                        return ChatAttemptResult(repaired, retries, True)
                    logger.error(f"[{tag}] format check failed after {retries} retries")
                    return ChatAttemptResult(None, retries, False, check.reason)

            text, tokens = self._count_response_tokens(response)
            logger.debug(f"[{tag}] reply tokens: {tokens}, chars: {len(text)}")
            if tokens > self.max_response_tokens:
                logger.warning(f"[{tag}] token overflow: {tokens} > {self.max_response_tokens}")
                last_kind = ""
                if retries < self.max_retries:
                    retries += 1
                    await self._sleep(self.overflow_retry_delay)
                    continue
                return ChatAttemptResult(
                    None, retries, False,
                    f"token overflow: {tokens}>{self.max_response_tokens}",
                )

            logger.info(f"[{tag}] reply accepted ({tokens}/{self.max_response_tokens} tokens, retries={retries})")
            return ChatAttemptResult(response, retries, True)
