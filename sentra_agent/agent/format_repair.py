"""Format repair: ask a model to re-wrap a malformed reply in the protocol."""

from __future__ import annotations

import re

from loguru import logger

from sentra_agent.providers.base import LLMProvider

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?|\n?\s*```\s*$")

_RESPONSE_REPAIR_PROMPT = """\
You are a strict formatter for the Sentra XML protocol.
Rewrite the input into EXACTLY one <sentra-response> block and nothing else.

Rules:
- Keep the original meaning and wording; do not add new content.
- Split the text into short segments <text1>, <text2>, ... (one or two sentences each).
- Do not escape characters inside text tags.
- Never output <sentra-tools>, <sentra-result>, <sentra-result-group>,
  <sentra-user-question>, <sentra-pending-messages> or <sentra-emo>.
- Keep any media/file references as <resource> entries:
  <resource><type>image|video|audio|file|link</type><source>...</source><caption>...</caption></resource>
- If there are no resources, output <resources></resources>.

Template:
<sentra-response>
  <text1>...</text1>
  <resources></resources>
</sentra-response>"""

_DECISION_REPAIR_PROMPT = """\
You are a strict formatter for the Sentra XML protocol.
Rewrite the input into EXACTLY one <sentra-decision> block and nothing else:

<sentra-decision>
  <need>true|false</need>
  <reason>short reason</reason>
  <confidence>0.0-1.0</confidence>
</sentra-decision>

Infer need/reason/confidence from the input; never invent a different decision."""


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


class FormatRepairer:
    """Re-format broken model output with a (possibly different) model."""

    def __init__(self, provider: LLMProvider, model: str | None = None, max_tokens: int = 1024):
        self.provider = provider
        self.model = model or None
        self.max_tokens = max_tokens

    async def _repair(self, system_prompt: str, raw: str) -> str:
        response = await self.provider.chat(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": raw},
            ],
            model=self.model,
            temperature=0,
            max_tokens=self.max_tokens,
        )
        return _strip_fences(response.content or "")

    async def repair_response(self, raw: str) -> str:
        """Return a repaired ``<sentra-response>`` candidate (not yet validated)."""
        repaired = await self._repair(_RESPONSE_REPAIR_PROMPT, raw)
        logger.debug(f"format repair (response): {len(raw)} -> {len(repaired)} chars")
        return repaired

    async def repair_decision(self, raw: str) -> str:
        """Return a repaired ``<sentra-decision>`` candidate (not yet validated)."""
        repaired = await self._repair(_DECISION_REPAIR_PROMPT, raw)
        logger.debug(f"format repair (decision): {len(raw)} -> {len(repaired)} chars")
        return repaired
