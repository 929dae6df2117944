"""Second-opinion reply check using a lightweight model."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from sentra_agent.agent.format_repair import FormatRepairer
from sentra_agent.agent.reply_policy import ConversationState
from sentra_agent.bus.events import IncomingMessage
from sentra_agent.protocol.xml_utils import extract_xml_tag
from sentra_agent.providers.base import LLMProvider

MAX_PROMPT_TEXT = 200


@dataclass
class InterventionResult:
    need: bool
    reason: str
    confidence: float
    aborted: bool = False


class _Decision(BaseModel):
    need: bool
    reason: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)


def parse_decision(text: str | None) -> InterventionResult | None:
    """Parse a ``<sentra-decision>`` block; None when missing or invalid."""
    block = extract_xml_tag(text, "sentra-decision")
    if not block:
        logger.debug("No <sentra-decision> block in validator output")
        return None
    need = (extract_xml_tag(block, "need") or "").strip().lower()
    reason = (extract_xml_tag(block, "reason") or "").strip()
    confidence = (extract_xml_tag(block, "confidence") or "").strip()
    if not need or not reason or not confidence:
        logger.debug(f"Incomplete decision: need={need!r} reason={reason!r} confidence={confidence!r}")
        return None
    try:
        decision = _Decision(need=need == "true", reason=reason, confidence=confidence)
    except ValidationError as e:
        logger.debug(f"Invalid decision values: {e.errors()}")
        return None
    return InterventionResult(decision.need, decision.reason, decision.confidence)


def build_intervention_prompt(
    msg: IncomingMessage,
    probability: float,
    threshold: float,
    state: ConversationState,
) -> str:
    pace = f"{state.avg_message_interval:.0f}s" if state.avg_message_interval > 0 else "unknown"
    text = msg.text or "(empty)"
    if len(text) > MAX_PROMPT_TEXT:
        text = text[:MAX_PROMPT_TEXT] + "..."
    flags = []
    if msg.has_image:
        flags.append("[Contains Image]")
    if msg.has_file:
        flags.append("[Contains File]")
    body = "\n".join([text, *flags])

    mention = ""
    if msg.is_explicit_mention:
        name = msg.sender_name or msg.sender_id
        mention = f'User {name} mentioned you in the group chat and said: "{text}"\n\n'

    return f"""# Reply Decision Validator

You are a secondary validator for reply decisions. The base probability check has passed ({probability:.0%} >= {threshold:.0%}), but you need to verify whether a reply is **truly necessary** to avoid unnecessary responses.

## Input Context

**Chat Type**: {msg.chat_type}
**Message Count**: {state.message_count} messages (ignored {state.consecutive_ignored} times)
**Pace**: Average interval {pace}
**Base Probability**: {probability:.0%}

{mention}**Current Message**:
```
{body}
```

## Decision Criteria

A line saying the user "mentioned you in the group chat" means an explicit mention. Prefer need=true then, unless the message is empty, spam or meaningless.

**SHOULD Reply (need=true)**:
- Explicit help requests or questions
- Tasks with clear intent or instructions
- Valuable topic discussions or meaningful follow-ups
- Content requiring acknowledgment, emotional support or feedback

**SHOULD NOT Reply (need=false)**:
- Meaningless chitchat or obvious spam
- Pure emojis, stickers or filler words with no clear intent
- Repetitive messages or flooding that add no new information
- Rapid-fire messages in very fast conversations (<20s interval)
- Recent replies with no new topic

## Output Format (CRITICAL)

```xml
<sentra-decision>
  <need>true</need>
  <reason>user asks a concrete question</reason>
  <confidence>0.85</confidence>
</sentra-decision>
```

- `<need>`: true/false
- `<reason>`: short explanation (max 20 words)
- `<confidence>`: float 0.0-1.0

Do not write anything outside the XML block."""


class InterventionValidator:
    """Ask a small model whether a non-mandatory reply is really needed.

    Every failure mode (timeout, provider error, unparseable output) yields
    ``aborted=True, need=False``: when in doubt, stay silent.
    """

    def __init__(
        self,
        provider: LLMProvider,
        model: str | None,
        timeout: float = 2.0,
        only_near_threshold: bool = False,
        threshold_distance: float = 0.15,
        repairer: FormatRepairer | None = None,
    ):
        self.provider = provider
        self.model = model or None
        self.timeout = timeout
        self.only_near_threshold = only_near_threshold
        self.threshold_distance = threshold_distance
        self.repairer = repairer

    async def _ask(self, msg: IncomingMessage, prompt: str) -> str:
        response = await self.provider.chat(
            [
                {"role": "system", "content": prompt},
                {"role": "user", "content": f"Should this message get a reply?\n\n{msg.text or '(no text)'}"},
            ],
            model=self.model,
            temperature=0.3,
            max_tokens=300,
        )
        return response.content or ""

    async def _repair(self, text: str) -> InterventionResult | None:
        if self.repairer is None or not text.strip():
            return None
        try:
            return parse_decision(await self.repairer.repair_decision(text))
        except Exception as e:
            logger.warning(f"Decision repair failed: {e}")
            return None

    async def validate(
        self,
        msg: IncomingMessage,
        probability: float,
        threshold: float,
        state: ConversationState,
    ) -> InterventionResult:
        if not self.model:
            logger.warning("No intervention model configured, skipping validation")
            return InterventionResult(True, "no intervention model", 0.5)

        if self.only_near_threshold and not msg.is_explicit_mention:
            distance = abs(probability - threshold)
            if distance > self.threshold_distance:
                logger.debug(f"Probability {distance:.1%} away from threshold, skipping validation")
                return InterventionResult(True, "far from threshold", 1.0)

        logger.debug(f"Intervention check: model={self.model} p={probability:.2f} threshold={threshold:.2f}")
        prompt = build_intervention_prompt(msg, probability, threshold, state)
        started = time.monotonic()
        try:
            text = await asyncio.wait_for(self._ask(msg, prompt), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Intervention timed out after {self.timeout:.1f}s, not replying")
            return InterventionResult(False, "intervention timeout", 0.0, aborted=True)
        except Exception as e:
            logger.error(f"Intervention failed: {e}, not replying")
            return InterventionResult(False, "intervention failed", 0.0, aborted=True)
        elapsed_ms = (time.monotonic() - started) * 1000

        if not text:
            logger.warning("Intervention returned empty output, not replying")
            return InterventionResult(False, "empty intervention output", 0.0, aborted=True)

        result = parse_decision(text) or await self._repair(text)
        if result is None:
            logger.warning("Intervention output invalid, not replying")
            return InterventionResult(False, "invalid intervention output", 0.0, aborted=True)

        logger.info(
            f"Intervention done ({elapsed_ms:.0f}ms): need={result.need} "
            f"reason={result.reason!r} confidence={result.confidence}"
        )
        return result
