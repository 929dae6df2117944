"""Reply policy: decide whether a message deserves a reply at all."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from loguru import logger

from sentra_agent.bus.events import IncomingMessage

_FAST_PACE_SECONDS = 20.0
_INTERVAL_SMOOTHING = 0.3
_QUESTION_MARKS = ("?", "？")


@dataclass
class ConversationState:
    message_count: int = 0
    consecutive_ignored: int = 0
    avg_message_interval: float = 0.0
    last_message_at: float = 0.0
    desire: float = 0.0
    last_probability: float = 0.0

    @property
    def is_fast_paced(self) -> bool:
        return self.message_count >= 3 and 0 < self.avg_message_interval < _FAST_PACE_SECONDS


@dataclass
class ReplyDecision:
    need_reply: bool
    reason: str
    mandatory: bool = False
    probability: float = 0.0
    threshold: float = 0.65
    conversation_id: str = ""
    state: ConversationState | None = None


class ReplyPolicy(Protocol):
    def should_reply(self, msg: IncomingMessage) -> ReplyDecision: ...

    def reduce_desire_and_recalculate(
        self, conversation_id: str, msg: IncomingMessage, fraction: float
    ) -> ReplyDecision: ...

    def reset_conversation_state(self, conversation_id: str) -> None: ...


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class DesireReplyPolicy:
    """Desire/probability model per conversation.

    Private chats always get a reply; explicit mentions always pass the
    desire check but are not mandatory, so intervention can still veto
    empty or spammy pings.  In groups the
    desire to speak grows with every message the bot stays silent on, gets a
    bump for questions and drops when the chat is moving fast.
    """

    def __init__(
        self,
        threshold: float = 0.65,
        base_desire: float = 0.35,
        ignored_step: float = 0.08,
        question_bonus: float = 0.15,
        fast_pace_penalty: float = 0.10,
    ):
        self.threshold = threshold
        self.base_desire = base_desire
        self.ignored_step = ignored_step
        self.question_bonus = question_bonus
        self.fast_pace_penalty = fast_pace_penalty
        self._states: dict[str, ConversationState] = {}

    def get_state(self, conversation_id: str) -> ConversationState:
        state = self._states.get(conversation_id)
        if state is None:
            state = ConversationState(desire=self.base_desire)
            self._states[conversation_id] = state
        return state

    def _observe(self, state: ConversationState, msg: IncomingMessage) -> None:
        now = msg.timestamp
        if state.last_message_at and now >= state.last_message_at:
            interval = now - state.last_message_at
            if state.avg_message_interval <= 0:
                state.avg_message_interval = interval
            else:
                state.avg_message_interval = (
                    state.avg_message_interval * (1 - _INTERVAL_SMOOTHING)
                    + interval * _INTERVAL_SMOOTHING
                )
        state.last_message_at = now
        state.message_count += 1

    def _probability(self, state: ConversationState, msg: IncomingMessage) -> float:
        desire = self.base_desire + self.ignored_step * state.consecutive_ignored
        state.desire = _clamp(desire)
        probability = state.desire
        if any(mark in msg.content for mark in _QUESTION_MARKS):
            probability += self.question_bonus
        if state.is_fast_paced:
            probability -= self.fast_pace_penalty
        return _clamp(probability)

    def should_reply(self, msg: IncomingMessage) -> ReplyDecision:
        conversation_id = msg.conversation_id
        state = self.get_state(conversation_id)
        self._observe(state, msg)

        if msg.chat_type == "private":
            state.last_probability = 1.0
            return ReplyDecision(
                True, "private chat", mandatory=True, probability=1.0,
                threshold=self.threshold, conversation_id=conversation_id, state=state,
            )
        if msg.is_explicit_mention:
            # passes the desire check but stays subject to intervention
            state.last_probability = 1.0
            return ReplyDecision(
                True, "explicit mention", probability=1.0,
                threshold=self.threshold, conversation_id=conversation_id, state=state,
            )

        probability = self._probability(state, msg)
        state.last_probability = probability
        need = probability >= self.threshold
        if need:
            reason = f"desire {probability:.2f} >= {self.threshold:.2f}"
        else:
            state.consecutive_ignored += 1
            reason = f"desire {probability:.2f} < {self.threshold:.2f} (ignored={state.consecutive_ignored})"
        return ReplyDecision(
            need, reason, probability=probability, threshold=self.threshold,
            conversation_id=conversation_id, state=state,
        )

    def reduce_desire_and_recalculate(
        self, conversation_id: str, msg: IncomingMessage, fraction: float
    ) -> ReplyDecision:
        """Lower desire and the last probability by *fraction* and re-test the threshold."""
        state = self.get_state(conversation_id)
        keep = 1.0 - _clamp(fraction)
        state.desire = _clamp(state.desire * keep)
        probability = _clamp(state.last_probability * keep)
        state.last_probability = probability
        need = probability >= self.threshold
        if not need:
            state.consecutive_ignored += 1
        logger.debug(
            f"Desire reduced for {conversation_id} by {fraction:.0%}: "
            f"p={probability:.2f} need={need}"
        )
        return ReplyDecision(
            need,
            f"after reduction {probability:.2f} {'>=' if need else '<'} {self.threshold:.2f}",
            probability=probability, threshold=self.threshold,
            conversation_id=conversation_id, state=state,
        )

    def reset_conversation_state(self, conversation_id: str) -> None:
        state = self._states.get(conversation_id)
        if state is None:
            return
        state.consecutive_ignored = 0
        state.desire = self.base_desire
