from __future__ import annotations

import asyncio

import pytest

from conftest import ScriptedProvider
from sentra_agent.agent.admission import AdmissionController
from sentra_agent.agent.format_repair import FormatRepairer
from sentra_agent.agent.intervention import (
    InterventionResult,
    InterventionValidator,
    build_intervention_prompt,
    parse_decision,
)
from sentra_agent.agent.reply_gate import ReplyGate
from sentra_agent.agent.reply_policy import ConversationState, DesireReplyPolicy
from sentra_agent.bus.events import IncomingMessage
from sentra_agent.providers.base import LLMProvider, LLMProviderError, LLMResponse


def _group_msg(text: str = "hello all", mention: bool = False) -> IncomingMessage:
    return IncomingMessage(
        sender_id="u1",
        text=text,
        group_id="g1",
        self_id="bot",
        at_users=("bot",) if mention else (),
    )


def _decision_xml(need: bool, confidence: float = 0.9) -> str:
    return (
        "<sentra-decision>"
        f"<need>{'true' if need else 'false'}</need>"
        "<reason>short reason</reason>"
        f"<confidence>{confidence}</confidence>"
        "</sentra-decision>"
    )


class _FixedValidator:
    def __init__(self, result: InterventionResult) -> None:
        self.result = result
        self.calls = 0

    async def validate(self, msg, probability, threshold, state):
        self.calls += 1
        return self.result


class _SlowProvider(LLMProvider):
    async def chat(self, messages, model=None, max_tokens=None, temperature=None):
        await asyncio.sleep(1)
        return LLMResponse(content=_decision_xml(True))

    def get_default_model(self) -> str:
        return "slow"


class _Harness:
    def __init__(self, validator=None, threshold: float = 0.3) -> None:
        self.policy = DesireReplyPolicy(threshold=threshold, base_desire=0.35)
        self.admission = AdmissionController()
        self.released: list[tuple[str, str]] = []
        self.gate = ReplyGate(
            self.policy, self.admission, self.release,
            validator=validator, desire_reduction=0.10,
        )

    async def release(self, sender_id: str, task_id: str) -> None:
        self.released.append((sender_id, task_id))
        self.admission.complete(sender_id, task_id)


# ── policy ───────────────────────────────────────────────────────────


def test_private_chat_is_mandatory() -> None:
    policy = DesireReplyPolicy()
    decision = policy.should_reply(IncomingMessage(sender_id="u1", text="hey"))
    assert decision.need_reply and decision.mandatory
    assert decision.conversation_id == "private_u1"


def test_mention_passes_but_is_not_mandatory() -> None:
    policy = DesireReplyPolicy()
    decision = policy.should_reply(_group_msg(mention=True))
    assert decision.need_reply is True
    assert decision.mandatory is False
    assert decision.probability == 1.0


def test_ignored_messages_raise_desire_until_reply() -> None:
    policy = DesireReplyPolicy(
        threshold=0.5, base_desire=0.3, ignored_step=0.1, fast_pace_penalty=0.0,
    )
    first = policy.should_reply(_group_msg("a"))
    assert first.need_reply is False
    assert first.state is not None and first.state.consecutive_ignored == 1
    policy.should_reply(_group_msg("b"))
    third = policy.should_reply(_group_msg("c"))
    assert third.need_reply is True
    policy.reset_conversation_state(third.conversation_id)
    assert policy.get_state(third.conversation_id).consecutive_ignored == 0


def test_question_bonus() -> None:
    policy = DesireReplyPolicy(threshold=0.45, base_desire=0.35, question_bonus=0.15)
    assert policy.should_reply(_group_msg("anyone know why?")).need_reply is True


def test_reduce_desire_and_recalculate() -> None:
    policy = DesireReplyPolicy(threshold=0.3, base_desire=0.35)
    decision = policy.should_reply(_group_msg())
    again = policy.reduce_desire_and_recalculate(decision.conversation_id, _group_msg(), 0.10)
    assert again.probability == pytest.approx(0.315)
    assert again.need_reply is True


# ── intervention validator ───────────────────────────────────────────


def test_parse_decision() -> None:
    result = parse_decision("noise " + _decision_xml(False, 0.8) + " trailing")
    assert result is not None
    assert result.need is False
    assert result.confidence == pytest.approx(0.8)
    assert result.reason == "short reason"


@pytest.mark.parametrize(
    "text",
    [
        "no block at all",
        "<sentra-decision><need>true</need><confidence>0.5</confidence></sentra-decision>",
        "<sentra-decision><need>true</need><reason>x</reason><confidence>1.5</confidence></sentra-decision>",
        "<sentra-decision><need>true</need><reason>x</reason><confidence>high</confidence></sentra-decision>",
    ],
)
def test_parse_decision_rejects_incomplete_or_invalid(text: str) -> None:
    assert parse_decision(text) is None


def test_intervention_prompt_mentions_sender_and_truncates() -> None:
    msg = IncomingMessage(
        sender_id="u1", sender_name="Ann", text="x" * 300, group_id="g1",
        self_id="bot", at_users=("bot",), extra={"images": ["a.png"]},
    )
    prompt = build_intervention_prompt(msg, 0.7, 0.65, ConversationState(message_count=4))
    assert "User Ann mentioned you" in prompt
    assert "x" * 200 + "..." in prompt
    assert "x" * 201 not in prompt
    assert "[Contains Image]" in prompt
    assert "**Chat Type**: group" in prompt


@pytest.mark.asyncio
async def test_validator_without_model_says_reply() -> None:
    validator = InterventionValidator(ScriptedProvider([]), model=None)
    result = await validator.validate(_group_msg(), 0.7, 0.65, ConversationState())
    assert result.need is True
    assert result.aborted is False


@pytest.mark.asyncio
async def test_only_near_threshold_skips_far_probabilities() -> None:
    provider = ScriptedProvider([])
    validator = InterventionValidator(provider, model="small", only_near_threshold=True)
    result = await validator.validate(_group_msg(), 0.95, 0.65, ConversationState())
    assert result.need is True
    assert provider.calls == []


@pytest.mark.asyncio
async def test_only_near_threshold_is_ignored_for_mentions() -> None:
    provider = ScriptedProvider([_decision_xml(False)])
    validator = InterventionValidator(provider, model="small", only_near_threshold=True)
    result = await validator.validate(_group_msg(mention=True), 1.0, 0.65, ConversationState())
    assert result.need is False
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_validator_repairs_malformed_output() -> None:
    provider = ScriptedProvider(["need: yes, because question"])
    repairer = FormatRepairer(ScriptedProvider([_decision_xml(True, 0.7)]))
    validator = InterventionValidator(provider, model="small", repairer=repairer)
    result = await validator.validate(_group_msg(), 0.7, 0.65, ConversationState())
    assert result.need is True
    assert result.aborted is False


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", ["", "garbage", LLMProviderError("down")])
async def test_validator_failures_abort(reply) -> None:
    validator = InterventionValidator(ScriptedProvider([reply]), model="small")
    result = await validator.validate(_group_msg(), 0.7, 0.65, ConversationState())
    assert result.aborted is True
    assert result.need is False


# ── gate ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_policy_skip_takes_no_slot() -> None:
    h = _Harness(threshold=0.9)
    outcome = await h.gate.evaluate(_group_msg())
    assert outcome.proceed is False
    assert outcome.task is None
    assert not h.admission.has_active("u1")
    assert h.released == []


@pytest.mark.asyncio
async def test_validator_timeout_skips_and_releases_once_without_reduction() -> None:
    validator = InterventionValidator(_SlowProvider(), model="slow", timeout=0.05)
    h = _Harness(validator=validator)

    outcome = await h.gate.evaluate(_group_msg())

    assert outcome.proceed is False
    assert len(h.released) == 1
    assert not h.admission.has_active("u1")
    state = h.policy.get_state("group_g1_sender_u1")
    assert state.last_probability == pytest.approx(0.35)
    assert state.consecutive_ignored == 0


@pytest.mark.asyncio
async def test_confident_no_on_mention_skips_without_reduction() -> None:
    validator = _FixedValidator(InterventionResult(False, "spam", 0.9))
    h = _Harness(validator=validator)
    outcome = await h.gate.evaluate(_group_msg(mention=True))
    assert outcome.proceed is False
    assert validator.calls == 1
    assert len(h.released) == 1
    assert h.policy.get_state("group_g1_sender_u1").last_probability == 1.0


@pytest.mark.asyncio
async def test_confident_no_reduces_desire_and_may_still_reply() -> None:
    h = _Harness(validator=_FixedValidator(InterventionResult(False, "meh", 0.6)), threshold=0.3)
    outcome = await h.gate.evaluate(_group_msg())
    assert outcome.proceed is True
    assert outcome.decision.probability == pytest.approx(0.315)
    assert outcome.task is not None and outcome.task.is_active
    assert h.released == []


@pytest.mark.asyncio
async def test_confident_no_below_threshold_after_reduction_skips() -> None:
    h = _Harness(validator=_FixedValidator(InterventionResult(False, "meh", 0.6)), threshold=0.34)
    outcome = await h.gate.evaluate(_group_msg())
    assert outcome.proceed is False
    assert len(h.released) == 1
    assert not h.admission.has_active("u1")


@pytest.mark.asyncio
async def test_validator_yes_proceeds() -> None:
    validator = _FixedValidator(InterventionResult(True, "question", 0.9))
    h = _Harness(validator=validator)
    outcome = await h.gate.evaluate(_group_msg())
    assert outcome.proceed is True
    assert h.admission.has_active("u1")
    assert h.released == []


@pytest.mark.asyncio
async def test_mandatory_messages_bypass_validator() -> None:
    validator = _FixedValidator(InterventionResult(False, "no", 0.9))
    h = _Harness(validator=validator)
    outcome = await h.gate.evaluate(IncomingMessage(sender_id="u1", text="hi"))
    assert outcome.proceed is True
    assert validator.calls == 0


@pytest.mark.asyncio
async def test_busy_sender_gets_queued_task() -> None:
    h = _Harness()
    first = await h.gate.evaluate(_group_msg())
    second = await h.gate.evaluate(_group_msg("again"))
    assert first.proceed is True
    assert second.proceed is False
    assert second.task is not None and not second.task.is_active
    assert h.admission.queued_count("u1") == 1
