"""Reply gate: policy decision, admission and optional intervention in one step."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from sentra_agent.agent.admission import AdmissionController, Task
from sentra_agent.agent.intervention import InterventionValidator
from sentra_agent.agent.reply_policy import ReplyDecision, ReplyPolicy
from sentra_agent.bus.events import IncomingMessage

ReleaseFn = Callable[[str, str], Awaitable[None]]


@dataclass
class GateOutcome:
    proceed: bool
    decision: ReplyDecision
    task: Task | None = None


class ReplyGate:
    """Decides whether a message goes on to the reply pipeline.

    Once a task has been admitted, every path that does not proceed hands the
    slot back through ``release`` exactly once.  ``release`` is the agent
    loop's cleanup, so promoted and deferred work is picked up from there.
    """

    def __init__(
        self,
        policy: ReplyPolicy,
        admission: AdmissionController,
        release: ReleaseFn,
        validator: InterventionValidator | None = None,
        desire_reduction: float = 0.10,
    ):
        self.policy = policy
        self.admission = admission
        self.release = release
        self.validator = validator
        self.desire_reduction = desire_reduction

    async def _skip(self, decision: ReplyDecision, task: Task, why: str) -> GateOutcome:
        logger.info(f"Not replying to {task.sender_id}: {why}")
        await self.release(task.sender_id, task.id)
        return GateOutcome(False, decision, None)

    async def evaluate(self, msg: IncomingMessage) -> GateOutcome:
        decision = self.policy.should_reply(msg)
        logger.info(
            f"Reply decision for {msg.sender_id}: {decision.reason} "
            f"(mandatory={decision.mandatory}, p={decision.probability:.1%})"
        )
        if not decision.need_reply:
            return GateOutcome(False, decision, None)

        task = self.admission.admit(msg.sender_id, msg)
        if not task.is_active:
            # promoted and run by the loop once the active task completes
            return GateOutcome(False, decision, task)

        if self.validator is None or decision.mandatory or decision.state is None:
            return GateOutcome(True, decision, task)

        result = await self.validator.validate(
            msg, decision.probability, decision.threshold, decision.state
        )
        if result.need:
            logger.debug(f"Intervention confirmed reply: {result.reason} ({result.confidence})")
            return GateOutcome(True, decision, task)
        if result.aborted:
            return await self._skip(decision, task, f"intervention aborted ({result.reason})")
        if msg.is_explicit_mention:
            return await self._skip(decision, task, f"intervention said no ({result.reason})")

        recalculated = self.policy.reduce_desire_and_recalculate(
            decision.conversation_id, msg, self.desire_reduction
        )
        if not recalculated.need_reply:
            return await self._skip(
                recalculated, task,
                f"p={recalculated.probability:.1%} after {self.desire_reduction:.0%} desire reduction",
            )
        logger.info(
            f"Replying anyway: p={recalculated.probability:.1%} still above threshold "
            f"after {self.desire_reduction:.0%} desire reduction"
        )
        return GateOutcome(True, recalculated, task)
