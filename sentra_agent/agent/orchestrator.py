"""Conversation orchestrator: one reply turn driven by the reasoning engine.

The engine streams ``start`` / ``judge`` / ``plan`` / ``args`` /
``tool_result`` / ``summary`` events.  The orchestrator turns them into
model calls, outbound messages and history pairs::

    AWAITING_START -> JUDGING -> NO_TOOL_REPLY ----------------> DONE
                              \\-> TOOL_LOOP -> SUMMARIZING --> DONE
    any state -> CANCELLED (user superseded the turn)
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from sentra_agent.agent.reply_policy import ReplyPolicy
from sentra_agent.agent.responder import ResponseGenerator
from sentra_agent.bus.events import IncomingMessage
from sentra_agent.cache.message_cache import MessageCache
from sentra_agent.channels.sender import SendAndWait, smart_send
from sentra_agent.engine.base import ReasoningEngine
from sentra_agent.engine.events import StreamEvent
from sentra_agent.history.manager import GroupHistoryManager
from sentra_agent.protocol.codec import (
    build_no_tool_context,
    build_result_block,
    build_user_question_block,
    convert_history_to_protocol_format,
)


class TurnState(str, Enum):
    AWAITING_START = "awaiting_start"
    JUDGING = "judging"
    NO_TOOL_REPLY = "no_tool_reply"
    TOOL_LOOP = "tool_loop"
    SUMMARIZING = "summarizing"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass
class TurnContext:
    msg: IncomingMessage
    task_id: str
    group_id: str
    sender_id: str
    conversation_id: str
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: TurnState = TurnState.AWAITING_START
    pair_id: str | None = None
    user_content: str = ""
    cancelled: bool = False
    has_replied: bool = False
    initial_count: int = 0
    pair_opened: bool = False
    result_blocks: list[str] = field(default_factory=list)
    llm_messages: list[dict[str, Any]] = field(default_factory=list)

    @property
    def tag(self) -> str:
        return f"{self.group_id}/{self.sender_id}"


def build_objective(messages: list[IncomingMessage], fallback: IncomingMessage) -> str:
    """All messages of the sender in order, each prefixed with its time."""
    if not messages:
        return fallback.content
    parts = []
    for m in messages:
        parts.append(f"[{m.time_str}] {m.content}" if m.time_str else m.content)
    return "\n\n".join(parts)


def _as_event(ev: StreamEvent | dict[str, Any]) -> StreamEvent:
    return ev if isinstance(ev, StreamEvent) else StreamEvent.from_dict(ev)


class ConversationOrchestrator:
    """Runs reply turns; at most one live turn per sender."""

    def __init__(
        self,
        engine: ReasoningEngine,
        responder: ResponseGenerator,
        history: GroupHistoryManager,
        policy: ReplyPolicy,
        send_and_wait: SendAndWait,
        message_cache: MessageCache | None = None,
        system_prompt: str | Callable[[], str] = "",
        overlays: dict[str, Any] | None = None,
    ):
        self.engine = engine
        self.responder = responder
        self.history = history
        self.policy = policy
        self.send_and_wait = send_and_wait
        self.message_cache = message_cache
        self.system_prompt = system_prompt
        self.overlays = overlays or {}
        self._live: dict[str, TurnContext] = {}

    # ── public API ───────────────────────────────────────────────────

    def cancel(self, sender_id: str) -> bool:
        """Flag the sender's live turn; it stops before its next send or save."""
        ctx = self._live.get(sender_id)
        if ctx is None:
            return False
        ctx.cancelled = True
        logger.info(f"[{ctx.tag}] turn cancellation requested")
        return True

    def cancel_all(self) -> int:
        """Flag every live turn; returns how many were flagged."""
        return sum(self.cancel(sender_id) for sender_id in list(self._live))

    def live_state(self, sender_id: str) -> TurnState | None:
        ctx = self._live.get(sender_id)
        return ctx.state if ctx else None

    async def run_turn(self, msg: IncomingMessage, task_id: str = "") -> TurnState:
        ctx = TurnContext(
            msg=msg,
            task_id=task_id,
            group_id=msg.history_key,
            sender_id=msg.sender_id,
            conversation_id=msg.conversation_id,
        )
        self._live[ctx.sender_id] = ctx
        try:
            await self._run(ctx)
        except Exception:
            logger.exception(f"[{ctx.tag}] turn failed")
            await self._cancel_pair(ctx, "exception")
            ctx.state = TurnState.DONE
        finally:
            if not ctx.pair_opened:
                await self.history.finish_processing(ctx.group_id, ctx.sender_id)
            if self._live.get(ctx.sender_id) is ctx:
                del self._live[ctx.sender_id]
        logger.debug(f"[{ctx.tag}] turn {ctx.turn_id[:8]} ended in {ctx.state.value}")
        return ctx.state

    # ── helpers ──────────────────────────────────────────────────────

    def _sender_messages(self, ctx: TurnContext) -> list[IncomingMessage]:
        return self.history.get_pending_messages_by_sender(ctx.group_id, ctx.sender_id)

    def _latest(self, ctx: TurnContext) -> IncomingMessage:
        messages = self._sender_messages(ctx)
        return messages[-1] if messages else ctx.msg

    def _current_user_block(self, ctx: TurnContext) -> str:
        """Pending-messages context (if any) followed by the latest question."""
        messages = self._sender_messages(ctx)
        if len(messages) > ctx.initial_count:
            logger.info(f"[{ctx.tag}] {len(messages) - ctx.initial_count} new message(s) picked up")
        latest = messages[-1] if messages else ctx.msg
        question = build_user_question_block(latest)
        pending = self.history.get_pending_messages_context(ctx.group_id, ctx.sender_id)
        return f"{pending}\n\n{question}" if pending else question

    def _system_content(self) -> str:
        prompt = self.system_prompt
        return prompt() if callable(prompt) else prompt

    def _tracked_send_and_wait(self, ctx: TurnContext) -> SendAndWait:
        async def _send(payload: dict[str, Any]) -> dict[str, Any] | None:
            payload.setdefault("requestId", f"{ctx.turn_id}:{uuid.uuid4().hex}")
            return await self.send_and_wait(payload)
        return _send

    async def _open_pair(self, ctx: TurnContext) -> None:
        if ctx.pair_id is None:
            ctx.pair_id = await self.history.start_assistant_message(ctx.group_id, ctx.sender_id)
            ctx.pair_opened = True
            logger.debug(f"[{ctx.tag}] pair {ctx.pair_id[:8]} opened")

    async def _cancel_pair(self, ctx: TurnContext, why: str) -> None:
        if ctx.pair_id is None:
            return
        logger.debug(f"[{ctx.tag}] pair {ctx.pair_id[:8]} cancelled ({why})")
        await self.history.cancel_conversation_pair_by_id(ctx.group_id, ctx.pair_id)
        ctx.pair_id = None

    async def _finish_pair(self, ctx: TurnContext) -> None:
        if ctx.pair_id is None:
            logger.warning(f"[{ctx.tag}] nothing to save, no open pair")
            return
        saved = await self.history.finish_conversation_pair(
            ctx.group_id, ctx.user_content, pair_id=ctx.pair_id
        )
        if not saved:
            logger.warning(f"[{ctx.tag}] pair {ctx.pair_id[:8]} not saved, history inconsistent")
        ctx.pair_id = None
        self.policy.reset_conversation_state(ctx.conversation_id)

    async def _reply(self, ctx: TurnContext, content: str, stage: str) -> bool:
        """LLM call, record and send one reply; False when the turn must end."""
        ctx.llm_messages.append({"role": "user", "content": content})
        result = await self.responder.chat_with_retry(
            ctx.llm_messages, correlation_id=ctx.group_id
        )
        if not result.success or result.response is None:
            logger.error(f"[{ctx.tag}] {stage}: reply failed ({result.reason}), retries={result.retries}")
            await self._cancel_pair(ctx, "reply failed")
            return False
        logger.info(f"[{ctx.tag}] {stage}: reply ready, retries={result.retries}")

        await self.history.append_to_assistant_message(ctx.group_id, result.response, pair_id=ctx.pair_id)

        if ctx.cancelled:
            logger.info(f"[{ctx.tag}] {stage}: cancelled, not sending")
            await self._cancel_pair(ctx, "cancelled")
            ctx.state = TurnState.CANCELLED
            return False

        await smart_send(
            self._latest(ctx),
            result.response,
            self._tracked_send_and_wait(ctx),
            allow_reply=not ctx.has_replied,
        )
        ctx.has_replied = True
        ctx.llm_messages.append({"role": "assistant", "content": result.response})
        return True

    # ── the turn ─────────────────────────────────────────────────────

    async def _run(self, ctx: TurnContext) -> None:
        await self.history.start_processing_messages(ctx.group_id, ctx.sender_id)
        messages = self._sender_messages(ctx)
        ctx.initial_count = len(messages)
        objective = build_objective(messages, ctx.msg)

        raw_history = self.history.get_conversation_history(ctx.group_id)
        ctx.user_content = self._current_user_block(ctx)
        engine_conversation = [
            *convert_history_to_protocol_format(raw_history),
            {"role": "user", "content": ctx.user_content},
        ]
        system = self._system_content()
        ctx.llm_messages = [{"role": "system", "content": system}] if system else []
        ctx.llm_messages.extend(raw_history)
        logger.debug(
            f"[{ctx.tag}] context: {len(raw_history)} history message(s), "
            f"{len(engine_conversation)} engine message(s)"
        )

        async for raw_ev in self.engine.stream(objective, engine_conversation, self.overlays):
            ev = _as_event(raw_ev)
            logger.debug(f"[{ctx.tag}] engine event {ev.type}")

            if ev.type == "start":
                await self._on_start(ctx, ev)
            elif ev.type == "judge":
                if not ev.need:
                    await self._on_no_tool(ctx)
                    return
                ctx.state = TurnState.TOOL_LOOP
            elif ev.type == "plan":
                plan = ev.get("plan") or {}
                steps = plan.get("steps") if isinstance(plan, dict) else plan
                logger.info(f"[{ctx.tag}] plan: {steps}")
            elif ev.type in ("args", "args_group"):
                continue
            elif ev.is_tool_result:
                ctx.state = TurnState.TOOL_LOOP
                if not await self._on_tool_result(ctx, ev):
                    if ctx.state is not TurnState.CANCELLED:
                        ctx.state = TurnState.DONE
                    return
            elif ev.type == "summary":
                await self._on_summary(ctx, ev)
                return

        if ctx.pair_id is not None:
            logger.warning(f"[{ctx.tag}] engine stream ended without summary")
            if ctx.cancelled:
                await self._cancel_pair(ctx, "cancelled")
                ctx.state = TurnState.CANCELLED
                return
            await self._finish_pair(ctx)
        if ctx.state is not TurnState.CANCELLED:
            ctx.state = TurnState.DONE

    async def _on_start(self, ctx: TurnContext, ev: StreamEvent) -> None:
        ctx.state = TurnState.JUDGING
        messages = self._sender_messages(ctx)
        if ev.run_id and self.message_cache is not None:
            await self.message_cache.save(ev.run_id, messages[-1] if messages else ctx.msg)
        if len(messages) > ctx.initial_count:
            logger.info(f"[{ctx.tag}] messages grew {ctx.initial_count} -> {len(messages)} before judge")

    async def _on_no_tool(self, ctx: TurnContext) -> None:
        ctx.state = TurnState.NO_TOOL_REPLY
        await self._open_pair(ctx)
        latest = self._latest(ctx)
        ctx.user_content = f"{build_no_tool_context(latest.content)}\n\n{self._current_user_block(ctx)}"
        if not await self._reply(ctx, ctx.user_content, "judge"):
            if ctx.state is not TurnState.CANCELLED:
                ctx.state = TurnState.DONE
            return
        await self._finish_pair(ctx)
        ctx.state = TurnState.DONE

    async def _on_tool_result(self, ctx: TurnContext, ev: StreamEvent) -> bool:
        await self._open_pair(ctx)
        try:
            result_xml = build_result_block(ev)
        except Exception as e:
            logger.warning(f"[{ctx.tag}] result block failed ({e}), falling back to JSON")
            result_xml = json.dumps(ev.to_dict(), ensure_ascii=False, default=str)
        ctx.result_blocks.append(result_xml)
        # results so far, then the question rebuilt from the latest messages
        ctx.user_content = "\n\n".join([*ctx.result_blocks, self._current_user_block(ctx)])
        return await self._reply(ctx, ctx.user_content, "tool_result")

    async def _on_summary(self, ctx: TurnContext, ev: StreamEvent) -> None:
        ctx.state = TurnState.SUMMARIZING
        logger.info(f"[{ctx.tag}] summary: {ev.get('summary')}")
        if ctx.cancelled:
            logger.info(f"[{ctx.tag}] cancelled, not saving pair")
            await self._cancel_pair(ctx, "cancelled")
            ctx.state = TurnState.CANCELLED
            return
        await self._finish_pair(ctx)
        ctx.state = TurnState.DONE
