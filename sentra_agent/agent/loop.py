"""Agent loop: the core processing engine.

Wires transport envelopes through bundling, admission, the reply gate and
the orchestrator, and chains follow-up work when a turn finishes:

    message -> history (pending) -> bundle? / busy? (defer) -> gate
            -> bundle -> orchestrator turn -> release -> promoted / deferred
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from loguru import logger

from sentra_agent.agent.admission import AdmissionController
from sentra_agent.agent.bundler import MessageBundler
from sentra_agent.agent.format_repair import FormatRepairer
from sentra_agent.agent.intervention import InterventionValidator
from sentra_agent.agent.orchestrator import ConversationOrchestrator
from sentra_agent.agent.reply_gate import ReplyGate
from sentra_agent.agent.reply_policy import DesireReplyPolicy, ReplyPolicy
from sentra_agent.agent.responder import ResponseGenerator
from sentra_agent.bus.events import IncomingMessage
from sentra_agent.cache.message_cache import MessageCache
from sentra_agent.channels.sender import SendAndWait
from sentra_agent.channels.websocket import WebSocketClient
from sentra_agent.engine.base import ReasoningEngine
from sentra_agent.engine.direct import DirectReplyEngine
from sentra_agent.history.manager import GroupHistoryManager
from sentra_agent.providers.base import LLMProvider
from sentra_agent.providers.litellm_provider import LiteLLMProvider
from sentra_agent.settings import SentraSettings


def load_system_prompt(settings: SentraSettings) -> str:
    """Agent preset file when present, else ``SYSTEM_PROMPT``."""
    preset = Path(settings.agent_presets_dir) / settings.agent_preset_file
    try:
        text = preset.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return settings.system_prompt
    except OSError as e:
        logger.warning(f"Could not read agent preset {preset}: {e}")
        return settings.system_prompt
    return "\n\n".join(p for p in (settings.system_prompt, text) if p)


class AgentLoop:
    """Turn scheduling for every sender.

    A sender has at most one bundle open and one task active.  Messages that
    arrive while the task runs are deferred; when the task ends the promoted
    queued task runs first, then the deferred messages are merged and go
    back through the reply gate.
    """

    def __init__(
        self,
        engine: ReasoningEngine,
        responder: ResponseGenerator,
        history: GroupHistoryManager,
        policy: ReplyPolicy,
        bundler: MessageBundler,
        admission: AdmissionController | None = None,
        validator: InterventionValidator | None = None,
        transport: WebSocketClient | None = None,
        send_and_wait: SendAndWait | None = None,
        message_cache: MessageCache | None = None,
        system_prompt: Any = "",
        desire_reduction: float = 0.10,
    ):
        self.history = history
        self.policy = policy
        self.bundler = bundler
        self.admission = admission or AdmissionController()
        self.transport = transport
        self.message_cache = message_cache
        self._send_and_wait = send_and_wait

        self.gate = ReplyGate(
            policy, self.admission, self.release,
            validator=validator, desire_reduction=desire_reduction,
        )
        self.orchestrator = ConversationOrchestrator(
            engine=engine,
            responder=responder,
            history=history,
            policy=policy,
            send_and_wait=self.send_and_wait,
            message_cache=message_cache,
            system_prompt=system_prompt,
        )

    @classmethod
    def from_settings(
        cls,
        settings: SentraSettings,
        provider: LLMProvider | None = None,
        engine: ReasoningEngine | None = None,
    ) -> "AgentLoop":
        provider = provider or LiteLLMProvider(
            api_key=settings.api_key or None,
            api_base=settings.api_base_url or None,
            default_model=settings.main_ai_model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
        )
        repairer = None
        if settings.enable_format_repair:
            repairer = FormatRepairer(provider, model=settings.repair_ai_model or settings.main_ai_model)

        responder = ResponseGenerator(
            provider,
            model=settings.main_ai_model,
            max_retries=settings.max_response_retries,
            max_response_tokens=settings.max_response_tokens,
            token_count_model=settings.token_count_model,
            strict_format_check=settings.enable_strict_format_check,
            repairer=repairer,
        )
        policy = DesireReplyPolicy(
            threshold=settings.reply_threshold,
            base_desire=settings.reply_base_desire,
            ignored_step=settings.reply_ignored_step,
            question_bonus=settings.reply_question_bonus,
            fast_pace_penalty=settings.reply_fast_pace_penalty,
        )
        validator = None
        if settings.intervention_enabled:
            validator = InterventionValidator(
                provider,
                model=settings.reply_intervention_model,
                timeout=settings.intervention_timeout_seconds,
                only_near_threshold=settings.reply_intervention_only_near_threshold,
                threshold_distance=settings.reply_intervention_threshold_distance,
                repairer=repairer,
            )
        elif settings.enable_reply_intervention:
            logger.warning("ENABLE_REPLY_INTERVENTION is set but REPLY_INTERVENTION_MODEL is empty")

        transport = WebSocketClient(
            settings.ws_url,
            request_timeout=settings.request_timeout_seconds,
            reconnect_interval=settings.reconnect_interval_seconds,
            max_reconnect_attempts=settings.ws_max_reconnect_attempts,
        )
        loop = cls(
            engine=engine or DirectReplyEngine(),
            responder=responder,
            history=GroupHistoryManager(
                max_pairs=settings.max_conversation_pairs,
                max_pending=settings.max_pending_messages,
            ),
            policy=policy,
            bundler=MessageBundler(settings.bundle_window_seconds, settings.bundle_max_seconds),
            validator=validator,
            transport=transport,
            message_cache=MessageCache(settings.message_cache_dir, settings.message_cache_ttl_hours),
            system_prompt=lambda: load_system_prompt(settings),
            desire_reduction=settings.reply_intervention_desire_reduction,
        )
        transport.on_payload = loop.handle_envelope
        return loop

    # ── transport ────────────────────────────────────────────────────

    async def send_and_wait(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        if self._send_and_wait is not None:
            return await self._send_and_wait(payload)
        if self.transport is not None:
            return await self.transport.send_and_wait(payload)
        logger.warning("No transport configured, dropping outbound message")
        return None

    async def handle_envelope(self, payload: dict[str, Any]) -> None:
        kind = payload.get("type")
        try:
            if kind == "welcome":
                logger.info(f"Connected: {payload.get('message', '')}")
            elif kind == "pong":
                return
            elif kind == "shutdown":
                logger.warning(f"Adapter shutting down: {payload.get('message', '')}")
                cancelled = self.orchestrator.cancel_all()
                if cancelled:
                    logger.info(f"Cancelled {cancelled} live turn(s), replies will not be sent")
            elif kind == "result":
                logger.debug(f"<< result {payload.get('requestId')} {'OK' if payload.get('ok') else 'ERR'}")
            elif kind == "message":
                data = payload.get("data")
                if not isinstance(data, dict):
                    logger.warning("message envelope without data, ignored")
                    return
                msg = IncomingMessage.from_payload(data)
                logger.debug(f"<< message {msg.chat_type} {msg.group_id or msg.sender_id}")
                await self.on_message(msg)
            else:
                logger.debug(f"Unhandled envelope type: {kind!r}")
        except Exception:
            logger.exception(f"Failed to handle {kind!r} envelope")

    # ── scheduling ───────────────────────────────────────────────────

    async def on_message(self, msg: IncomingMessage) -> None:
        sender = msg.sender_id
        if not sender:
            logger.debug("Message without sender_id ignored")
            return
        await self.history.add_pending_message(msg.history_key, msg.content, msg)

        if self.bundler.append(sender, msg):
            return
        if self.admission.has_active(sender):
            count = self.admission.defer(sender, msg)
            logger.debug(f"Sender {sender} busy, message deferred ({count} waiting)")
            return
        await self._gate_and_run(msg)

    async def _gate_and_run(self, msg: IncomingMessage) -> None:
        outcome = await self.gate.evaluate(msg)
        if not outcome.proceed or outcome.task is None:
            return
        bundled = await self.bundler.collect(msg.sender_id, msg)
        await self.handle_one_message(bundled, outcome.task.id)

    async def handle_one_message(self, msg: IncomingMessage, task_id: str) -> None:
        try:
            await self.orchestrator.run_turn(msg, task_id)
        finally:
            await self.release(msg.sender_id, task_id)

    async def release(self, sender_id: str, task_id: str) -> None:
        """Free the sender's slot, then run whatever was waiting on it."""
        nxt = self.admission.complete(sender_id, task_id)
        if nxt is not None:
            bundled = await self.bundler.collect(sender_id, nxt.msg)
            await self.handle_one_message(bundled, nxt.id)

        if self.admission.has_active(sender_id):
            return
        deferred = self.admission.drain_deferred(sender_id)
        if deferred is not None:
            logger.info(f"Re-evaluating deferred messages for {sender_id}")
            await self._gate_and_run(deferred)
        logger.debug(f"Task {task_id} cleanup done for {sender_id}")

    async def run(self) -> None:
        if self.transport is None:
            raise RuntimeError("AgentLoop.run() needs a transport")
        if self.message_cache is not None:
            self.message_cache.cleanup_expired()
        logger.info(f"Agent loop starting, adapter at {self.transport.url}")
        await self.transport.start()

    async def stop(self) -> None:
        if self.transport is not None:
            await self.transport.stop()
