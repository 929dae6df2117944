"""Agent core module."""

from sentra_agent.agent.admission import AdmissionController, Task
from sentra_agent.agent.bundler import MessageBundler
from sentra_agent.agent.loop import AgentLoop
from sentra_agent.agent.orchestrator import ConversationOrchestrator, TurnState
from sentra_agent.agent.reply_gate import GateOutcome, ReplyGate
from sentra_agent.agent.responder import ChatAttemptResult, ResponseGenerator

__all__ = [
    "AdmissionController",
    "AgentLoop",
    "ChatAttemptResult",
    "ConversationOrchestrator",
    "GateOutcome",
    "MessageBundler",
    "ReplyGate",
    "ResponseGenerator",
    "Task",
    "TurnState",
]
