"""Reasoning engine interface and events."""

from sentra_agent.engine.base import ReasoningEngine
from sentra_agent.engine.direct import DirectReplyEngine
from sentra_agent.engine.events import StreamEvent

__all__ = ["DirectReplyEngine", "ReasoningEngine", "StreamEvent"]
