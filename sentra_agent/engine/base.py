"""Reasoning engine interface."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol

from sentra_agent.engine.events import StreamEvent


class ReasoningEngine(Protocol):
    """Async producer of a finite, non-restartable sequence of stream events."""

    def stream(
        self,
        objective: str,
        conversation: list[dict[str, Any]],
        overlays: dict[str, Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        ...
