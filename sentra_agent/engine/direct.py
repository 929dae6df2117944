"""Built-in engine that answers without tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any
from uuid import uuid4

from sentra_agent.engine.events import StreamEvent


class DirectReplyEngine:
    """Emits ``start`` then ``judge need=false`` for every objective.

    Lets the gateway run without an external tool planner; the orchestrator
    then replies straight from the main model.
    """

    async def stream(
        self,
        objective: str,
        conversation: list[dict[str, Any]],
        overlays: dict[str, Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        yield StreamEvent("start", {"runId": uuid4().hex, "objective": objective})
        yield StreamEvent("judge", {"need": False, "reason": "direct reply engine"})
