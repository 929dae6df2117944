"""Stream events produced by the reasoning engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

EventType = Literal[
    "start",
    "judge",
    "plan",
    "args",
    "args_group",
    "tool_result",
    "tool_result_group",
    "summary",
]

EVENT_TYPES: frozenset[str] = frozenset({
    "start", "judge", "plan", "args", "args_group",
    "tool_result", "tool_result_group", "summary",
})


@dataclass(frozen=True)
class StreamEvent:
    """One tagged event of a reasoning run.

    Transient: consumed in emission order and never persisted directly;
    only the XML derived from it is stored.
    """

    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StreamEvent":
        """Accept the engine's flat ``{"type": ..., **fields}`` dicts."""
        payload = {k: v for k, v in data.items() if k != "type"}
        return cls(type=str(data.get("type") or ""), payload=payload)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **self.payload}

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    @property
    def run_id(self) -> str | None:
        value = self.payload.get("runId")
        return str(value) if value else None

    @property
    def need(self) -> bool:
        return bool(self.payload.get("need"))

    @property
    def is_tool_result(self) -> bool:
        return self.type in ("tool_result", "tool_result_group")
