"""Event types for inbound chat messages."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any

# Payload keys mapped onto dedicated fields; everything else lands in ``extra``.
_KNOWN_KEYS = frozenset({
    "sender_id", "text", "summary", "group_id", "sender_name",
    "message_id", "time_str", "time", "at_users", "self_id", "type",
})


@dataclass(frozen=True)
class IncomingMessage:
    """Message received from the chat transport. Immutable once received."""

    sender_id: str
    text: str = ""
    summary: str = ""
    group_id: str | None = None
    sender_name: str = ""
    message_id: str | None = None
    time_str: str = ""
    timestamp: float = field(default_factory=time.time)
    at_users: tuple[str, ...] = ()  # mentioned ids
    self_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)  # platform-specific fields

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "IncomingMessage":
        """Build a message from a transport ``message`` envelope's ``data``."""
        group_id = data.get("group_id")
        raw_time = data.get("time")
        return cls(
            sender_id=str(data.get("sender_id") or ""),
            text=data.get("text") if isinstance(data.get("text"), str) else "",
            summary=data.get("summary") if isinstance(data.get("summary"), str) else "",
            group_id=str(group_id) if group_id not in (None, "") else None,
            sender_name=str(data.get("sender_name") or ""),
            message_id=str(data["message_id"]) if data.get("message_id") is not None else None,
            time_str=str(data.get("time_str") or ""),
            timestamp=float(raw_time) if isinstance(raw_time, (int, float)) else time.time(),
            at_users=tuple(str(u) for u in data.get("at_users") or ()),
            self_id=str(data["self_id"]) if data.get("self_id") is not None else None,
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_payload(self) -> dict[str, Any]:
        """Rebuild a plain dict (the shape fed into protocol blocks)."""
        payload: dict[str, Any] = {
            "type": self.chat_type,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "text": self.text,
            "summary": self.summary,
            "time_str": self.time_str,
        }
        if self.group_id is not None:
            payload["group_id"] = self.group_id
        if self.message_id is not None:
            payload["message_id"] = self.message_id
        if self.at_users:
            payload["at_users"] = list(self.at_users)
        if self.self_id is not None:
            payload["self_id"] = self.self_id
        payload.update(self.extra)
        return payload

    @property
    def chat_type(self) -> str:
        return "group" if self.group_id else "private"

    @property
    def history_key(self) -> str:
        """Key used by the history manager (one history per group / private chat)."""
        if self.group_id:
            return f"G:{self.group_id}"
        return f"U:{self.sender_id}"

    @property
    def conversation_id(self) -> str:
        """Key used by the reply-desire model (per sender inside a group)."""
        if self.group_id:
            return f"group_{self.group_id}_sender_{self.sender_id}"
        return f"private_{self.sender_id}"

    @property
    def is_explicit_mention(self) -> bool:
        return bool(self.group_id) and self.self_id is not None and self.self_id in self.at_users

    @property
    def content(self) -> str:
        """First non-empty of text / summary, stripped."""
        return self.text.strip() or self.summary.strip()

    @property
    def has_image(self) -> bool:
        return bool(self.extra.get("images") or self.extra.get("image"))

    @property
    def has_file(self) -> bool:
        return bool(self.extra.get("files") or self.extra.get("file"))


def merge_messages(messages: list[IncomingMessage]) -> IncomingMessage:
    """Merge several messages from one sender into a single logical turn.

    Text parts are newline-joined in arrival order, skipping empties.
    Routing fields come from the *first* message.
    """
    if not messages:
        raise ValueError("merge_messages needs at least one message")
    base = messages[0]
    parts = [m.content for m in messages if m.content]
    if not parts:
        return base
    combined = "\n".join(parts)
    return replace(base, text=combined, summary=combined)
