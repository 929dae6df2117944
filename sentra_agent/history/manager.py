"""In-memory conversation history per group / private chat.

Each history key (``G:<group>`` or ``U:<user>``) holds:

- pending messages not yet picked up by a turn,
- per-sender messages currently being processed,
- open conversation pairs (user content + assistant reply under construction),
- the last ``max_pairs`` finished pairs, replayed as LLM context.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from sentra_agent.bus.events import IncomingMessage
from sentra_agent.protocol.codec import build_pending_messages_block


@dataclass
class ConversationPair:
    pair_id: str
    sender_id: str = ""
    user_content: str = ""
    assistant_content: str = ""
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    def to_messages(self) -> list[dict[str, Any]]:
        return [
            {"role": "user", "content": self.user_content},
            {"role": "assistant", "content": self.assistant_content},
        ]


@dataclass
class _GroupHistory:
    pending: list[IncomingMessage] = field(default_factory=list)
    processing: dict[str, list[IncomingMessage]] = field(default_factory=dict)
    open_pairs: dict[str, ConversationPair] = field(default_factory=dict)
    pairs: deque[ConversationPair] = field(default_factory=deque)


class GroupHistoryManager:
    def __init__(self, max_pairs: int = 20, max_pending: int = 50):
        self.max_pairs = max(1, max_pairs)
        self.max_pending = max(1, max_pending)
        self._groups: dict[str, _GroupHistory] = {}
        self._lock = asyncio.Lock()

    def _group(self, group_id: str) -> _GroupHistory:
        group = self._groups.get(group_id)
        if group is None:
            group = _GroupHistory(pairs=deque(maxlen=self.max_pairs))
            self._groups[group_id] = group
        return group

    # ── pending / processing messages ────────────────────────────────

    async def add_pending_message(self, group_id: str, summary: str, msg: IncomingMessage) -> None:
        async with self._lock:
            group = self._group(group_id)
            group.pending.append(msg)
            overflow = len(group.pending) - self.max_pending
            if overflow > 0:
                del group.pending[:overflow]
                logger.debug(f"Pending messages for {group_id} trimmed by {overflow}")
        logger.debug(f"Pending message for {group_id}: {summary[:60]!r}")

    async def start_processing_messages(self, group_id: str, sender_id: str) -> int:
        """Move the sender's pending messages into its processing list."""
        async with self._lock:
            group = self._group(group_id)
            mine = [m for m in group.pending if m.sender_id == sender_id]
            if mine:
                group.pending = [m for m in group.pending if m.sender_id != sender_id]
                group.processing.setdefault(sender_id, []).extend(mine)
            return len(mine)

    async def finish_processing(self, group_id: str, sender_id: str) -> int:
        """Drop the sender's processing messages for a turn that saved no pair."""
        async with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                return 0
            dropped = group.processing.pop(sender_id, [])
        if dropped:
            logger.debug(f"Released {len(dropped)} processed message(s) of {sender_id} in {group_id}")
        return len(dropped)

    def get_pending_messages_by_sender(self, group_id: str, sender_id: str) -> list[IncomingMessage]:
        """Processing plus still-pending messages of one sender, oldest first."""
        group = self._groups.get(group_id)
        if group is None:
            return []
        processing = group.processing.get(sender_id, [])
        pending = [m for m in group.pending if m.sender_id == sender_id]
        return [*processing, *pending]

    def get_pending_messages_context(self, group_id: str, sender_id: str) -> str | None:
        """Earlier messages of the sender (all but the latest) as a pending-messages block."""
        messages = self.get_pending_messages_by_sender(group_id, sender_id)
        return build_pending_messages_block(messages[:-1])

    # ── conversation pairs ───────────────────────────────────────────

    def get_conversation_history(self, group_id: str) -> list[dict[str, Any]]:
        group = self._groups.get(group_id)
        if group is None:
            return []
        history: list[dict[str, Any]] = []
        for pair in group.pairs:
            history.extend(pair.to_messages())
        return history

    def _resolve_pair(self, group: _GroupHistory, pair_id: str | None) -> ConversationPair | None:
        if pair_id is not None:
            return group.open_pairs.get(pair_id)
        if not group.open_pairs:
            return None
        return next(reversed(group.open_pairs.values()))

    async def start_assistant_message(self, group_id: str, sender_id: str = "") -> str:
        async with self._lock:
            group = self._group(group_id)
            pair = ConversationPair(pair_id=uuid.uuid4().hex, sender_id=sender_id)
            group.open_pairs[pair.pair_id] = pair
        logger.debug(f"Pair {pair.pair_id[:8]} opened for {group_id}")
        return pair.pair_id

    async def append_to_assistant_message(
        self, group_id: str, content: str, pair_id: str | None = None
    ) -> bool:
        async with self._lock:
            group = self._group(group_id)
            pair = self._resolve_pair(group, pair_id)
            if pair is None:
                logger.warning(f"No open pair to append to for {group_id}")
                return False
            if pair.assistant_content:
                pair.assistant_content = f"{pair.assistant_content}\n\n{content}"
            else:
                pair.assistant_content = content
            return True

    async def finish_conversation_pair(
        self, group_id: str, user_content: str, pair_id: str | None = None
    ) -> bool:
        """Store the pair in history; False when the pair is missing or has no reply."""
        async with self._lock:
            group = self._group(group_id)
            pair = self._resolve_pair(group, pair_id)
            if pair is None or not pair.assistant_content:
                return False
            del group.open_pairs[pair.pair_id]
            pair.user_content = user_content
            pair.finished_at = time.time()
            group.pairs.append(pair)
            if pair.sender_id:
                group.processing.pop(pair.sender_id, None)
        logger.debug(f"Pair {pair.pair_id[:8]} saved for {group_id} ({len(group.pairs)} in history)")
        return True

    async def cancel_conversation_pair_by_id(self, group_id: str, pair_id: str) -> bool:
        """Drop an open pair and hand its sender's processing messages back to pending."""
        async with self._lock:
            group = self._group(group_id)
            pair = group.open_pairs.pop(pair_id, None)
            if pair is None:
                return False
            if pair.sender_id:
                returned = group.processing.pop(pair.sender_id, [])
                if returned:
                    group.pending = [*returned, *group.pending]
        logger.debug(f"Pair {pair_id[:8]} cancelled for {group_id}")
        return True
