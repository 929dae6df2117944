"""Per-sender message bundling.

A short burst of messages from one sender ("hi" / "are you there" / "I have
a question") is merged into one logical message before the reply pipeline
runs.  The window slides: every new arrival buys the bundle another
``window`` seconds, up to ``max_wait`` in total.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

from loguru import logger

from sentra_agent.bus.events import IncomingMessage, merge_messages


@dataclass
class Bundle:
    messages: list[IncomingMessage] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)
    last_update: float = field(default_factory=time.monotonic)


class MessageBundler:
    """Registry of open bundles, at most one per sender."""

    def __init__(self, window: float = 5.0, max_wait: float = 15.0):
        self.window = max(0.0, window)
        self.max_wait = max(self.window, max_wait)
        self._bundles: dict[str, Bundle] = {}

    def is_collecting(self, sender_id: str) -> bool:
        return sender_id in self._bundles

    def append(self, sender_id: str, msg: IncomingMessage) -> bool:
        """Add *msg* to the sender's open bundle; False when none is open."""
        bundle = self._bundles.get(sender_id)
        if bundle is None:
            return False
        bundle.messages.append(msg)
        bundle.last_update = time.monotonic()
        logger.debug(
            f"Bundled message for {sender_id} ({len(bundle.messages)} so far): "
            f"{msg.content[:60]!r}"
        )
        return True

    async def collect(self, sender_id: str, first: IncomingMessage) -> IncomingMessage:
        """Open a bundle seeded with *first*, wait for it to settle, return the merge.

        The bundle closes once a whole window passes with no new message or
        once ``max_wait`` has elapsed since it was opened.
        """
        bundle = Bundle(messages=[first])
        self._bundles[sender_id] = bundle
        try:
            while True:
                seen = len(bundle.messages)
                await asyncio.sleep(self.window)
                elapsed = time.monotonic() - bundle.started_at
                if len(bundle.messages) == seen:
                    break
                if elapsed >= self.max_wait:
                    logger.info(f"Bundle for {sender_id} hit max wait ({elapsed:.1f}s)")
                    break
        finally:
            self._bundles.pop(sender_id, None)

        if len(bundle.messages) > 1:
            logger.info(f"Bundle closed for {sender_id}: {len(bundle.messages)} messages merged")
        return merge_messages(bundle.messages)
