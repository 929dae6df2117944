"""Turn a ``<sentra-response>`` into outbound ``send`` envelopes."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from sentra_agent.bus.events import IncomingMessage
from sentra_agent.protocol.codec import parse_response

SendAndWait = Callable[[dict[str, Any]], Awaitable[dict[str, Any] | None]]


def _target(msg: IncomingMessage) -> dict[str, Any]:
    if msg.group_id:
        return {"chat_type": "group", "group_id": msg.group_id}
    return {"chat_type": "private", "user_id": msg.sender_id}


async def smart_send(
    msg: IncomingMessage,
    response: str,
    send_and_wait: SendAndWait,
    allow_reply: bool = True,
) -> int:
    """Send text segments, then resources, then the emoji.

    Only the first envelope may quote *msg* (``reply_to``), and only when
    *allow_reply* is set.  Returns the number of envelopes the adapter
    acknowledged.
    """
    parsed = parse_response(response)
    if not parsed.wrapped:
        logger.warning("Sending a reply without <sentra-response> wrapper as plain text")

    items: list[dict[str, Any]] = [
        {"message_type": "text", "content": text} for text in parsed.text_segments if text.strip()
    ]
    for res in parsed.resources:
        item: dict[str, Any] = {"message_type": res.type, "content": res.source}
        if res.caption:
            item["caption"] = res.caption
        items.append(item)
    if parsed.emoji is not None:
        items.append({"message_type": "emoji", "content": parsed.emoji.source})

    if not items:
        logger.warning(f"Nothing to send for {msg.sender_id}")
        return 0

    target = _target(msg)
    acked = 0
    for i, item in enumerate(items):
        data = {**target, **item}
        if i == 0 and allow_reply and msg.message_id:
            data["reply_to"] = msg.message_id
        result = await send_and_wait({"type": "send", "data": data})
        if result is None:
            logger.warning(f"Send failed for {item['message_type']} #{i + 1} to {msg.history_key}")
            continue
        acked += 1
    logger.info(f"Sent {acked}/{len(items)} message(s) to {msg.history_key}")
    return acked
