from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from conftest import ok_response
from sentra_agent.bus.events import IncomingMessage
from sentra_agent.channels.sender import smart_send
from sentra_agent.channels.websocket import WebSocketClient
from sentra_agent.protocol.codec import build_response_xml


class FakeConnection:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def send(self, text: str) -> None:
        self.sent.append(json.loads(text))

    async def close(self) -> None:
        return None


def _client(**kwargs) -> tuple[WebSocketClient, FakeConnection]:
    client = WebSocketClient("ws://test", **kwargs)
    conn = FakeConnection()
    client._ws = conn
    return client, conn


# ── websocket client ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_send_and_wait_times_out_to_none() -> None:
    client, conn = _client(request_timeout=0.05)
    result = await client.send_and_wait({"type": "send", "data": {}})
    assert result is None
    assert len(conn.sent) == 1
    assert conn.sent[0]["requestId"]


@pytest.mark.asyncio
async def test_result_frame_resolves_matching_request() -> None:
    client, conn = _client(request_timeout=1.0)
    task = asyncio.create_task(client.send_and_wait({"type": "send", "requestId": "abc"}))
    await asyncio.sleep(0.01)
    assert conn.sent[0]["requestId"] == "abc"

    client.handle_frame(json.dumps({"type": "result", "requestId": "other", "ok": True}))
    client.handle_frame(json.dumps({"type": "result", "requestId": "abc", "ok": True, "data": 1}))

    result = await asyncio.wait_for(task, timeout=1)
    assert result is not None
    assert result["data"] == 1


@pytest.mark.asyncio
async def test_failed_result_resolves_to_none() -> None:
    client, _ = _client(request_timeout=1.0)
    task = asyncio.create_task(client.send_and_wait({"type": "send", "requestId": "r1"}))
    await asyncio.sleep(0.01)
    client.handle_frame(json.dumps({"type": "result", "requestId": "r1", "ok": False}))
    assert await asyncio.wait_for(task, timeout=1) is None


@pytest.mark.asyncio
async def test_send_without_connection_fails_fast() -> None:
    client = WebSocketClient("ws://test", request_timeout=5.0)
    assert await client.send({"type": "ping"}) is False
    assert await asyncio.wait_for(client.send_and_wait({"type": "send"}), timeout=1) is None


@pytest.mark.asyncio
async def test_frames_are_dispatched_to_handler() -> None:
    received: list[dict[str, Any]] = []

    async def handler(payload: dict[str, Any]) -> None:
        received.append(payload)

    client, _ = _client(on_payload=handler)
    client.handle_frame("not json")
    client.handle_frame(json.dumps([1, 2]))
    client.handle_frame(json.dumps({"type": "message", "data": {"sender_id": "u1"}}))
    await asyncio.sleep(0.01)
    assert received == [{"type": "message", "data": {"sender_id": "u1"}}]


@pytest.mark.asyncio
async def test_handler_errors_do_not_escape() -> None:
    async def handler(payload: dict[str, Any]) -> None:
        raise ValueError("bad handler")

    client, _ = _client(on_payload=handler)
    client.handle_frame(json.dumps({"type": "welcome"}))
    await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_handlers() -> None:
    started = asyncio.Event()
    cancelled: list[bool] = []

    async def handler(payload: dict[str, Any]) -> None:
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    client, _ = _client(on_payload=handler)
    client.handle_frame(json.dumps({"type": "message", "data": {}}))
    await asyncio.wait_for(started.wait(), timeout=1)

    await asyncio.wait_for(client.stop(), timeout=1)

    assert cancelled == [True]
    assert not client._running


# ── smart_send ───────────────────────────────────────────────────────


class Recorder:
    def __init__(self, fail_first: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_first = fail_first

    async def __call__(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        self.sent.append(payload)
        if self.fail_first and len(self.sent) == 1:
            return None
        return {"ok": True}


@pytest.mark.asyncio
async def test_smart_send_orders_segments_resources_and_emoji() -> None:
    msg = IncomingMessage(sender_id="u1", group_id="g1", text="hi", message_id="99")
    response = build_response_xml(
        ["one", "two"],
        resources=[{"type": "image", "source": "/tmp/cat.png", "caption": "cat"}],
        emoji={"source": "/tmp/smile.gif"},
    )
    rec = Recorder()

    acked = await smart_send(msg, response, rec, allow_reply=True)

    assert acked == 4
    kinds = [p["data"]["message_type"] for p in rec.sent]
    assert kinds == ["text", "text", "image", "emoji"]
    assert all(p["type"] == "send" for p in rec.sent)
    assert all(p["data"]["group_id"] == "g1" for p in rec.sent)
    assert rec.sent[0]["data"]["reply_to"] == "99"
    assert all("reply_to" not in p["data"] for p in rec.sent[1:])
    assert rec.sent[2]["data"]["caption"] == "cat"


@pytest.mark.asyncio
async def test_smart_send_without_reply_quote() -> None:
    msg = IncomingMessage(sender_id="u1", text="hi", message_id="99")
    rec = Recorder()
    await smart_send(msg, ok_response("hello"), rec, allow_reply=False)
    assert rec.sent[0]["data"] == {
        "chat_type": "private",
        "user_id": "u1",
        "message_type": "text",
        "content": "hello",
    }


@pytest.mark.asyncio
async def test_smart_send_counts_only_acknowledged() -> None:
    msg = IncomingMessage(sender_id="u1", text="hi")
    rec = Recorder(fail_first=True)
    assert await smart_send(msg, ok_response("a", "b"), rec) == 1
    assert len(rec.sent) == 2
