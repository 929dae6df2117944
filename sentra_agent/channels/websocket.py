"""WebSocket client for the chat adapter.

The adapter pushes JSON envelopes (``welcome``, ``pong``, ``shutdown``,
``result``, ``message``) and accepts outbound envelopes.  Outbound requests
that need confirmation carry a ``requestId``; the adapter answers with a
``result`` envelope echoing it.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import websockets
from loguru import logger

PayloadHandler = Callable[[dict[str, Any]], Awaitable[None]]


class WebSocketClient:
    """Connect-and-listen loop with flat-interval reconnects."""

    def __init__(
        self,
        url: str,
        on_payload: PayloadHandler | None = None,
        request_timeout: float = 10.0,
        reconnect_interval: float = 10.0,
        max_reconnect_attempts: int = 60,
    ) -> None:
        self.url = url
        self.on_payload = on_payload
        self.request_timeout = request_timeout
        self.reconnect_interval = reconnect_interval
        self.max_reconnect_attempts = max_reconnect_attempts

        self._ws: Any = None
        self._running = False
        self._pending: dict[str, asyncio.Future[dict[str, Any] | None]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run until ``stop()`` or until reconnect attempts are exhausted."""
        self._running = True
        attempts = 0
        logger.info(f"[ws] connecting to {self.url}")

        while self._running:
            try:
                async with websockets.connect(self.url, close_timeout=5) as ws:
                    self._ws = ws
                    attempts = 0
                    logger.info("[ws] connected")
                    async for raw in ws:
                        if not self._running:
                            break
                        self.handle_frame(raw)
            except asyncio.CancelledError:
                logger.info("[ws] task cancelled, shutting down")
                break
            except Exception as e:
                if not self._running:
                    break
                logger.warning(f"[ws] connection error: {e}")
            finally:
                self._ws = None

            if not self._running:
                break
            attempts += 1
            if attempts > self.max_reconnect_attempts:
                logger.error(
                    f"[ws] reconnect exhausted ({self.max_reconnect_attempts} attempts, "
                    f"{self.reconnect_interval:.0f}s apart)"
                )
                break
            logger.warning(
                f"[ws] disconnected, reconnect {attempts}/{self.max_reconnect_attempts} "
                f"in {self.reconnect_interval:.0f}s"
            )
            await asyncio.sleep(self.reconnect_interval)

        self._running = False
        logger.info("[ws] stopped")

    async def stop(self) -> None:
        self._running = False
        ws = self._ws
        if ws is not None:
            await ws.close()
        for fut in self._pending.values():
            if not fut.done():
                fut.set_result(None)
        self._pending.clear()
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"[ws] cancelled {len(tasks)} in-flight handler(s)")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_frame(self, raw: str | bytes) -> None:
        """Parse one frame, resolve a waiting request, hand the envelope off."""
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("[ws] non-JSON frame received, skipping")
            return
        if not isinstance(payload, dict):
            return

        if payload.get("type") == "result":
            fut = self._pending.get(str(payload.get("requestId") or ""))
            if fut is not None and not fut.done():
                fut.set_result(payload if payload.get("ok") else None)

        if self.on_payload is not None:
            # one task per envelope so a long turn never blocks result frames
            task = asyncio.create_task(self._dispatch(payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, payload: dict[str, Any]) -> None:
        try:
            await self.on_payload(payload)
        except Exception as e:
            logger.exception(f"[ws] handler failed for {payload.get('type')!r}: {e}")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, payload: dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None:
            logger.warning(f"[ws] not connected, dropping {payload.get('type')!r}")
            return False
        try:
            await ws.send(json.dumps(payload, ensure_ascii=False))
        except Exception as e:
            logger.error(f"[ws] send failed: {e}")
            return False
        return True

    async def send_and_wait(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        """Send and wait for the matching ``result``; None on failure or timeout."""
        request_id = payload.get("requestId") or uuid.uuid4().hex
        payload = {**payload, "requestId": request_id}
        fut: asyncio.Future[dict[str, Any] | None] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        try:
            if not await self.send(payload):
                return None
            return await asyncio.wait_for(fut, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[ws] request timed out: {request_id}")
            return None
        finally:
            self._pending.pop(request_id, None)
