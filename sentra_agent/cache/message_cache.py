"""Message cache: the message a reasoning run is replying to, keyed by run id.

Tools spawned by the reasoning engine read ``<cache_dir>/<run_id>.json`` to
find out who they are working for.
"""

from __future__ import annotations

import time
from pathlib import Path

from loguru import logger

from sentra_agent.bus.events import IncomingMessage
from sentra_agent.utils.atomic_io import AtomicFileWriter, get_atomic_writer


class MessageCache:
    def __init__(
        self,
        cache_dir: Path,
        ttl_hours: float = 24,
        writer: AtomicFileWriter | None = None,
    ):
        self.cache_dir = Path(cache_dir)
        self.ttl_seconds = ttl_hours * 3600
        self._writer = writer or get_atomic_writer()

    def path_for(self, run_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in run_id)
        return self.cache_dir / f"{safe}.json"

    async def save(self, run_id: str, msg: IncomingMessage) -> bool:
        if not run_id:
            return False
        record = {
            "runId": run_id,
            "savedAt": int(time.time() * 1000),
            "message": msg.to_payload(),
        }
        ok = await self._writer.write_json(self.path_for(run_id), record)
        if ok:
            logger.debug(f"Message cached for run {run_id}")
        return ok

    def cleanup_expired(self) -> int:
        """Delete cache files older than the TTL; returns how many were removed."""
        if not self.cache_dir.is_dir():
            return 0
        cutoff = time.time() - self.ttl_seconds
        removed = 0
        for path in self.cache_dir.glob("*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.warning(f"Could not remove cached message {path.name}: {e}")
        if removed:
            logger.info(f"Removed {removed} expired message cache file(s)")
        return removed
