"""Atomic file writes: per-path asyncio lock, temp file, then rename."""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any

from loguru import logger


def _write_replace(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(payload)
        Path(tmp).replace(path)
    except OSError:
        Path(tmp).unlink(missing_ok=True)
        raise


class AtomicFileWriter:
    """Serializes writers per path; readers never observe a half-written file.

    Failures are logged and reported as ``False`` rather than raised.
    """

    def __init__(self, max_locks: int = 256) -> None:
        self.max_locks = max_locks
        self._locks: dict[Path, asyncio.Lock] = {}

    def _lock_for(self, path: Path) -> asyncio.Lock:
        key = path.resolve()
        lock = self._locks.get(key)
        if lock is None:
            if len(self._locks) >= self.max_locks:
                # drop idle locks only; a held lock still guards its writer
                self._locks = {p: lk for p, lk in self._locks.items() if lk.locked()}
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def write_text(self, path: Path, content: str, encoding: str = "utf-8") -> bool:
        async with self._lock_for(path):
            try:
                _write_replace(path, content.encode(encoding))
            except OSError as exc:
                logger.error(f"Atomic write failed for {path}: {exc}")
                return False
        return True

    async def write_json(self, path: Path, data: Any, indent: int | None = 2) -> bool:
        try:
            content = json.dumps(data, indent=indent, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as exc:
            logger.error(f"JSON serialization failed for {path}: {exc}")
            return False
        return await self.write_text(path, content)


_writer: AtomicFileWriter | None = None


def get_atomic_writer() -> AtomicFileWriter:
    global _writer
    if _writer is None:
        _writer = AtomicFileWriter()
    return _writer
