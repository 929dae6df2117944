"""Per-sender admission: one active task, FIFO queue behind it."""

from __future__ import annotations

import itertools
import time
from collections import deque
from dataclasses import dataclass, field

from loguru import logger

from sentra_agent.bus.events import IncomingMessage, merge_messages

TASK_ACTIVE = "active"
TASK_PENDING = "pending"
TASK_DONE = "done"

_task_ids = itertools.count(1)


def _next_task_id(sender_id: str) -> str:
    return f"{sender_id}-{int(time.time() * 1000)}-{next(_task_ids)}"


@dataclass
class Task:
    id: str
    sender_id: str
    msg: IncomingMessage
    status: str = TASK_PENDING
    created_at: float = field(default_factory=time.time)

    @property
    def is_active(self) -> bool:
        return self.status == TASK_ACTIVE


class AdmissionController:
    """Tracks the active task per sender plus a queue and a deferred buffer.

    The queue holds admitted-but-waiting tasks.  The deferred buffer holds raw
    messages that arrived while the sender was busy and have not been through
    the reply gate yet; they are merged and re-evaluated once the slot frees.
    """

    def __init__(self) -> None:
        self._active: dict[str, Task] = {}
        self._queues: dict[str, deque[Task]] = {}
        self._deferred: dict[str, list[IncomingMessage]] = {}

    def has_active(self, sender_id: str) -> bool:
        return sender_id in self._active

    def active_task(self, sender_id: str) -> Task | None:
        return self._active.get(sender_id)

    def queued_count(self, sender_id: str) -> int:
        return len(self._queues.get(sender_id, ()))

    def admit(self, sender_id: str, msg: IncomingMessage) -> Task:
        task = Task(id=_next_task_id(sender_id), sender_id=sender_id, msg=msg)
        if sender_id not in self._active:
            task.status = TASK_ACTIVE
            self._active[sender_id] = task
            logger.debug(f"Task {task.id} active")
        else:
            self._queues.setdefault(sender_id, deque()).append(task)
            logger.info(
                f"Sender {sender_id} busy; task {task.id} queued "
                f"(queue={self.queued_count(sender_id)})"
            )
        return task

    def complete(self, sender_id: str, task_id: str) -> Task | None:
        """Finish *task_id* and promote the next queued task, if any.

        Completing an id that is not the active task is a no-op for the slot
        (it only drops a matching queued entry), so double completion never
        frees a slot that a newer task owns.
        """
        active = self._active.get(sender_id)
        if active is None or active.id != task_id:
            queue = self._queues.get(sender_id)
            if queue:
                for task in list(queue):
                    if task.id == task_id:
                        queue.remove(task)
                        task.status = TASK_DONE
                        logger.debug(f"Dropped queued task {task_id}")
                        break
                if not queue:
                    self._queues.pop(sender_id, None)
            return None

        active.status = TASK_DONE
        del self._active[sender_id]

        queue = self._queues.get(sender_id)
        if not queue:
            self._queues.pop(sender_id, None)
            return None
        nxt = queue.popleft()
        if not queue:
            self._queues.pop(sender_id, None)
        nxt.status = TASK_ACTIVE
        self._active[sender_id] = nxt
        logger.info(f"Task {task_id} done; promoted {nxt.id}")
        return nxt

    def defer(self, sender_id: str, msg: IncomingMessage) -> int:
        buf = self._deferred.setdefault(sender_id, [])
        buf.append(msg)
        return len(buf)

    def deferred_count(self, sender_id: str) -> int:
        return len(self._deferred.get(sender_id, ()))

    def drain_deferred(self, sender_id: str) -> IncomingMessage | None:
        msgs = self._deferred.pop(sender_id, None)
        if not msgs:
            return None
        return merge_messages(msgs)
