"""Coalesce bursts of per-entity updates into one delivery per time window."""

import asyncio
import logging
from typing import Any, Callable, Dict, Hashable, Optional, Set


logger = logging.getLogger(__name__)

DEFAULT_BATCH_WINDOW = 0.05


class EntityBatcher:
    """
    Keep only the latest value per key and deliver them together.

    The first ``enqueue`` after a flush arms a single timer; every update
    that arrives before it fires overwrites the pending value for its key.
    When the timer fires the whole batch is handed to ``on_flush`` once.
    """

    def __init__(
        self,
        on_flush: Callable[[Dict[Hashable, Any]], Any],
        batch_window: float = DEFAULT_BATCH_WINDOW,
    ):
        self._on_flush = on_flush
        self.batch_window = batch_window
        self._queue: Dict[Hashable, Any] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    def enqueue(self, key: Hashable, value: Any) -> None:
        self._queue[key] = value

        if self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.batch_window, self.flush)

    def flush(self) -> None:
        """Deliver everything queued so far. No-op when nothing is queued."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        if not self._queue:
            return

        # Swap before delivering: the consumer may enqueue again
        batch, self._queue = self._queue, {}

        try:
            result = self._on_flush(batch)
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
        except Exception:
            logger.exception(f"Batch consumer failed on {len(batch)} update(s)")

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Batch consumer failed", exc_info=task.exception())

    def clear(self) -> None:
        """Drop queued updates without delivering them."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._queue.clear()

    @property
    def pending(self) -> int:
        return len(self._queue)
