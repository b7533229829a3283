"""Supervised fire-and-forget work spawned from request handlers.

The webhook must answer the provider quickly, so enrichment and responder
work runs as asyncio tasks owned by this supervisor:

- strong references are kept until a task finishes (no GC of pending tasks);
- concurrency is bounded by a semaphore;
- failures are logged with traceback and counted, never re-raised.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from prometheus_client import Counter

logger = logging.getLogger(__name__)

BACKGROUND_TASKS_TOTAL = Counter(
    "background_tasks_total",
    "Background tasks by name and outcome",
    ["task", "outcome"],
)


class BackgroundTaskSupervisor:
    def __init__(self, max_concurrency: int = 20):
        self._semaphore = asyncio.Semaphore(max(1, int(max_concurrency)))
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, name: str, coro_factory: Callable[[], Awaitable[object]]) -> asyncio.Task:
        """Schedule ``coro_factory()`` and return immediately."""
        task = asyncio.create_task(self._run(name, coro_factory), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, coro_factory: Callable[[], Awaitable[object]]) -> None:
        async with self._semaphore:
            try:
                await coro_factory()
            except asyncio.CancelledError:
                BACKGROUND_TASKS_TOTAL.labels(task=name, outcome="cancelled").inc()
                raise
            except Exception:
                self.failures += 1
                BACKGROUND_TASKS_TOTAL.labels(task=name, outcome="error").inc()
                logger.exception("Background task %s failed", name)
            else:
                BACKGROUND_TASKS_TOTAL.labels(task=name, outcome="ok").inc()

    async def drain(self) -> None:
        """Wait until no work is in flight (including work spawned by finished tasks)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        """Give in-flight work ``timeout`` seconds, then cancel what is left."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %s background task(s) on shutdown", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
