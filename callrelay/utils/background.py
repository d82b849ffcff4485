from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Set

log = logging.getLogger("callrelay.background")


class BackgroundTasks:
    """Fire-and-forget coroutines whose failures are logged, never raised.

    Callers do not await the returned task; the set only keeps a strong
    reference until completion so the event loop does not drop it.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[object], *, what: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, what))
        return task

    def _finished(self, task: asyncio.Task, what: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("Best-effort %s failed: %s", what, exc)

    async def drain(self) -> None:
        """Wait for every pending task (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)
