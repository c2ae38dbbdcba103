from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from fastapi import Request

logger = logging.getLogger(__name__)


class TurnRunner:
    """Track fire-and-forget turn tasks started by the HTTP controllers."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def start(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        """Schedule a turn on the running loop and keep a reference to it."""

        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait until every tracked turn has finished; False if `timeout` ran out."""

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(list(self._tasks), timeout=remaining)
        return True

    async def shutdown(self, grace_sec: float = 0) -> None:
        """Give active turns `grace_sec` to finish, then cancel the rest."""

        if grace_sec > 0 and self._tasks:
            logger.info("Waiting up to %ss for %d active turns", grace_sec, self.active)
            await self.drain(grace_sec)
        tasks = list(self._tasks)
        if tasks:
            logger.warning("Cancelling %d unfinished turns", len(tasks))
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("Turn task %s crashed", task.get_name(), exc_info=exc)


def get_turn_runner(request: Request) -> TurnRunner:
    """Dependency to access the turn runner from app state."""

    return request.app.state.turn_runner
