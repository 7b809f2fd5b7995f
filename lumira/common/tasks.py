"""Detached background work with an internal error boundary."""

import asyncio
from typing import Awaitable, Callable

from lumira.common.logging import logger


class BackgroundRunner:
    """Spawns fire-and-forget tasks that can never crash the spawning request.

    Strong references are kept until each task finishes so the event loop
    does not garbage-collect them mid-flight.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(
        self,
        name: str,
        work: Callable[[], Awaitable[object]],
        on_error: Callable[[Exception], Awaitable[None]] | None = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(self._guarded(name, work, on_error), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(
        self,
        name: str,
        work: Callable[[], Awaitable[object]],
        on_error: Callable[[Exception], Awaitable[None]] | None,
    ) -> None:
        try:
            await work()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("background_task_failed name=%s error=%s", name, exc)
            if on_error is None:
                return
            try:
                await on_error(exc)
            except Exception as handler_exc:
                logger.exception("background_error_handler_failed name=%s error=%s", name, handler_exc)

    async def drain(self) -> None:
        """Wait for every outstanding task (shutdown and tests)."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
