from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from contextlib import suppress
from typing import Any


logger = logging.getLogger(__name__)


class BackgroundTasks:
    """
    Owns fire-and-forget coroutines started outside a request's lifetime.

    Tasks are referenced until done (the event loop only keeps weak refs), and
    every failure is logged through `_on_done` instead of vanishing with the task.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str, context: dict[str, Any] | None = None) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        ctx = dict(context or {})
        task.add_done_callback(lambda t: self._on_done(t, ctx))
        return task

    def _on_done(self, task: asyncio.Task[Any], context: dict[str, Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task failed",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"task": task.get_name(), **context},
            )

    async def wait(self, task: asyncio.Task[Any], timeout: float) -> bool:
        """
        Wait up to `timeout` seconds; True when the task finished in time.

        The task keeps running when the timeout expires.
        """
        if timeout <= 0:
            return task.done()
        done, _pending = await asyncio.wait({task}, timeout=timeout)
        return task in done

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        # Failures were already logged by the done callback.
        with suppress(asyncio.CancelledError):
            await asyncio.gather(*tasks, return_exceptions=True)
