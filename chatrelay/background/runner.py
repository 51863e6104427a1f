import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger("relay.background")


class DetachedTaskRunner:
    """Runs work on the event loop outside any request's lifetime.

    Tasks are held by strong reference until they finish, so they are neither garbage
    collected nor cancelled when the request that spawned them completes or disconnects.
    Failures only reach the log.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, work: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any] | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            work.close()
            logger.warning(
                "detached_task_skipped",
                extra={"error": f"no running loop for {name}"},
            )
            return None
        task = loop.create_task(work, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("detached_task_cancelled", extra={"error": task.get_name()})
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "detached_task_failed",
                extra={"error": f"{task.get_name()}: {type(exc).__name__}: {exc}"},
                exc_info=exc,
            )

    async def drain(self, timeout_s: float | None = None) -> int:
        """Wait for outstanding tasks; return how many were still running at the deadline."""
        if not self._tasks:
            return 0
        _, not_done = await asyncio.wait(set(self._tasks), timeout=timeout_s)
        if not_done:
            logger.warning("detached_tasks_abandoned", extra={"pending_tasks": len(not_done)})
        return len(not_done)
