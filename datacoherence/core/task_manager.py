"""
Background task lifecycle for the data layer.

The cache store runs a garbage-collection loop and in-flight fetches, and the
realtime bridge runs one queue worker per channel subscription. Each owner
holds a ``TaskManager``; tearing down a session (identity change, shutdown)
cancels every task it started so nothing is left pending on the event loop.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

from datacoherence.core.logging import component_logger

task_log = component_logger("tasks")


class TaskManager:
    """Tracks the background tasks of one owner."""

    def __init__(self, owner: str = "TaskManager") -> None:
        self.owner = owner
        self.tasks: set[asyncio.Task[Any]] = set()
        self.failed = 0
        self._closed = False

    def create_task(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        if self._closed:
            coro.close()
            raise RuntimeError(f"{self.owner} is shut down; cannot start {name}")

        task = asyncio.create_task(coro, name=name)
        self.tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self.tasks.discard(task)
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            self.failed += 1
            task_log.debug(f"{self.owner}: task {task.get_name()} raised {exc!r}")

    async def cancel_task(self, task: asyncio.Task[Any], timeout: float = 1.0) -> None:
        """Cancel one task and wait (bounded) for it to unwind."""
        if not task.done():
            task.cancel()
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                task_log.warning(
                    f"{self.owner}: task {task.get_name()} ignored cancellation"
                )
        self.tasks.discard(task)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel every tracked task; idempotent."""
        if self._closed:
            return
        self._closed = True

        pending = [task for task in self.tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            _, stuck = await asyncio.wait(pending, timeout=timeout)
            for task in stuck:
                task_log.warning(
                    f"{self.owner}: task {task.get_name()} still running after {timeout}s"
                )
            task_log.info(f"{self.owner}: cancelled {len(pending)} background tasks")
        self.tasks.clear()

    @property
    def is_shut_down(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self.tasks)


class ManagedObject:
    """Base class for components that own background tasks."""

    def __init__(self, name: str | None = None) -> None:
        self._task_manager = TaskManager(name or type(self).__name__)

    def create_task(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        return self._task_manager.create_task(coro, name)

    async def shutdown(self) -> None:
        await self._task_manager.shutdown()
