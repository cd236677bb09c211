"""Supervised background tasks.

Setup pipelines run fire-and-forget, one asyncio task per session. The
supervisor keeps a reference to every running task (so none is garbage
collected mid-flight), routes any exception that escapes a task to a
failure callback that persists the terminal state, and cancels everything
on shutdown. A session left non-terminal by a hard crash is reconciled by
startup recovery.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from agentos.logging import get_logger

FailureHandler = Callable[[BaseException], Awaitable[None]]


class BackgroundTaskSupervisor:
    """Tracks background tasks keyed by the session they work on."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._logger = get_logger(__name__)

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def is_running(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def spawn(
        self,
        key: str,
        coro: Coroutine[Any, Any, None],
        on_failure: FailureHandler | None = None,
    ) -> asyncio.Task[None]:
        """Run ``coro`` in the background under supervision.

        Args:
            key: Identifier of the work (usually the session id)
            coro: Coroutine to run
            on_failure: Awaited with the exception if ``coro`` raises

        Raises:
            RuntimeError: If a task for ``key`` is already running
        """
        if self.is_running(key):
            coro.close()
            raise RuntimeError(f"Background task already running for {key}")

        task = asyncio.create_task(self._run(key, coro, on_failure), name=f"supervised-{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._discard(k, t))
        self._logger.debug("background_task_spawned", key=key, active=self.active_count)
        return task

    def _discard(self, key: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    async def _run(
        self,
        key: str,
        coro: Coroutine[Any, Any, None],
        on_failure: FailureHandler | None,
    ) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            self._logger.info("background_task_cancelled", key=key)
            raise
        except Exception as e:
            self._logger.exception(
                "background_task_failed",
                key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            if on_failure is not None:
                try:
                    await on_failure(e)
                except Exception as handler_error:
                    self._logger.error(
                        "background_task_failure_handler_error",
                        key=key,
                        error=str(handler_error),
                    )

    async def join(self, timeout: float | None = None) -> None:
        """Wait for every task currently tracked to finish."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def cancel_all(self) -> int:
        """Cancel every running task and wait for them to unwind.

        Returns:
            Number of tasks cancelled
        """
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                self._logger.warning(
                    "background_task_shutdown_error",
                    error=str(result),
                    error_type=type(result).__name__,
                )
        if tasks:
            self._logger.info("background_tasks_cancelled", count=len(tasks))
        return len(tasks)
