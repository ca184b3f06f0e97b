"""
Background task runner
Detached work (e.g. the initial sync after install) runs as an asyncio task
wrapped in a handle that exposes its outcome and a completion event.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

from vendor_alert.config import settings

logger = logging.getLogger(__name__)


class SyncTaskHandle:
    """
    Observable handle for one detached job.

    `done` is set once the job finished (successfully or after its last
    retry failed); `result` and `error` hold the outcome.
    """

    def __init__(self, name: str):
        self.name = name
        self.done = asyncio.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.attempts = 0
        self.task: Optional[asyncio.Task] = None

    @property
    def succeeded(self) -> bool:
        return self.done.is_set() and self.error is None

    async def wait(self, timeout: Optional[float] = None) -> Any:
        """Wait for completion and return the job result (None on failure)."""
        await asyncio.wait_for(self.done.wait(), timeout)
        return self.result

    def __repr__(self) -> str:
        state = "done" if self.done.is_set() else "running"
        return f"<SyncTaskHandle {self.name} {state} attempts={self.attempts}>"


class BackgroundTaskRunner:
    """Schedules detached jobs and keeps strong references until they finish."""

    def __init__(self, retry_attempts: Optional[int] = None, retry_delay: float = 5.0):
        self.retry_attempts = settings.sync_retry_attempts if retry_attempts is None else retry_attempts
        self.retry_delay = retry_delay
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, name: str, job: Callable[[], Awaitable[Any]]) -> SyncTaskHandle:
        """
        Start `job` in the background.

        Args:
            name: Label used in logs
            job: Zero-argument coroutine factory, called once per attempt

        Returns:
            SyncTaskHandle for observing completion
        """
        handle = SyncTaskHandle(name)
        task = asyncio.create_task(self._run(handle, job), name=name)
        handle.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return handle

    async def _run(self, handle: SyncTaskHandle, job: Callable[[], Awaitable[Any]]) -> None:
        max_attempts = 1 + max(self.retry_attempts, 0)
        try:
            while handle.attempts < max_attempts:
                handle.attempts += 1
                try:
                    handle.result = await job()
                    handle.error = None
                    logger.info(f"Background job {handle.name} completed")
                    return
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    handle.error = exc
                    logger.error(
                        f"Background job {handle.name} failed (attempt {handle.attempts}/{max_attempts}): {exc}",
                        exc_info=True,
                    )
                    if handle.attempts < max_attempts:
                        await asyncio.sleep(self.retry_delay)
        finally:
            handle.done.set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        """Cancel jobs still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


background_runner = BackgroundTaskRunner()
