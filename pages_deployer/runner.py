import asyncio
from typing import Coroutine, Optional, Set

from .logs import flush_logs, logger


class BackgroundRunner:
    """Owns the fire-and-forget tasks started by the task endpoint.

    The request handler only waits for ``submit`` to schedule the work. Work
    beyond ``max_concurrent`` waits for a slot inside its own task.
    """

    def __init__(self, max_concurrent: int = 4):
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def submit(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(self._guarded(coro), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def _guarded(self, coro: Coroutine):
        try:
            await self._semaphore.acquire()
        except asyncio.CancelledError:
            coro.close()
            raise
        try:
            return await coro
        finally:
            self._semaphore.release()

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        try:
            exc = task.exception()
            if exc:
                logger.error(f"[BACKGROUND TASK] {task.get_name()} finished with exception: {exc!r}")
            else:
                logger.info(f"[BACKGROUND TASK] {task.get_name()} finished.")
        except asyncio.CancelledError:
            logger.warning(f"[BACKGROUND TASK] {task.get_name()} was cancelled.")
        finally:
            flush_logs()

    async def join(self):
        """Wait for everything submitted so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self):
        logger.info(f"[SHUTDOWN] Cancelling {self.running} background task(s)")
        for t in list(self._tasks):
            if not t.done():
                t.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        flush_logs()
