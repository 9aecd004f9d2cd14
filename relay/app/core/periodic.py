"""Background housekeeping loops.

Runs a callable every ``interval`` seconds until stopped. Used by the
response cache sweeper and the rate limiter's idle-window cleanup.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from relay.app.core.logging import get_logger

logger = get_logger(__name__)

Job = Callable[[], Union[Any, Awaitable[Any]]]


class PeriodicTask:
    """Calls ``job`` every ``interval`` seconds in a background task.

    ``job`` may be a plain function or a coroutine function. Errors raised
    by a run are logged and the loop carries on.

    Usage:
        sweeper = PeriodicTask("cache sweeper", 60.0, cache.sweep)
        await sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(self, name: str, interval: float, job: Job):
        self.name = name
        self.interval = interval
        self._job = job
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started {self.name} (interval: {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info(f"Stopped {self.name}")

    async def run_once(self) -> Any:
        result = self._job()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                try:
                    removed = await self.run_once()
                except Exception as e:
                    logger.error(f"{self.name} run failed: {e}")
                    continue
                if removed:
                    logger.debug(f"{self.name} removed {removed} expired entries")
