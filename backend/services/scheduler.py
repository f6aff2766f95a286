"""Repeating and one-shot timers on the asyncio loop.

Both primitives cancel idempotently, so ``stop()`` paths can cancel
everything without tracking which timers were ever armed.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Union

from utils.logger import get_logger

logger = get_logger("scheduler")

TimerCallback = Callable[[], Union[Awaitable[Any], Any]]


async def _invoke(func: TimerCallback) -> None:
    result = func()
    if asyncio.iscoroutine(result):
        await result


class RepeatingTask:
    """Runs ``func`` every ``interval`` seconds until cancelled.

    The first run happens one interval after ``start()``. A run that raises is
    logged and the schedule continues; runs never overlap.
    """

    def __init__(self, name: str, interval: float, func: TimerCallback):
        self.name = name
        self.interval = interval
        self._func = func
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await _invoke(self._func)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Scheduled run failed",
                    task=self.name,
                    error_type=type(e).__name__,
                    error=str(e) or repr(e),
                )


class DelayedCall:
    """Calls ``func`` once after ``delay`` seconds unless cancelled first."""

    def __init__(self, delay: float, func: TimerCallback):
        self.delay = delay
        self._func = func
        self.fired = False
        self._task: Optional[asyncio.Task] = asyncio.get_running_loop().create_task(self._run())

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        self.fired = True
        try:
            await _invoke(self._func)
        except Exception as e:
            logger.error(
                "Delayed call failed",
                error_type=type(e).__name__,
                error=str(e) or repr(e),
            )
