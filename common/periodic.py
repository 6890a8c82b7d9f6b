"""Fixed-period asyncio ticks with skip-on-overrun."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional

from common.log import emit


class PeriodicTask:
    """Runs ``fn`` every ``period`` seconds until stopped.

    A tick that fires while the previous one is still running is skipped and
    counted in ``skipped``, so a slow tick never builds a backlog. Exceptions
    raised by ``fn`` are logged as ``tick.error`` and the loop keeps going.
    ``sleep`` is injectable so tests can drive ticks without wall-clock waits.
    """

    def __init__(self, name: str, period: float, fn: Callable[[], Any],
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self.name = name
        self.period = period
        self._fn = fn
        self._sleep = sleep
        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self.ticks = 0
        self.skipped = 0
        self.errors = 0

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> bool:
        if self.running:
            return False
        self._loop_task = asyncio.get_running_loop().create_task(self._run())
        return True

    def stop(self) -> None:
        current = asyncio.current_task()
        for task in (self._loop_task, self._inflight):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._loop_task = None
        self._inflight = None

    async def _run(self) -> None:
        while True:
            await self._sleep(self.period)
            if self._inflight is not None and not self._inflight.done():
                self.skipped += 1
                continue
            self._inflight = asyncio.get_running_loop().create_task(self._tick())

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            result = self._fn()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.errors += 1
            emit("tick.error", task=self.name, error=repr(exc))
