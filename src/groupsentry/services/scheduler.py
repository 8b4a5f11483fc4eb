from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Hashable

log = logging.getLogger("groupsentry.scheduler")

TaskFn = Callable[[], Coroutine[Any, Any, None]]


class RepeatingTaskScheduler:
    """Owns one cancellable repeating task per key.

    A tick sleeps for the interval and then runs ``fn``; a failing tick is
    logged and the loop carries on. Scheduling an existing key replaces it.
    Cancelling stops the loop but lets a tick that is already running finish.
    """

    def __init__(self) -> None:
        self._tasks: dict[Hashable, asyncio.Task[None]] = {}
        # loop task -> tick currently running under it
        self._in_flight: dict[asyncio.Task[None], asyncio.Task[None]] = {}

    def schedule(self, key: Hashable, interval_seconds: float, fn: TaskFn) -> None:
        old = self._tasks.pop(key, None)
        if old is not None and not old.done():
            old.cancel()
        if old is not None:
            tick = self._in_flight.pop(old, None)
            if tick is not None:
                tick.add_done_callback(lambda t: self._log_failure(key, t))
        interval = max(0.01, float(interval_seconds))
        self._tasks[key] = asyncio.create_task(self._run(key, interval, fn), name=f"groupsentry-repeat-{key}")
        log.info("Scheduled %s every %.1fs", key, interval)

    def is_active(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    async def cancel(self, key: Hashable) -> bool:
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
        current = asyncio.current_task()
        if task is not current:
            try:
                await task
            except asyncio.CancelledError:
                pass
        # A tick may cancel its own schedule; it cannot wait for itself.
        tick = self._in_flight.pop(task, None)
        if tick is not None and tick is not current:
            await asyncio.wait([tick])
            self._log_failure(key, tick)
        log.info("Cancelled %s", key)
        return True

    async def cancel_all(self) -> None:
        for key in list(self._tasks):
            await self.cancel(key)

    def keys(self) -> list[Hashable]:
        return [k for k, t in self._tasks.items() if not t.done()]

    @staticmethod
    def _log_failure(key: Hashable, tick: asyncio.Task[None]) -> None:
        if not tick.cancelled() and tick.exception() is not None:
            log.error("Repeating task %s failed", key, exc_info=tick.exception())

    async def _run(self, key: Hashable, interval: float, fn: TaskFn) -> None:
        me = asyncio.current_task()
        while True:
            await asyncio.sleep(interval)
            tick = asyncio.create_task(fn(), name=f"groupsentry-tick-{key}")
            self._in_flight[me] = tick
            try:
                await asyncio.shield(tick)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Repeating task %s failed", key)
            self._in_flight.pop(me, None)
