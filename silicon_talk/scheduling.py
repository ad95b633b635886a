"""Scheduled tasks with a cancel handle, driven by the running asyncio loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Union

logger = logging.getLogger("silicon_talk")

TickResult = Union[bool, None]
TickCallback = Callable[[], Union[TickResult, Awaitable[TickResult]]]


class ScheduledTask:
    """Call ``callback`` every ``interval`` seconds until it returns False or is cancelled.

    The first call happens after one interval. A one-shot timer is a task with
    ``repeat=False``. Exceptions raised by the callback stop the schedule and
    are logged; they never escape into the event loop.
    """

    def __init__(
        self,
        callback: TickCallback,
        interval: float,
        *,
        repeat: bool = True,
        name: str = "scheduled-task",
    ) -> None:
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self.callback = callback
        self.interval = interval
        self.repeat = repeat
        self.name = name
        self.ticks = 0
        self._task: asyncio.Task | None = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> ScheduledTask:
        if self.running:
            return self
        self._stopped = False
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
        return self

    def cancel(self) -> None:
        self._stopped = True
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def wait(self) -> None:
        """Wait until the schedule finishes on its own or is cancelled."""
        task = self._task
        if task is None:
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                if not self._owns_loop():
                    return
                self.ticks += 1
                result = self.callback()
                if inspect.isawaitable(result):
                    result = await result
                if not self._owns_loop() or not self.repeat or result is False:
                    return
        except asyncio.CancelledError:
            return
        except Exception:
            logger.warning("[SiliconTalk Scheduler] Task '%s' failed.", self.name, exc_info=True)

    def _owns_loop(self) -> bool:
        return not self._stopped and self._task is asyncio.current_task()

    def __repr__(self) -> str:
        return (
            f"ScheduledTask(name={self.name!r}, interval={self.interval}, "
            f"repeat={self.repeat}, running={self.running})"
        )


def call_later(delay: float, callback: TickCallback, *, name: str = "timer") -> ScheduledTask:
    """Start a one-shot timer and return its cancel handle."""
    return ScheduledTask(callback, delay, repeat=False, name=name).start()
