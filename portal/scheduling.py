import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

_NOTHING = object()


class DebouncedTask:
    """Run ``action(value)`` once, ``delay`` seconds after the latest ``schedule``.

    Every ``schedule`` call replaces the pending value and restarts the timer,
    so a burst of calls inside the window produces a single run carrying the
    last value. The timer lives on the running asyncio loop; when there is no
    running loop the value is held until ``flush`` is awaited.
    """

    def __init__(self, delay: float, action: Callable[[Any], Awaitable[None]], name: str = ""):
        self.delay = delay
        self.action = action
        self.name = name
        self._pending: Any = _NOTHING
        self._handle: Optional[asyncio.TimerHandle] = None
        self._running: Set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._pending is not _NOTHING

    def schedule(self, value: Any) -> None:
        self._pending = value
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; %s held until flush", self.name)
            return
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        self._cancel_timer()
        self._pending = _NOTHING

    async def flush(self) -> None:
        """Run the pending action now and wait for every run still in flight."""
        self._cancel_timer()
        if self.pending:
            value, self._pending = self._pending, _NOTHING
            await self._run(value)
        if self._running:
            await asyncio.gather(*self._running)

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        if not self.pending:
            return
        value, self._pending = self._pending, _NOTHING
        task = asyncio.get_running_loop().create_task(self._run(value))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self, value: Any) -> None:
        try:
            await self.action(value)
        except Exception:
            logger.exception("Debounced action %s failed", self.name)


class PeriodicTask:
    """Call ``action()`` every ``interval`` seconds on the running loop until stopped.

    A failing run is logged and the next one still happens.
    """

    def __init__(self, interval: float, action: Callable[[], Any], name: str = ""):
        self.interval = interval
        self.action = action
        self.name = name
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "PeriodicTask":
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name or None)
        return self

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.action()
            except Exception:
                logger.exception("Periodic task %s failed", self.name)
            self.runs += 1
