import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger("uvicorn.error")


def _log_task_failure(name: str) -> Callable[[asyncio.Task], None]:
    def _done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("%s stopped with an error: %r", name, exc)

    return _done


class Ticker:
    """Calls ``on_tick(elapsed_seconds)`` every ``interval_s`` until stopped."""

    def __init__(self, name: str, interval_s: float, on_tick: Callable[[float], None]):
        self.name = name
        self.interval_s = interval_s
        self.on_tick = on_tick
        self.task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def start(self) -> None:
        self.stop()
        self.task = asyncio.create_task(self._run())
        self.task.add_done_callback(_log_task_failure(self.name))

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        while True:
            await asyncio.sleep(self.interval_s)
            self.on_tick(loop.time() - started)

    def stop(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.task = None


class Watchdog:
    """Calls ``on_fire()`` once after ``delay_s`` unless stopped first."""

    def __init__(self, name: str, delay_s: float, on_fire: Callable[[], None]):
        self.name = name
        self.delay_s = delay_s
        self.on_fire = on_fire
        self.task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def start(self) -> None:
        self.stop()
        self.task = asyncio.create_task(self._run())
        self.task.add_done_callback(_log_task_failure(self.name))

    async def _run(self) -> None:
        await asyncio.sleep(self.delay_s)
        self.on_fire()

    def stop(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.task = None
