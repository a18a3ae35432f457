from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class Sweeper:
    """Runs ``sweep`` every ``interval_s`` seconds on a background task.

    A sweep that raises is logged and the loop keeps going.
    """

    def __init__(self, sweep: Callable[[], object], interval_s: float, *, name: str = "sweeper") -> None:
        self._sweep = sweep
        self.interval_s = interval_s
        self.name = name
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                self._sweep()
            except Exception:
                logger.exception("%s sweep failed", self.name)
