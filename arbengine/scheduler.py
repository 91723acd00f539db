# arbengine/scheduler.py
import asyncio
import logging
import time
from typing import Awaitable, Callable

class PeriodicTask:
    """
    Runs `step` every `interval` seconds until stop() is called.

    stop() lets the cycle in progress finish; the wait between cycles
    is interrupted immediately. Tests drive `step` directly instead of run().
    """
    def __init__(self, name: str, interval: float, step: Callable[[], Awaitable[object]],
                 logger: logging.Logger):
        self.name = name
        self.interval = interval
        self.step = step
        self.logger = logger
        self.cycles = 0
        self._stop = asyncio.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self):
        self._stop.set()

    async def run(self):
        self.logger.info(f"⏱️  {self.name} started (every {self.interval:g}s)")
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                await self.step()
            except Exception:
                # The next tick is the retry
                self.logger.exception(f"{self.name} cycle {self.cycles} failed")
            self.cycles += 1

            remaining = max(0.0, self.interval - (time.monotonic() - started))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
        self.logger.info(f"⏹️  {self.name} stopped after {self.cycles} cycles")
