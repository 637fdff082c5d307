"""Start/stop plumbing shared by the background loops."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run :meth:`tick` every ``interval`` seconds until stopped.

    Errors raised by a tick are logged and the loop carries on; only
    cancellation ends it early.
    """

    name = "periodic"

    def __init__(self, interval: float):
        self.interval = float(interval)
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    async def tick(self) -> None:
        raise NotImplementedError

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running():
            logger.info("loop_start_noop", extra={"loop": self.name, "reason": "already_running"})
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name=f"{self.name}-loop")
        logger.info("loop_start_requested", extra={"loop": self.name})

    async def stop(self) -> None:
        if not self._task:
            logger.info("loop_stop_noop", extra={"loop": self.name, "reason": "not_running"})
            return
        logger.info("loop_stop_requested", extra={"loop": self.name})
        self._stop.set()
        try:
            await self._task
        finally:
            self._task = None
            await self.drain()
            logger.info("loop_stopped", extra={"loop": self.name})

    async def drain(self) -> None:
        """Hook for subclasses that own work outliving a single tick."""

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass

    async def _loop(self) -> None:
        logger.info("loop_started", extra={"loop": self.name, "interval_sec": self.interval})
        try:
            while not self._stop.is_set():
                try:
                    await self.tick()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("loop_tick_error", extra={"loop": self.name})
                await self._sleep()
        except asyncio.CancelledError:
            logger.info("loop_cancelled", extra={"loop": self.name})
            raise
        finally:
            logger.info("loop_exit", extra={"loop": self.name})
