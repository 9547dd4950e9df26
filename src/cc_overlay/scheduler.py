from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .logs import get_logger

logger = get_logger("scheduler")


@dataclass
class PeriodicTask:
    """Runs ``callback`` immediately and then every ``interval_seconds`` until stopped."""

    name: str
    interval_seconds: float
    callback: Callable[[], Awaitable[None]]
    _task: Optional[asyncio.Task] = None
    _stop: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name=self.name)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop.set()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def restart(self, interval_seconds: Optional[float] = None) -> None:
        await self.stop()
        if interval_seconds is not None:
            self.interval_seconds = interval_seconds
        await self.start()

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            await self._run_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _run_once(self) -> None:
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s tick failed", self.name)


__all__ = ["PeriodicTask"]
