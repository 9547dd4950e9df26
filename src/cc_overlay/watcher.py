from __future__ import annotations

import asyncio
import contextlib
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

from .logs import get_logger

logger = get_logger("watcher")

WatchTarget = Tuple[Path, str]
Signature = Tuple[int, float, int]


def directory_signature(targets: List[WatchTarget]) -> Signature:
    """(file count, newest mtime, total size) across every watched glob."""
    count = 0
    newest = 0.0
    total_size = 0
    for root, pattern in targets:
        try:
            paths = list(root.glob(pattern))
        except OSError:
            continue
        for path in paths:
            try:
                stat = path.stat()
            except OSError:
                continue
            count += 1
            newest = max(newest, stat.st_mtime)
            total_size += stat.st_size
    return count, newest, total_size


class LogWatcher:
    """Polls log directories and fires ``on_change`` once per burst of writes.

    A change arms a trailing debounce timer; further changes push the deadline
    back, so a burst coalesces into a single callback.
    """

    def __init__(
        self,
        targets: Callable[[], List[WatchTarget]],
        on_change: Callable[[], Awaitable[None]],
        poll_interval: float = 1.0,
        debounce_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._targets = targets
        self._on_change = on_change
        self.poll_interval = poll_interval
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._signature: Optional[Signature] = None
        self._deadline: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._signature = None
        self._deadline = None
        self._task = asyncio.create_task(self._run_loop(), name="log-watcher")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def poll(self) -> bool:
        """One observation step; returns True when the callback fired."""
        signature = await asyncio.to_thread(directory_signature, self._targets())
        now = self._clock()
        if self._signature is not None and signature != self._signature:
            self._deadline = now + self.debounce_seconds
        self._signature = signature
        if self._deadline is not None and now >= self._deadline:
            self._deadline = None
            logger.debug("log change detected, refreshing")
            await self._on_change()
            return True
        return False

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.poll()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("log watcher poll failed")
            await asyncio.sleep(self.poll_interval)


__all__ = ["LogWatcher", "directory_signature"]
