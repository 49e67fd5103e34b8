"""Periodic queue housekeeping."""

import asyncio
from typing import TYPE_CHECKING

from livequeue.core.logging import get_logger

if TYPE_CHECKING:
    from livequeue.core.config import QueueSettings
    from livequeue.core.manager import QueueManager


class MaintenanceTask:
    """Runs ``optimize_queue()`` and log retention every ``interval`` seconds.

    A failing pass is logged and the next one runs on schedule; the task only
    ends through ``stop()``.
    """

    def __init__(self, manager: "QueueManager", interval: float = 1800.0) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.manager = manager
        self.interval = interval
        self.runs = 0
        self.failures = 0
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._log = get_logger("livequeue.maintenance")

    @classmethod
    def from_settings(cls, manager: "QueueManager", settings: "QueueSettings") -> "MaintenanceTask":
        return cls(manager, interval=settings.maintenance_interval)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> list[str]:
        actions = await self.manager.optimize_queue()
        removed = await self.manager.clear_logs()
        if removed > 0:
            actions.append(f"Cleared {removed} old processing log records")
        self.runs += 1
        return actions

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                self.failures += 1
                self._log.error(f"Queue maintenance failed: {e}", extra={"error": str(e)})
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except TimeoutError:
                continue

    def start(self) -> "asyncio.Task[None]":
        if self._task is not None and not self._task.done():
            return self._task
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="livequeue-maintenance")
        self._log.info(
            f"Queue maintenance scheduled every {self.interval:g}s",
            extra={"interval": self.interval},
        )
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
