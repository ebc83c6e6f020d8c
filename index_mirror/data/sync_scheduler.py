"""
Background task that keeps the mirror fresh on a fixed interval.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from index_mirror.data.mirror import RepositoryMirror
from index_mirror.domain.errors import RefreshError
from index_mirror.domain.models import SyncTask

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Invoke RepositoryMirror.refresh() every interval_seconds, measured from the
    start of one attempt to the start of the next.

    A failed refresh is retried on the next tick. Ticks that pass while a
    refresh is still running are skipped, so refreshes never overlap.
    """

    def __init__(
        self,
        mirror: RepositoryMirror,
        interval_seconds: float,
        run_immediately: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.mirror = mirror
        self.task = SyncTask(interval_seconds=interval_seconds)
        self.run_immediately = run_immediately
        self.last_started_at: Optional[float] = None
        self._clock = clock
        self._stop_event: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._in_flight = False

    @property
    def interval_seconds(self) -> float:
        return self.task.interval_seconds

    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def is_refreshing(self) -> bool:
        return self._in_flight

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event = asyncio.Event()
        self._loop_task = asyncio.create_task(self._run_loop(), name="index-mirror-sync")
        logger.info(f"Sync scheduler started (interval {self.interval_seconds}s)")

    def request_stop(self) -> None:
        """
        Ask the loop to exit after the current tick without waiting for it.
        """
        if self._stop_event is not None:
            self._stop_event.set()

    async def stop(self) -> None:
        """
        Stop the loop. An in-flight refresh is awaited, not cancelled.
        """
        if self._loop_task is None:
            return
        self.request_stop()
        try:
            await self._loop_task
        finally:
            self._loop_task = None
            self.task.next_run_at = None
        logger.info("Sync scheduler stopped")

    async def run_once(self) -> bool:
        """
        Run one refresh unless another one is in flight.

        Returns False when the tick was skipped.
        """
        if self._in_flight:
            logger.warning("Previous refresh still running, skipping tick")
            self.task.skipped_ticks += 1
            return False

        self._in_flight = True
        try:
            state = await self.mirror.refresh()
            logger.info(
                f"Refresh finished at revision {state.revision} ({state.last_synced_at.isoformat()})"
            )
        except RefreshError as e:
            logger.error(f"{e}; retrying at next tick")
        except Exception as e:
            logger.exception(f"Unexpected error during refresh: {e}")
        finally:
            self._in_flight = False
            self.task.runs += 1
        return True

    async def _run_loop(self) -> None:
        now = self._clock()
        next_run_at = now if self.run_immediately else now + self.interval_seconds
        self.task.next_run_at = next_run_at

        while True:
            if await self._wait(next_run_at - self._clock()):
                break
            started_at = self._clock()
            self.last_started_at = started_at
            await self.run_once()
            next_run_at = self._next_boundary(started_at)
            self.task.next_run_at = next_run_at

    def _next_boundary(self, started_at: float) -> float:
        interval = self.interval_seconds
        next_run_at = started_at + interval
        now = self._clock()
        if next_run_at < now:
            missed = int((now - next_run_at) // interval) + 1
            next_run_at += missed * interval
            self.task.skipped_ticks += missed
            logger.warning(f"Refresh overran {missed} tick(s); next run in {next_run_at - now:.1f}s")
        return next_run_at

    async def _wait(self, timeout: float) -> bool:
        """
        Sleep for timeout seconds. Returns True if stop was requested.
        """
        if self._stop_event.is_set():
            return True
        if timeout <= 0:
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True
