"""Registry of periodic and one-shot jobs keyed by (concern, pipeline_id).

All timing goes through a ``Clock`` so a test can replace real timers with a
virtual clock and advance it explicitly.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object]]
JobKey = Tuple[str, str]


class Clock(ABC):
    """Source of time and delayed callbacks."""

    @abstractmethod
    def now(self) -> float:
        """Current time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]):
        """Run ``callback`` after ``delay`` seconds; returns a handle with ``cancel()``."""


class LoopClock(Clock):
    """Clock backed by the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]):
        return self.loop.call_later(delay, callback)


class _Entry:
    """Timers and in-flight runs of one (concern, pipeline_id) key."""

    def __init__(self, periodic: bool, interval: Optional[float] = None):
        self.periodic = periodic
        self.interval = interval
        self.handles: List[object] = []
        self.tasks: Set[asyncio.Future] = set()
        self.stopped = False


class ScheduledTaskRegistry:
    """Start/stop lifecycle for every timer a pipeline view owns."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or LoopClock()
        self._entries: Dict[JobKey, _Entry] = {}
        self._inflight: Set[asyncio.Future] = set()

    def start_periodic(
        self,
        concern: str,
        pipeline_id: str,
        job: Job,
        interval: float,
        run_immediately: bool = True
    ) -> None:
        """Run ``job`` every ``interval`` seconds, replacing an existing job for the key.

        Args:
            concern: Name of the polling concern (e.g. "connector-status")
            pipeline_id: Pipeline the job belongs to
            job: Coroutine function to run
            interval: Seconds between runs
            run_immediately: Also run once right away
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        key = (concern, pipeline_id)
        self.stop(concern, pipeline_id)
        entry = _Entry(periodic=True, interval=interval)
        self._entries[key] = entry

        def tick():
            if entry.stopped:
                return
            entry.handles = [self.clock.call_later(interval, tick)]
            self._spawn(key, entry, job)

        if run_immediately:
            self._spawn(key, entry, job)
        entry.handles = [self.clock.call_later(interval, tick)]
        logger.debug(f"Started periodic job {concern} for pipeline {pipeline_id} every {interval}s")

    def schedule_once(self, concern: str, pipeline_id: str, job: Job, delay: float) -> None:
        """Run ``job`` once after ``delay`` seconds.

        Several one-shot jobs may share a key; ``stop`` cancels all of them.
        """
        key = (concern, pipeline_id)
        entry = self._entries.get(key)
        if entry is None or entry.periodic:
            if entry is not None:
                self.stop(concern, pipeline_id)
            entry = _Entry(periodic=False)
            self._entries[key] = entry

        handle = None

        def fire():
            if entry.stopped:
                return
            if handle in entry.handles:
                entry.handles.remove(handle)
            self._spawn(key, entry, job)

        handle = self.clock.call_later(delay, fire)
        entry.handles.append(handle)

    def stop(self, concern: str, pipeline_id: str) -> bool:
        """Cancel the timers and in-flight runs of one key.

        Returns:
            True if something was registered for the key
        """
        entry = self._entries.pop((concern, pipeline_id), None)
        if entry is None:
            return False
        entry.stopped = True
        for handle in entry.handles:
            handle.cancel()
        entry.handles = []
        for task in list(entry.tasks):
            task.cancel()
        logger.debug(f"Stopped job {concern} for pipeline {pipeline_id}")
        return True

    def stop_pipeline(self, pipeline_id: str) -> int:
        """Stop every concern of a pipeline; returns how many were stopped."""
        keys = [key for key in self._entries if key[1] == pipeline_id]
        for concern, _ in keys:
            self.stop(concern, pipeline_id)
        if keys:
            logger.info(f"Stopped {len(keys)} scheduled job(s) for pipeline {pipeline_id}")
        return len(keys)

    def stop_all(self) -> None:
        for concern, pipeline_id in list(self._entries):
            self.stop(concern, pipeline_id)

    def is_active(self, concern: str, pipeline_id: str) -> bool:
        entry = self._entries.get((concern, pipeline_id))
        return entry is not None and (entry.periodic or bool(entry.handles) or bool(entry.tasks))

    def active_keys(self) -> List[JobKey]:
        return [key for key in self._entries if self.is_active(*key)]

    def pending_timers(self, pipeline_id: Optional[str] = None) -> int:
        """Number of armed timers, optionally for one pipeline."""
        return sum(
            len(entry.handles)
            for key, entry in self._entries.items()
            if pipeline_id is None or key[1] == pipeline_id
        )

    async def drain(self) -> None:
        """Wait until no job is running, including jobs started while waiting."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _spawn(self, key: JobKey, entry: _Entry, job: Job) -> None:
        task = asyncio.ensure_future(self._run(key, job))
        entry.tasks.add(task)
        self._inflight.add(task)

        def done(finished):
            entry.tasks.discard(finished)
            self._inflight.discard(finished)

        task.add_done_callback(done)

    async def _run(self, key: JobKey, job: Job) -> None:
        concern, pipeline_id = key
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Scheduled job {concern} for pipeline {pipeline_id} failed: {e}", exc_info=True)
