"""
Fixed-Interval Task Scheduler

Runs named coroutine functions on independent timers. Each tick starts the
job as its own task, so a run that outlasts its interval does not delay the
next tick; jobs must therefore tolerate overlapping runs.

A failing run is logged and counted and never stops its timer.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..core.metrics import record_task_run

logger = logging.getLogger(__name__)


@dataclass
class ScheduledTask:
    name: str
    interval_seconds: float
    fn: Callable[[], Awaitable[Any]]
    run_immediately: bool = False
    runs: int = 0
    failures: int = 0
    last_run_at: Optional[float] = None
    last_error: Optional[str] = None


class Scheduler:
    """
    Usage:
        scheduler = Scheduler()
        scheduler.every("pricing_pass", 900, runner.run_pass, run_immediately=True)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self):
        self._tasks: dict[str, ScheduledTask] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._in_flight: set[asyncio.Task] = set()
        self._running = False

    def every(
        self,
        name: str,
        interval_seconds: float,
        fn: Callable[[], Awaitable[Any]],
        run_immediately: bool = False,
    ) -> ScheduledTask:
        """Register a job. Jobs added after start() begin immediately."""
        if name in self._tasks:
            raise ValueError(f"Task already scheduled: {name}")
        if interval_seconds <= 0:
            raise ValueError(f"Interval must be positive, got {interval_seconds}")

        task = ScheduledTask(name, interval_seconds, fn, run_immediately)
        self._tasks[name] = task
        if self._running:
            self._timers[name] = asyncio.create_task(self._timer(task))
        return task

    @property
    def tasks(self) -> dict[str, ScheduledTask]:
        return dict(self._tasks)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for name, task in self._tasks.items():
            self._timers[name] = asyncio.create_task(self._timer(task))
        logger.info(f"[scheduler] Started {len(self._tasks)} tasks: {', '.join(self._tasks)}")

    async def stop(self, grace_seconds: float = 30.0) -> None:
        """
        Cancel all timers, then give in-flight runs up to grace_seconds to
        finish before cancelling whatever is still running.
        """
        self._running = False
        timers = list(self._timers.values())
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

        in_flight = set(self._in_flight)
        if in_flight and grace_seconds > 0:
            logger.info(f"[scheduler] Waiting up to {grace_seconds:.0f}s for {len(in_flight)} running tasks")
            _, in_flight = await asyncio.wait(in_flight, timeout=grace_seconds)
        if in_flight:
            logger.warning(f"[scheduler] Cancelling {len(in_flight)} tasks still running")
            for run in in_flight:
                run.cancel()
            await asyncio.gather(*in_flight, return_exceptions=True)

        self._timers.clear()
        self._in_flight.clear()
        logger.info("[scheduler] Stopped")

    async def run_now(self, name: str) -> bool:
        """Run a job once, outside its timer. Returns True on success."""
        return await self._execute(self._tasks[name])

    async def _timer(self, task: ScheduledTask) -> None:
        if task.run_immediately:
            self._spawn(task)
        while self._running:
            await asyncio.sleep(task.interval_seconds)
            self._spawn(task)

    def _spawn(self, task: ScheduledTask) -> None:
        run = asyncio.create_task(self._execute(task))
        self._in_flight.add(run)
        run.add_done_callback(self._in_flight.discard)

    async def _execute(self, task: ScheduledTask) -> bool:
        start = time.time()
        task.last_run_at = start
        task.runs += 1
        try:
            await task.fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            task.failures += 1
            task.last_error = f"{type(e).__name__}: {e}"
            record_task_run(task.name, success=False)
            logger.error(f"[scheduler] Task {task.name} failed after {time.time() - start:.1f}s: {task.last_error}")
            return False

        record_task_run(task.name, success=True)
        logger.debug(f"[scheduler] Task {task.name} completed in {time.time() - start:.1f}s")
        return True
