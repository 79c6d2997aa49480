"""
Supervision of a launched runner process.

Follows the runner's log and decides when it should stop: after its first
job in single mode, after an idle period without jobs, when it exits on its
own, or when shutdown is requested.
"""

import asyncio
import logging
from typing import Literal

from .watcher import RunnerEvent, RunnerLogWatcher

logger = logging.getLogger(__name__)

StopReason = Literal["single", "idle", "exited", "shutdown"]

IDLE_CHECK_INTERVAL = 5.0


class RunnerSupervisor:
    """
    Watches one runner process until a stop condition is met.

    The idle clock starts when supervision begins and restarts whenever a
    job ends; it never fires while a job is running.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        watcher: RunnerLogWatcher,
        idle_timeout: int = 0,
        single: bool = False,
        check_interval: float = IDLE_CHECK_INTERVAL,
    ):
        """
        Initialize the supervisor.

        Args:
            process: Runner process with stdout piped
            watcher: Classifier for the runner's log lines
            idle_timeout: Seconds without jobs before stopping; 0 disables
            single: Stop after the first finished job
            check_interval: Upper bound on the idle check period
        """
        self.process = process
        self.watcher = watcher
        self.idle_timeout = idle_timeout
        self.single = single
        self.check_interval = check_interval
        self.busy = False
        self.jobs_finished = 0
        self.last_activity = 0.0

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    def handle(self, event: RunnerEvent) -> bool:
        """Update state for an event; returns True when the runner should stop."""
        job = f"Job {event.job}" if event.job else "Job"
        if event.type == "ready":
            logger.info("Runner is ready and listening for jobs")
        elif event.type == "job_started":
            self.busy = True
            logger.info(f"{job} started")
        elif event.type == "job_ended":
            self.busy = False
            self.jobs_finished += 1
            self.last_activity = self._now()
            logger.info(f"{job} {'succeeded' if event.success else 'failed'}")
            return self.single
        return False

    async def _follow(self) -> StopReason:
        assert self.process.stdout is not None
        async for event in self.watcher.watch(self.process.stdout):
            if self.handle(event):
                return "single"
        await self.process.wait()
        logger.info(f"Runner exited with code {self.process.returncode}")
        return "exited"

    async def _idle(self) -> StopReason:
        interval = min(self.idle_timeout, self.check_interval)
        while True:
            await asyncio.sleep(interval)
            if not self.busy and self._now() - self.last_activity >= self.idle_timeout:
                logger.info(f"Runner idle for {self.idle_timeout}s")
                return "idle"

    async def _shutdown(self, event: asyncio.Event) -> StopReason:
        await event.wait()
        return "shutdown"

    async def run(self, shutdown: asyncio.Event) -> StopReason:
        """
        Supervise until a stop condition is met.

        Returns:
            Why supervision stopped
        """
        self.last_activity = self._now()
        tasks = [
            asyncio.create_task(self._follow()),
            asyncio.create_task(self._shutdown(shutdown)),
        ]
        if self.idle_timeout > 0:
            tasks.append(asyncio.create_task(self._idle()))

        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        # Several conditions can land in the same iteration; keep task order
        for task in tasks:
            if task in done:
                return task.result()
        raise RuntimeError("supervision ended without a stop condition")
