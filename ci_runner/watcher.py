"""Classification of runner log output into lifecycle events."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Literal

from ci_common.models import RunnerLogPatterns

logger = logging.getLogger(__name__)

EventType = Literal["ready", "job_started", "job_ended"]


@dataclass
class RunnerEvent:
    """
    A state transition observed in a runner's log.

    job is set when the line carries a job identifier; success only for
    job_ended events.
    """

    type: EventType
    line: str
    job: str | None = None
    success: bool | None = None


class RunnerLogWatcher:
    """Turns runner log lines into RunnerEvents using a driver's patterns."""

    def __init__(self, patterns: RunnerLogPatterns):
        self.patterns = patterns

    def classify(self, line: str) -> RunnerEvent | None:
        """
        Classify one log line.

        Job endings are checked before job starts because some runners log
        both markers on the closing line.
        """
        patterns = self.patterns
        if patterns.job_ended.search(line):
            return RunnerEvent(
                type="job_ended",
                line=line,
                job=patterns.job_id(line),
                success=bool(patterns.job_ended_succeeded.search(line)),
            )
        if patterns.job_started.search(line):
            return RunnerEvent(type="job_started", line=line, job=patterns.job_id(line))
        if patterns.ready.search(line):
            return RunnerEvent(type="ready", line=line)
        return None

    async def watch(self, stream: asyncio.StreamReader) -> AsyncGenerator[RunnerEvent, None]:
        """
        Read stream until EOF, yielding an event for every recognized line.

        Every line is also echoed to the debug log.
        """
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode(errors="replace").rstrip("\n")
            logger.debug(line)
            event = self.classify(line)
            if event is not None:
                yield event
