"""Polling a media job until it reaches a terminal state.

``PollerMachine`` is the state machine: it owns the attempt counter and
decides, for each observed job, whether polling continues. ``StatusPoller``
drives it with a query function and a ticker. Every non-terminal answer,
recognized or not, consumes one attempt, so polling always stops after at
most ``max_attempts`` queries.
"""

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from video_ingest.config import settings
from video_ingest.errors import PollTimeout, ProcessingFailed
from video_ingest.media_service import JobState, ProcessingJob

logger = logging.getLogger("vis.client")

GENERIC_FAILURE_MESSAGE = "Video processing failed"
TIMEOUT_MESSAGE = "Processing timeout. Please try again."


class PollStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


@dataclass(frozen=True)
class PollOutcome:
    status: PollStatus
    job: ProcessingJob | None
    attempts: int
    message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is PollStatus.ACTIVE

    def raise_for_status(self) -> "PollOutcome":
        if self.status is PollStatus.FAILED:
            raise ProcessingFailed(self.message or GENERIC_FAILURE_MESSAGE)
        if self.status is PollStatus.TIMEOUT:
            raise PollTimeout(self.message or TIMEOUT_MESSAGE)
        return self


@dataclass
class PollerMachine:
    job_id: str
    max_attempts: int
    state: JobState = JobState.QUEUED
    attempts: int = 0
    progress_percent: int | None = None
    error: str | None = None
    last_job: ProcessingJob | None = None
    outcome: PollOutcome | None = field(default=None)

    @property
    def done(self) -> bool:
        return self.outcome is not None

    def observe(self, job: ProcessingJob) -> PollOutcome | None:
        """Apply one poll response; returns the outcome once terminal."""
        if self.done:
            raise RuntimeError("poller already reached a terminal state")
        self.last_job = job
        self.state = job.state

        if job.state is JobState.ACTIVE:
            self.progress_percent = 100
            self.outcome = PollOutcome(PollStatus.ACTIVE, job, self.attempts + 1)
            return self.outcome
        if job.state is JobState.FAILED:
            self.error = job.error or GENERIC_FAILURE_MESSAGE
            self.outcome = PollOutcome(PollStatus.FAILED, job, self.attempts + 1, self.error)
            return self.outcome

        if job.state is JobState.PROCESSING:
            self.progress_percent = job.progress_percent or 0
        self.attempts += 1
        if self.attempts >= self.max_attempts:
            self.outcome = PollOutcome(PollStatus.TIMEOUT, job, self.attempts, TIMEOUT_MESSAGE)
            return self.outcome
        return None


class Ticker(Protocol):
    def wait(self, seconds: float) -> None: ...


class SleepTicker:
    def wait(self, seconds: float) -> None:
        time.sleep(seconds)


class StatusPoller:
    def __init__(
        self,
        query: Callable[[str], ProcessingJob],
        interval_seconds: float | None = None,
        max_attempts: int | None = None,
        ticker: Ticker | None = None,
        on_update: Callable[[PollerMachine], None] | None = None,
    ) -> None:
        self.query = query
        self.interval_seconds = settings.poll_interval_seconds if interval_seconds is None else interval_seconds
        self.max_attempts = settings.poll_max_attempts if max_attempts is None else max_attempts
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.ticker = ticker or SleepTicker()
        self.on_update = on_update

    def poll(self, job_id: str) -> PollOutcome:
        machine = PollerMachine(job_id=job_id, max_attempts=self.max_attempts)
        while True:
            job = self.query(job_id)
            outcome = machine.observe(job)
            logger.info(
                "job poll job_id=%s state=%s progress=%s attempts=%s",
                job_id,
                machine.state.value,
                machine.progress_percent,
                machine.attempts,
            )
            if self.on_update is not None:
                self.on_update(machine)
            if outcome is not None:
                return outcome
            self.ticker.wait(self.interval_seconds)
