"""In-process scheduled delivery.

Each pending job owns one asyncio task that sleeps until the job's fire time and
then hands the message to the mail transport. The registry maps job id to job
and keeps insertion order; every removal goes through ``Scheduler._release`` so
a job can leave the registry exactly once, whichever of fire/cancel/replace gets
there first.

Job ids are ``<recipient>-<epoch millis>``, so booking the same recipient for
the same millisecond twice collides: the later booking overwrites the earlier
one in the registry. Unlike a bare timer table, the earlier job's task is also
cancelled, so only the later message is ever sent and no timer is left running
without a registry entry to list or cancel it.

Nothing is persisted: pending jobs are lost when the process exits.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional
import asyncio
import logging
import threading

from mailcomposer.errors import InvalidScheduleTime
from mailcomposer.schemas import JobInfo, Message
from mailcomposer.utils.settings import utc_now


logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class JobState(str, Enum):
    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"


@dataclass(eq=False)
class ScheduledJob:
    id: str
    message: Message
    fire_time: datetime
    state: JobState = JobState.PENDING
    task: Optional[asyncio.Task] = field(default=None, repr=False)


def make_job_id(recipient: str, fire_time: datetime) -> str:
    """``<recipient>-<fire time in epoch milliseconds>``; same inputs, same id."""
    millis = (fire_time - EPOCH) // timedelta(milliseconds=1)
    return f"{recipient}-{millis}"


class Scheduler:
    def __init__(self, transport, clock: Callable[[], datetime] = utc_now,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.transport = transport
        self._clock = clock
        self._sleep = sleep
        self._jobs: dict[str, ScheduledJob] = {}
        self._lock = threading.Lock()
        # strong refs so a fired job whose entry is gone keeps its task alive
        self._tasks: set[asyncio.Task] = set()

    async def schedule(self, message: Message, fire_time: datetime) -> str:
        if fire_time.tzinfo is None or fire_time.utcoffset() is None:
            raise InvalidScheduleTime("Scheduled time must include a timezone")
        if fire_time <= self._clock():
            raise InvalidScheduleTime()

        job = ScheduledJob(id=make_job_id(message.recipient, fire_time), message=message, fire_time=fire_time)
        with self._lock:
            replaced = self._jobs.get(job.id)
            if replaced is not None:
                self._release(replaced, JobState.CANCELLED)
            self._jobs[job.id] = job
            job.task = asyncio.create_task(self._run_job(job), name=f"scheduled-email:{job.id}")
            self._tasks.add(job.task)
            job.task.add_done_callback(self._tasks.discard)
        if replaced is not None:
            replaced.task.cancel()
            logger.warning("Job %s was booked twice; the earlier booking was replaced", job.id)
        logger.info("Scheduled email to %s for %s (job %s)", message.recipient, fire_time.isoformat(), job.id)
        return job.id

    def list_jobs(self) -> list[JobInfo]:
        with self._lock:
            return [JobInfo(id=j.id, next_invocation=j.fire_time) for j in self._jobs.values()]

    def cancel_job(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not self._release(job, JobState.CANCELLED):
                return False
        job.task.cancel()
        logger.info("Cancelled scheduled email %s", job_id)
        return True

    async def shutdown(self) -> None:
        """Cancel every pending job and wait for their tasks to unwind."""
        with self._lock:
            jobs = list(self._jobs.values())
            for job in jobs:
                self._release(job, JobState.CANCELLED)
        tasks = [job.task for job in jobs if job.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if jobs:
            logger.info("Dropped %d pending scheduled emails on shutdown", len(jobs))

    def _release(self, job: ScheduledJob, state: JobState) -> bool:
        # caller holds self._lock
        if job.state is not JobState.PENDING:
            return False
        job.state = state
        if self._jobs.get(job.id) is job:
            del self._jobs[job.id]
        return True

    async def _run_job(self, job: ScheduledJob) -> None:
        delay = (job.fire_time - self._clock()).total_seconds()
        if delay > 0:
            await self._sleep(delay)
        with self._lock:
            if not self._release(job, JobState.FIRED):
                return
        logger.info("Executing scheduled email to %s (job %s)", job.message.recipient, job.id)
        try:
            await self.transport.send(job.message)
        except Exception:
            # consumed either way: no retry, no requeue
            logger.exception("Error sending scheduled email %s", job.id)
