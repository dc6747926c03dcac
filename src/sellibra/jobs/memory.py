"""In-memory job transport implementation."""

import asyncio
import dataclasses
import logging
import time
from collections import deque
from typing import Any

from sellibra.errors import JobExecutionError
from sellibra.jobs.base import JobTransport
from sellibra.jobs.models import Job, JobState, RetentionPolicy

logger = logging.getLogger(__name__)


class InMemoryTransport(JobTransport):
    """
    Job transport keeping all state in process memory.

    Best for:
    - Single-process deployments where API and workers share a loop
    - Development and testing

    Limitations:
    - Jobs are lost on restart
    - Not shared across processes
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._waiting: dict[str, deque[str]] = {}
        self._events: dict[str, asyncio.Event] = {}
        self._lock = asyncio.Lock()
        self._connected = False

    @property
    def name(self) -> str:
        return "memory"

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        self._connected = True
        return True

    async def close(self) -> None:
        self._connected = False

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise ConnectionError("In-memory transport is closed")

    def _event(self, job_id: str) -> asyncio.Event:
        if job_id not in self._events:
            self._events[job_id] = asyncio.Event()
        return self._events[job_id]

    def _queue_jobs(self, queue_name: str, state: JobState | None = None) -> list[Job]:
        return [
            job
            for job in self._jobs.values()
            if job.queue_name == queue_name and (state is None or job.state == state)
        ]

    async def add(self, job: Job) -> Job:
        self._ensure_connected()
        async with self._lock:
            stored = dataclasses.replace(job, state=JobState.WAITING)
            self._jobs[job.id] = stored
            self._waiting.setdefault(job.queue_name, deque()).appendleft(job.id)
            self._event(job.id)
            return dataclasses.replace(stored)

    async def claim(self, queue_name: str, lease_grace_seconds: float) -> Job | None:
        self._ensure_connected()
        async with self._lock:
            now = time.time()
            waiting = self._waiting.setdefault(queue_name, deque())

            # Promote delayed jobs whose backoff has elapsed
            for job in self._queue_jobs(queue_name, JobState.DELAYED):
                if job.available_at is not None and job.available_at <= now:
                    job.state = JobState.WAITING
                    job.available_at = None
                    waiting.appendleft(job.id)

            while waiting:
                job = self._jobs.get(waiting.pop())
                if job is None or job.state != JobState.WAITING:
                    continue
                job.state = JobState.ACTIVE
                job.attempts_made += 1
                job.started_at = now
                job.lease_expires_at = now + job.timeout_seconds + lease_grace_seconds
                return dataclasses.replace(job)
            return None

    def _owned(self, job_id: str, attempt: int) -> Job | None:
        job = self._jobs.get(job_id)
        if job is None or job.state != JobState.ACTIVE or job.attempts_made != attempt:
            return None
        return job

    async def complete(self, job_id: str, attempt: int, result: dict[str, Any]) -> bool:
        self._ensure_connected()
        async with self._lock:
            job = self._owned(job_id, attempt)
            if job is None:
                return False
            job.state = JobState.COMPLETED
            job.result = result
            job.finished_at = time.time()
            job.lease_expires_at = None
            self._event(job_id).set()
            return True

    async def fail(
        self,
        job_id: str,
        attempt: int,
        reason: str,
        error_type: str | None = None,
        retry_delay: float | None = None,
    ) -> bool:
        self._ensure_connected()
        async with self._lock:
            job = self._owned(job_id, attempt)
            if job is None:
                return False
            self._record_failure(job, reason, error_type, retry_delay)
            return True

    def _record_failure(
        self,
        job: Job,
        reason: str,
        error_type: str | None,
        retry_delay: float | None,
    ) -> None:
        now = time.time()
        job.failure_reason = reason
        job.error_type = error_type
        job.lease_expires_at = None
        if retry_delay is None:
            job.state = JobState.FAILED
            job.finished_at = now
            self._event(job.id).set()
        else:
            job.state = JobState.DELAYED
            job.available_at = now + retry_delay

    async def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return dataclasses.replace(job) if job else None

    async def wait_for(self, job_id: str, timeout: float, poll_interval: float = 0.25) -> Job:
        """Wait on the job's completion event instead of polling."""
        if job_id not in self._jobs:
            raise JobExecutionError(job_id, "Job no longer exists")
        await asyncio.wait_for(self._event(job_id).wait(), timeout=timeout)
        job = await self.get(job_id)
        if job is None:
            raise JobExecutionError(job_id, "Job no longer exists")
        return job

    async def requeue_expired(self, queue_name: str) -> int:
        async with self._lock:
            now = time.time()
            recovered = 0
            for job in self._queue_jobs(queue_name, JobState.ACTIVE):
                if job.lease_expires_at is None or job.lease_expires_at > now:
                    continue
                recovered += 1
                if job.is_final_attempt:
                    self._record_failure(job, "Job lease expired", "LeaseExpired", None)
                    logger.error(f"Job {job.id} lease expired on final attempt, marked failed")
                else:
                    job.state = JobState.WAITING
                    job.lease_expires_at = None
                    self._waiting.setdefault(queue_name, deque()).appendleft(job.id)
                    logger.warning(f"Job {job.id} lease expired, returned to waiting")
            return recovered

    async def prune(self, queue_name: str, retention: RetentionPolicy) -> int:
        async with self._lock:
            now = time.time()
            doomed: list[str] = []

            completed = sorted(
                self._queue_jobs(queue_name, JobState.COMPLETED),
                key=lambda j: j.finished_at or 0,
                reverse=True,
            )
            for index, job in enumerate(completed):
                too_old = (now - (job.finished_at or now)) > retention.completed_age_seconds
                if too_old or index >= retention.completed_count:
                    doomed.append(job.id)

            for job in self._queue_jobs(queue_name, JobState.FAILED):
                if (now - (job.finished_at or now)) > retention.failed_age_seconds:
                    doomed.append(job.id)

            for job_id in doomed:
                del self._jobs[job_id]
                self._events.pop(job_id, None)
            return len(doomed)

    async def counts(self, queue_name: str) -> dict[str, int]:
        result = {state.value: 0 for state in JobState}
        for job in self._queue_jobs(queue_name):
            result[job.state.value] += 1
        return result

    async def health_check(self) -> dict[str, Any]:
        return {
            "transport": self.name,
            "connected": self._connected,
            "jobs": len(self._jobs),
        }
