"""Abstract base class for job transports."""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any

from sellibra.errors import JobExecutionError
from sellibra.jobs.models import Job, RetentionPolicy


class JobTransport(ABC):
    """
    Storage and dispatch primitive behind the job queue.

    Implementations must make ``claim`` and the state transitions atomic:
    a job is handed to at most one worker per attempt, and a transition
    only applies while the caller still holds the attempt it claimed.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Unique identifier for this transport.

        Returns:
            Transport name (e.g., 'memory', 'redis')
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """
        Check if the transport is connected and healthy.

        Returns:
            True if connected, False otherwise
        """
        ...

    @abstractmethod
    async def connect(self) -> bool:
        """
        Establish the connection.

        Returns:
            True if connected successfully
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""
        ...

    @abstractmethod
    async def add(self, job: Job) -> Job:
        """
        Persist a new job in the waiting state.

        Raises:
            ConnectionError: If the job could not be stored
        """
        ...

    @abstractmethod
    async def claim(self, queue_name: str, lease_grace_seconds: float) -> Job | None:
        """
        Hand the next due job of a queue to the caller.

        Promotes delayed jobs whose backoff has elapsed, marks the claimed
        job active, counts the attempt and sets its lease to
        ``now + timeout_seconds + lease_grace_seconds``.

        Returns:
            The claimed job, or None if the queue is empty
        """
        ...

    @abstractmethod
    async def complete(self, job_id: str, attempt: int, result: dict[str, Any]) -> bool:
        """
        Mark an active job completed.

        Args:
            job_id: Job identifier
            attempt: Attempt number the caller claimed
            result: JSON-serializable result

        Returns:
            False if the caller no longer owns the attempt
        """
        ...

    @abstractmethod
    async def fail(
        self,
        job_id: str,
        attempt: int,
        reason: str,
        error_type: str | None = None,
        retry_delay: float | None = None,
    ) -> bool:
        """
        Record a failed attempt.

        Args:
            job_id: Job identifier
            attempt: Attempt number the caller claimed
            reason: Failure message
            error_type: Exception class name
            retry_delay: Seconds until the retry, or None to fail permanently

        Returns:
            False if the caller no longer owns the attempt
        """
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Job | None:
        """Get a job by id."""
        ...

    @abstractmethod
    async def requeue_expired(self, queue_name: str) -> int:
        """
        Recover active jobs whose lease expired.

        Jobs with attempts left go back to waiting; the others fail.

        Returns:
            Number of recovered jobs
        """
        ...

    @abstractmethod
    async def prune(self, queue_name: str, retention: RetentionPolicy) -> int:
        """
        Delete finished jobs outside the retention policy.

        Returns:
            Number of deleted jobs
        """
        ...

    @abstractmethod
    async def counts(self, queue_name: str) -> dict[str, int]:
        """
        Count jobs per state.

        Returns:
            Dict mapping state name to job count
        """
        ...

    async def wait_for(self, job_id: str, timeout: float, poll_interval: float = 0.25) -> Job:
        """
        Wait until a job reaches a terminal state.

        Polls ``get``; transports with a notification mechanism may
        override this.

        Raises:
            asyncio.TimeoutError: If the job is still running at the deadline
            JobExecutionError: If the job no longer exists
        """
        deadline = time.monotonic() + timeout
        while True:
            job = await self.get(job_id)
            if job is None:
                raise JobExecutionError(job_id, "Job no longer exists")
            if job.is_terminal:
                return job

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise asyncio.TimeoutError(f"Job {job_id} still {job.state.value}")
            await asyncio.sleep(min(poll_interval, remaining))

    async def health_check(self) -> dict[str, Any]:
        """
        Perform a health check on the transport.

        Returns:
            Dict with health status info
        """
        return {
            "transport": self.name,
            "connected": self.is_connected,
        }
