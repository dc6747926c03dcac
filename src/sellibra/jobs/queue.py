"""
Named job queues on top of a transport.

``JobQueue`` validates payloads against the queue they are sent to,
stores jobs through the transport and hands back a ``JobHandle`` the
caller can wait on.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Any

from sellibra.config import Settings
from sellibra.errors import (
    JobExecutionError,
    QueueUnavailableError,
    UnknownQueueError,
    WaitTimeoutError,
)
from sellibra.jobs.base import JobTransport
from sellibra.jobs.factory import initialize_transport
from sellibra.jobs.models import Job, JobOptions, JobState, RetentionPolicy
from sellibra.jobs.payloads import BasePayload, validate_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueDefinition:
    """Static configuration of one named queue."""

    name: str
    job_type: str
    concurrency: int
    timeout_seconds: float
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    token_cost: int = 1

    def with_overrides(self, **overrides: Any) -> QueueDefinition:
        """Return a copy with the given fields replaced."""
        known = {f.name for f in dataclasses.fields(self)} - {"name"}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown queue settings for {self.name}: {sorted(unknown)}")
        return dataclasses.replace(self, **overrides)


DEFAULT_QUEUES: tuple[QueueDefinition, ...] = (
    QueueDefinition(
        name="ai-remove-background",
        job_type="remove-background",
        concurrency=3,
        timeout_seconds=60,
        token_cost=4,
    ),
    QueueDefinition(
        name="ai-text-to-image",
        job_type="text-to-image",
        concurrency=2,
        timeout_seconds=120,
        token_cost=4,
    ),
    QueueDefinition(
        name="ai-image-to-image",
        job_type="image-to-image",
        concurrency=2,
        timeout_seconds=120,
        token_cost=4,
    ),
    QueueDefinition(
        name="ai-generate-content",
        job_type="generate-content",
        concurrency=5,
        timeout_seconds=60,
        token_cost=1,
    ),
)


def build_queue_definitions(settings: Settings) -> dict[str, QueueDefinition]:
    """Apply the configured job defaults and per-queue overrides."""
    definitions: dict[str, QueueDefinition] = {}
    for default in DEFAULT_QUEUES:
        definition = dataclasses.replace(
            default,
            max_attempts=settings.job_max_attempts,
            backoff_seconds=settings.job_backoff_seconds,
        )
        overrides = settings.queue_overrides.get(default.name)
        if overrides:
            definition = definition.with_overrides(**overrides)
        definitions[definition.name] = definition

    unknown = set(settings.queue_overrides) - set(definitions)
    if unknown:
        logger.warning(f"Ignoring overrides for unknown queues: {sorted(unknown)}")
    return definitions


class JobHandle:
    """Reference to an enqueued job."""

    def __init__(self, job: Job, transport: JobTransport, poll_interval: float = 0.25) -> None:
        self.job_id = job.id
        self.queue_name = job.queue_name
        self.timeout_seconds = job.timeout_seconds
        self._transport = transport
        self._poll_interval = poll_interval

    async def status(self) -> Job | None:
        """Current snapshot of the job, or None once pruned."""
        return await self._transport.get(self.job_id)

    async def wait(self, timeout: float) -> dict[str, Any]:
        """
        Wait for the job to finish and return its result.

        The job is not cancelled when the wait expires.

        Raises:
            WaitTimeoutError: The job did not finish within ``timeout``
            JobExecutionError: The job failed permanently
        """
        try:
            job = await self._transport.wait_for(
                self.job_id, timeout, poll_interval=self._poll_interval
            )
        except asyncio.TimeoutError:
            logger.warning(f"Gave up waiting for job {self.job_id} after {timeout}s")
            raise WaitTimeoutError(self.job_id, timeout) from None

        if job.state == JobState.FAILED:
            raise JobExecutionError(
                job.id,
                job.failure_reason,
                error_type=job.error_type,
                attempts_made=job.attempts_made,
            )
        return job.result or {}


class JobQueue:
    """
    Registry of named queues sharing one transport.

    A queue without a transport, or whose transport failed to connect, is
    unavailable: ``enqueue`` raises ``QueueUnavailableError``.
    """

    def __init__(
        self,
        transport: JobTransport | None,
        definitions: dict[str, QueueDefinition],
        poll_interval: float = 0.25,
        retention: RetentionPolicy | None = None,
    ) -> None:
        self.transport = transport
        self.definitions = definitions
        self.retention = retention or RetentionPolicy()
        self._poll_interval = poll_interval

    async def connect(self) -> bool:
        return await initialize_transport(self.transport)

    async def close(self) -> None:
        if self.transport is not None:
            await self.transport.close()

    def is_available(self, queue_name: str | None = None) -> bool:
        """Check whether jobs can currently be enqueued."""
        if self.transport is None or not self.transport.is_connected:
            return False
        return queue_name is None or queue_name in self.definitions

    def get_definition(self, queue_name: str) -> QueueDefinition:
        try:
            return self.definitions[queue_name]
        except KeyError:
            raise UnknownQueueError(queue_name) from None

    async def enqueue(
        self,
        queue_name: str,
        payload: BasePayload | dict[str, Any],
        options: JobOptions | None = None,
    ) -> JobHandle:
        """
        Validate and store a job.

        Args:
            queue_name: Target queue
            payload: Payload matching the queue's job type
            options: Per-job overrides of the queue defaults

        Returns:
            JobHandle for waiting on the job

        Raises:
            UnknownQueueError: No such queue
            PayloadValidationError: Payload does not fit the queue
            QueueUnavailableError: The transport cannot accept the job
        """
        definition = self.get_definition(queue_name)
        typed = validate_payload(definition.job_type, payload)
        options = options or JobOptions()

        if self.transport is None or not self.transport.is_connected:
            raise QueueUnavailableError(queue_name, "transport not connected")

        job = Job.create(
            queue_name=queue_name,
            job_type=definition.job_type,
            payload=typed.model_dump(mode="json"),
            max_attempts=options.max_attempts or definition.max_attempts,
            timeout_seconds=options.timeout_seconds or definition.timeout_seconds,
            backoff_seconds=(
                options.backoff_seconds
                if options.backoff_seconds is not None
                else definition.backoff_seconds
            ),
        )

        try:
            stored = await self.transport.add(job)
        except Exception as e:
            logger.error(f"Failed to enqueue job on {queue_name}: {e}")
            raise QueueUnavailableError(queue_name, str(e)) from e

        logger.info(f"Enqueued job {stored.id} on {queue_name} for user {typed.user_id}")
        return JobHandle(stored, self.transport, poll_interval=self._poll_interval)

    async def get_job(self, job_id: str) -> Job | None:
        if self.transport is None:
            return None
        return await self.transport.get(job_id)

    async def counts(self) -> dict[str, dict[str, int]]:
        """Job counts per state for every queue."""
        if not self.is_available():
            return {}
        return {name: await self.transport.counts(name) for name in self.definitions}

    async def requeue_expired(self) -> int:
        """Recover jobs whose worker lease expired, across all queues."""
        if self.transport is None:
            return 0

        recovered = 0
        for name in self.definitions:
            try:
                recovered += await self.transport.requeue_expired(name)
            except Exception as e:
                logger.error(f"Lease reaping failed for {name}: {e}")
        return recovered

    async def prune(self) -> int:
        """Apply the retention policy to every queue."""
        if self.transport is None:
            return 0

        pruned = 0
        for name in self.definitions:
            try:
                pruned += await self.transport.prune(name, self.retention)
            except Exception as e:
                logger.error(f"Pruning failed for {name}: {e}")
        return pruned
