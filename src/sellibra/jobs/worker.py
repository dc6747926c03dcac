"""
Queue workers.

A ``Worker`` runs ``concurrency`` consumer tasks against one queue. Each
consumer claims a job, runs the processor and records the outcome:
completion, a delayed retry with exponential backoff, or a permanent
failure.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from sellibra.errors import UnrecoverableJobError
from sellibra.jobs.base import JobTransport
from sellibra.jobs.models import Job
from sellibra.jobs.queue import QueueDefinition

logger = logging.getLogger(__name__)

# Processors enforce ``job.timeout_seconds`` themselves and raise
# asyncio.TimeoutError when it expires. Work they finish after the
# timeout check, such as charging tokens, must not be cancelled.
JobProcessor = Callable[[Job], Awaitable[dict[str, Any]]]


class Worker:
    """Consumes one named queue."""

    def __init__(
        self,
        transport: JobTransport,
        definition: QueueDefinition,
        processor: JobProcessor,
        poll_interval: float = 0.5,
        lease_grace_seconds: float = 30.0,
    ) -> None:
        """
        Initialize the worker.

        Args:
            transport: Job transport shared with the producers
            definition: Queue to consume
            processor: Coroutine function turning a job into its result
            poll_interval: Idle wait between claims on an empty queue
            lease_grace_seconds: Extra lease time beyond the job timeout
        """
        self.transport = transport
        self.definition = definition
        self._processor = processor
        self._poll_interval = poll_interval
        self._lease_grace = lease_grace_seconds
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Spawn one consumer task per unit of concurrency."""
        if self.is_running:
            logger.warning(f"Worker for {self.definition.name} already running")
            return

        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._consume(i), name=f"{self.definition.name}-{i}")
            for i in range(self.definition.concurrency)
        ]
        logger.info(
            f"Worker started for {self.definition.name} "
            f"(concurrency: {self.definition.concurrency})"
        )

    async def stop(self, timeout: float = 10.0) -> None:
        """
        Stop consuming; in-flight jobs get ``timeout`` seconds to finish.

        Jobs still running after that are cancelled and recovered later by
        lease reaping.
        """
        self._stopping.set()
        if not self._tasks:
            return

        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} busy consumers of {self.definition.name}")

        self._tasks = []
        logger.info(f"Worker stopped for {self.definition.name}")

    async def _consume(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except Exception as e:
                logger.error(f"Consumer {self.definition.name}-{index} error: {e}")
                processed = False

            if not processed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def run_once(self) -> bool:
        """
        Claim and process at most one job.

        Returns:
            True if a job was processed
        """
        job = await self.transport.claim(self.definition.name, self._lease_grace)
        if job is None:
            return False
        await self.process_job(job)
        return True

    async def process_job(self, job: Job) -> None:
        """Run a claimed job and record its outcome."""
        logger.info(
            f"Processing job {job.id} ({job.job_type}) "
            f"attempt {job.attempts_made}/{job.max_attempts}"
        )

        try:
            result = await self._processor(job)
        except asyncio.TimeoutError as e:
            await self._handle_failure(job, e, f"Job timed out after {job.timeout_seconds}s")
            return
        except Exception as e:
            await self._handle_failure(job, e, str(e) or type(e).__name__)
            return

        if await self.transport.complete(job.id, job.attempts_made, result):
            logger.info(f"Job {job.id} completed on attempt {job.attempts_made}")
        else:
            logger.warning(f"Job {job.id} finished after its lease was lost, result dropped")

    async def _handle_failure(self, job: Job, error: Exception, reason: str) -> None:
        error_type = type(error).__name__

        if isinstance(error, UnrecoverableJobError) or job.is_final_attempt:
            applied = await self.transport.fail(job.id, job.attempts_made, reason, error_type)
            if applied:
                logger.error(
                    f"Job {job.id} failed permanently after {job.attempts_made} "
                    f"attempt(s): {reason}"
                )
            return

        delay = job.backoff_delay(job.attempts_made)
        applied = await self.transport.fail(
            job.id, job.attempts_made, reason, error_type, retry_delay=delay
        )
        if applied:
            logger.warning(
                f"Job {job.id} attempt {job.attempts_made}/{job.max_attempts} failed: "
                f"{reason}. Retrying in {delay:.1f}s"
            )


class WorkerPool:
    """One ``Worker`` per queue definition."""

    def __init__(
        self,
        transport: JobTransport,
        definitions: dict[str, QueueDefinition],
        processor: JobProcessor,
        poll_interval: float = 0.5,
        lease_grace_seconds: float = 30.0,
    ) -> None:
        self.workers = {
            name: Worker(
                transport,
                definition,
                processor,
                poll_interval=poll_interval,
                lease_grace_seconds=lease_grace_seconds,
            )
            for name, definition in definitions.items()
        }

    @property
    def is_running(self) -> bool:
        return any(worker.is_running for worker in self.workers.values())

    def start(self) -> None:
        for worker in self.workers.values():
            worker.start()

    async def stop(self, timeout: float = 10.0) -> None:
        await asyncio.gather(*(w.stop(timeout) for w in self.workers.values()))
