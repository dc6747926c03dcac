"""Tests for queue workers."""

import asyncio
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from sellibra.artifacts import TempArtifactStore
from sellibra.errors import InsufficientQuotaError
from sellibra.jobs.memory import InMemoryTransport
from sellibra.jobs.models import Job, JobOptions, JobState
from sellibra.jobs.queue import JobQueue, QueueDefinition
from sellibra.jobs.worker import Worker, WorkerPool
from sellibra.operations import MockOperations, OperationExecutor
from sellibra.quota.manager import QuotaManager
from sellibra.quota.store import QuotaStore

CONTENT = {"user_id": "u1", "token_amount": 1, "content_type": "tags", "product_info": {}}


async def drain(worker: Worker, transport: InMemoryTransport, job_id: str) -> None:
    """Run the worker until the job is terminal, waiting out backoff delays."""
    for _ in range(200):
        await worker.run_once()
        job = await transport.get(job_id)
        if job.is_terminal:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"Job {job_id} never finished")


class TestWorker:
    """Tests for Worker."""

    @pytest.fixture
    def definition(self, fast_definitions: dict[str, QueueDefinition]) -> QueueDefinition:
        return fast_definitions["ai-generate-content"]

    @pytest.fixture
    def queue(self, transport: InMemoryTransport, fast_definitions) -> JobQueue:
        return JobQueue(transport, fast_definitions, poll_interval=0.01)

    @pytest.mark.asyncio
    async def test_run_once_empty_queue(self, transport: InMemoryTransport, definition) -> None:
        async def processor(job: Job) -> dict:
            raise AssertionError("should not run")

        worker = Worker(transport, definition, processor)
        assert await worker.run_once() is False

    @pytest.mark.asyncio
    async def test_success(self, transport: InMemoryTransport, definition, queue: JobQueue) -> None:
        async def processor(job: Job) -> dict:
            return {"echo": job.payload["user_id"]}

        handle = await queue.enqueue(definition.name, CONTENT)
        worker = Worker(transport, definition, processor)

        assert await worker.run_once() is True

        job = await transport.get(handle.job_id)
        assert job.state == JobState.COMPLETED
        assert job.result == {"echo": "u1"}
        assert job.attempts_made == 1

    @pytest.mark.asyncio
    async def test_retry_bound_and_backoff(
        self, transport: InMemoryTransport, definition, queue: JobQueue
    ) -> None:
        """A failing job runs exactly max_attempts times with doubling delays."""
        calls = []

        async def processor(job: Job) -> dict:
            calls.append(job.attempts_made)
            raise RuntimeError("provider down")

        handle = await queue.enqueue(definition.name, CONTENT)
        worker = Worker(transport, definition, processor)

        with patch.object(transport, "fail", wraps=transport.fail) as fail_spy:
            await drain(worker, transport, handle.job_id)

        assert calls == [1, 2, 3]
        delays = [c.kwargs.get("retry_delay") for c in fail_spy.call_args_list]
        assert delays == [0.01, 0.02, None]

        job = await transport.get(handle.job_id)
        assert job.state == JobState.FAILED
        assert job.failure_reason == "provider down"
        assert job.error_type == "RuntimeError"
        assert job.attempts_made == 3

    @pytest.mark.asyncio
    async def test_unrecoverable_error_fails_immediately(
        self, transport: InMemoryTransport, definition, queue: JobQueue
    ) -> None:
        calls = []

        async def processor(job: Job) -> dict:
            calls.append(job.attempts_made)
            raise InsufficientQuotaError("u1", 1, 0)

        handle = await queue.enqueue(definition.name, CONTENT)
        worker = Worker(transport, definition, processor)
        await drain(worker, transport, handle.job_id)

        job = await transport.get(handle.job_id)
        assert calls == [1]
        assert job.state == JobState.FAILED
        assert job.error_type == "InsufficientQuotaError"

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(
        self, transport: InMemoryTransport, definition, queue: JobQueue
    ) -> None:
        async def processor(job: Job) -> dict:
            await asyncio.wait_for(asyncio.sleep(1), timeout=job.timeout_seconds)
            return {}

        handle = await queue.enqueue(
            definition.name, CONTENT, JobOptions(timeout_seconds=0.05, max_attempts=1)
        )
        worker = Worker(transport, definition, processor)
        await worker.run_once()

        job = await transport.get(handle.job_id)
        assert job.state == JobState.FAILED
        assert "timed out" in job.failure_reason

    @pytest.mark.asyncio
    async def test_start_and_stop(self, transport: InMemoryTransport, definition, queue: JobQueue) -> None:
        async def processor(job: Job) -> dict:
            return {"ok": True}

        worker = Worker(transport, definition, processor, poll_interval=0.01)
        worker.start()
        assert worker.is_running

        handle = await queue.enqueue(definition.name, CONTENT)
        assert await handle.wait(1) == {"ok": True}

        await worker.stop(timeout=1)
        assert not worker.is_running

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, transport: InMemoryTransport, definition, queue: JobQueue) -> None:
        running = 0
        peak = 0

        async def processor(job: Job) -> dict:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1
            return {}

        handles = [await queue.enqueue(definition.name, CONTENT) for _ in range(6)]
        worker = Worker(transport, definition, processor, poll_interval=0.01)
        worker.start()
        try:
            await asyncio.gather(*(h.wait(2) for h in handles))
        finally:
            await worker.stop(timeout=1)

        assert peak == definition.concurrency


class TestWorkerPool:
    """Tests for WorkerPool."""

    @pytest.mark.asyncio
    async def test_one_worker_per_queue(self, transport: InMemoryTransport, fast_definitions) -> None:
        async def processor(job: Job) -> dict:
            return {}

        pool = WorkerPool(transport, fast_definitions, processor, poll_interval=0.01)
        assert set(pool.workers) == set(fast_definitions)

        pool.start()
        assert pool.is_running
        await pool.stop(timeout=1)
        assert not pool.is_running


class SlowFirstAttemptOperations(MockOperations):
    """Background removal that is slow on its first call only."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.calls = 0

    async def remove_background(self, image_path: Path) -> bytes:
        self.calls += 1
        if self.calls == 1:
            await asyncio.sleep(self.delay)
        return await super().remove_background(image_path)


class TestChargingNearTimeout:
    """A slow token consume after the operation never leads to a second charge."""

    @pytest.mark.asyncio
    async def test_slow_consume_is_charged_once(
        self,
        transport: InMemoryTransport,
        fast_definitions: dict[str, QueueDefinition],
        quota_manager: QuotaManager,
        quota_store: QuotaStore,
        artifacts: TempArtifactStore,
    ) -> None:
        quota_store.create_user(40, user_id="u1")
        operations = SlowFirstAttemptOperations(delay=0.25)
        executor = OperationExecutor(operations, quota_manager, artifacts)
        definition = fast_definitions["ai-remove-background"]
        queue = JobQueue(transport, fast_definitions, poll_interval=0.01)
        image = artifacts.stage(b"png", ".png")

        consume = quota_store.conditional_consume

        def slow_consume(*args, **kwargs):
            time.sleep(0.2)
            return consume(*args, **kwargs)

        handle = await queue.enqueue(
            definition.name,
            {"user_id": "u1", "token_amount": 4, "image_path": str(image)},
            JobOptions(timeout_seconds=0.35),
        )
        worker = Worker(transport, definition, executor.process_job)

        with patch.object(quota_store, "conditional_consume", side_effect=slow_consume):
            await drain(worker, transport, handle.job_id)

        job = await transport.get(handle.job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 1
        assert operations.calls == 1
        assert quota_store.read("u1").daily_tokens == 36

    @pytest.mark.asyncio
    async def test_slow_operation_still_times_out(
        self,
        transport: InMemoryTransport,
        fast_definitions: dict[str, QueueDefinition],
        quota_manager: QuotaManager,
        quota_store: QuotaStore,
        artifacts: TempArtifactStore,
    ) -> None:
        quota_store.create_user(40, user_id="u1")
        operations = SlowFirstAttemptOperations(delay=1.0)
        executor = OperationExecutor(operations, quota_manager, artifacts)
        definition = fast_definitions["ai-remove-background"]
        queue = JobQueue(transport, fast_definitions, poll_interval=0.01)
        image = artifacts.stage(b"png", ".png")

        handle = await queue.enqueue(
            definition.name,
            {"user_id": "u1", "token_amount": 4, "image_path": str(image)},
            JobOptions(timeout_seconds=0.1),
        )
        worker = Worker(transport, definition, executor.process_job)
        await drain(worker, transport, handle.job_id)

        job = await transport.get(handle.job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 2
        assert quota_store.read("u1").daily_tokens == 36
