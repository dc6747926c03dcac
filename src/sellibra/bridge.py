"""
Request/worker bridge.

Every AI request goes through ``RequestBridge.execute``: an early quota
check, then either a queued job awaited with a bounded wait or, when the
queue cannot take work, the same operation run in-process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from sellibra.errors import (
    InsufficientQuotaError,
    JobExecutionError,
    QueueUnavailableError,
    UserNotFoundError,
)
from sellibra.jobs.payloads import BasePayload, validate_payload
from sellibra.jobs.queue import JobHandle, JobQueue
from sellibra.operations import OperationExecutor
from sellibra.quota.manager import QuotaManager

logger = logging.getLogger(__name__)


class ExecutionMode(str, Enum):
    QUEUED = "queued"
    DIRECT = "direct"


@dataclass
class BridgeResult:
    """Result of a bridged operation and how it was produced."""

    data: dict[str, Any]
    mode: ExecutionMode
    job_id: str | None = None


class RequestBridge:
    """
    Routes AI requests to the job queue or runs them in-process.

    Tokens are consumed only by the ``OperationExecutor``, on whichever
    path runs the operation.
    """

    def __init__(
        self,
        quota: QuotaManager,
        queue: JobQueue,
        executor: OperationExecutor,
        wait_factor: float = 1.5,
        wait_overrides: dict[str, float] | None = None,
    ) -> None:
        """
        Initialize the bridge.

        Args:
            quota: Quota manager used for the early check
            queue: Job queue
            executor: Runs operations on the in-process path
            wait_factor: Outer wait as a multiple of each queue's job timeout
            wait_overrides: Explicit outer wait in seconds per queue

        Raises:
            ValueError: If a queue's wait does not exceed its job timeout
        """
        self._quota = quota
        self._queue = queue
        self._executor = executor
        self._wait_seconds: dict[str, float] = {}

        overrides = wait_overrides or {}
        for name, definition in queue.definitions.items():
            wait = overrides.get(name, definition.timeout_seconds * wait_factor)
            if wait <= definition.timeout_seconds:
                raise ValueError(
                    f"Wait for {name} ({wait}s) must exceed its job timeout "
                    f"({definition.timeout_seconds}s)"
                )
            self._wait_seconds[name] = wait

    def wait_seconds(self, queue_name: str) -> float:
        self._queue.get_definition(queue_name)
        return self._wait_seconds[queue_name]

    def build_payload(
        self, queue_name: str, payload: BasePayload | dict[str, Any]
    ) -> BasePayload:
        """
        Validate a payload for a queue, charging its token cost by default.

        Raises:
            PayloadValidationError: Bad fields, or an image that was not
                staged in the temp directory
        """
        definition = self._queue.get_definition(queue_name)
        if isinstance(payload, dict) and "token_amount" not in payload:
            payload = {**payload, "token_amount": definition.token_cost}
        typed = validate_payload(definition.job_type, payload)
        self._executor.check_artifacts(typed)
        return typed

    async def execute(
        self,
        queue_name: str,
        payload: BasePayload | dict[str, Any],
        artifacts: Iterable[Path | str] = (),
    ) -> BridgeResult:
        """
        Run an AI operation for a request.

        Args:
            queue_name: Queue of the operation
            payload: Operation payload; ``token_amount`` defaults to the queue's cost
            artifacts: Request-scoped temp files, removed when the call returns

        Returns:
            BridgeResult with the operation result

        Raises:
            InsufficientQuotaError: Balance too low, before or after the work
            JobExecutionError: The queued job failed permanently
            WaitTimeoutError: The queued job did not finish in time; it keeps running
        """
        extra = list(artifacts)
        job_owned = False
        typed: BasePayload | None = None
        try:
            typed = self.build_payload(queue_name, payload)

            if not await self._quota.has_enough_tokens(typed.user_id, typed.token_amount):
                logger.info(f"Rejected {queue_name} for user {typed.user_id}: insufficient tokens")
                raise InsufficientQuotaError(typed.user_id, typed.token_amount)

            if self._queue.is_available(queue_name):
                try:
                    handle = await self._queue.enqueue(queue_name, typed)
                except QueueUnavailableError as e:
                    logger.warning(f"{e}. Running {queue_name} in-process")
                else:
                    # The job now owns the payload's files
                    job_owned = True
                    data = await self._await_job(handle, typed)
                    return BridgeResult(data, ExecutionMode.QUEUED, handle.job_id)
            else:
                logger.warning(f"Queue {queue_name} unavailable. Running in-process")

            data = await self._executor.run(typed)
            return BridgeResult(data, ExecutionMode.DIRECT)

        finally:
            if not job_owned:
                extra += _payload_artifacts(typed or payload)
            self._executor.artifacts.cleanup(extra)

    async def _await_job(self, handle: JobHandle, payload: BasePayload) -> dict[str, Any]:
        try:
            return await handle.wait(self._wait_seconds[handle.queue_name])
        except JobExecutionError as e:
            if e.error_type == InsufficientQuotaError.__name__:
                raise InsufficientQuotaError(payload.user_id, payload.token_amount) from e
            if e.error_type == UserNotFoundError.__name__:
                raise UserNotFoundError(payload.user_id) from e
            raise


def _payload_artifacts(payload: BasePayload | dict[str, Any]) -> list[Path]:
    if isinstance(payload, BasePayload):
        return payload.artifact_paths()
    image_path = payload.get("image_path")
    return [Path(image_path)] if image_path else []
