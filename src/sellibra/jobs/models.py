"""Job records and their lifecycle states."""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class JobState(str, Enum):
    """Lifecycle state of a job."""

    WAITING = "waiting"
    DELAYED = "delayed"  # Failed attempt waiting out its backoff
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


@dataclass
class JobOptions:
    """Per-enqueue overrides of the queue defaults."""

    timeout_seconds: float | None = None
    max_attempts: int | None = None
    backoff_seconds: float | None = None


@dataclass
class RetentionPolicy:
    """How long finished jobs are kept before pruning."""

    completed_age_seconds: float = 24 * 3600
    completed_count: int = 1000
    failed_age_seconds: float = 7 * 24 * 3600


@dataclass
class Job:
    """
    One unit of deferred work.

    Timestamps are epoch seconds. ``attempts_made`` is incremented when a
    worker claims the job, so inside a processor it is the number of the
    running attempt.
    """

    id: str
    queue_name: str
    job_type: str
    payload: dict[str, Any]
    max_attempts: int = 3
    timeout_seconds: float = 60.0
    backoff_seconds: float = 2.0
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    result: dict[str, Any] | None = None
    failure_reason: str | None = None
    error_type: str | None = None
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None
    lease_expires_at: float | None = None
    available_at: float | None = None

    @classmethod
    def create(
        cls,
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        max_attempts: int = 3,
        timeout_seconds: float = 60.0,
        backoff_seconds: float = 2.0,
    ) -> Job:
        return cls(
            id=uuid.uuid4().hex,
            queue_name=queue_name,
            job_type=job_type,
            payload=payload,
            max_attempts=max_attempts,
            timeout_seconds=timeout_seconds,
            backoff_seconds=backoff_seconds,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_final_attempt(self) -> bool:
        """True when no retry will follow a failure of the current attempt."""
        return self.attempts_made >= self.max_attempts

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the retry that follows ``attempt``: base * 2^(attempt-1)."""
        return self.backoff_seconds * (2 ** max(0, attempt - 1))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        values["state"] = JobState(values.get("state", JobState.WAITING.value))
        return cls(**values)
