"""Exception types shared by the quota, queue and bridge layers."""


class SellibraError(Exception):
    """Base class for all errors raised by this package."""

    code: str = "internal_error"
    status_code: int = 500


class UnrecoverableJobError(Exception):
    """
    Marker for failures that retrying cannot fix.

    Workers fail a job immediately, without backoff, when the processor
    raises an exception carrying this mixin.
    """


class QuotaError(SellibraError, UnrecoverableJobError):
    """Base class for token quota errors."""


class InsufficientQuotaError(QuotaError):
    """Raised when a user's effective balance does not cover the cost."""

    code = "insufficient_tokens"
    status_code = 403

    def __init__(self, user_id: str, requested: int, available: int | None = None) -> None:
        self.user_id = user_id
        self.requested = requested
        self.available = available
        super().__init__(
            "Insufficient tokens: daily token limit reached "
            f"(requested {requested}, available {available if available is not None else 'unknown'})"
        )


class UserNotFoundError(QuotaError):
    """Raised when no quota row exists for the user id."""

    code = "user_not_found"
    status_code = 500

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class QueueUnavailableError(SellibraError):
    """Raised when the job transport cannot accept work."""

    code = "queue_unavailable"
    status_code = 503

    def __init__(self, queue_name: str, reason: str | None = None) -> None:
        self.queue_name = queue_name
        self.reason = reason
        message = f"Queue {queue_name} is unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class UnknownQueueError(SellibraError):
    """Raised when a queue name has no registered definition."""

    code = "unknown_queue"
    status_code = 404

    def __init__(self, queue_name: str) -> None:
        self.queue_name = queue_name
        super().__init__(f"Unknown queue: {queue_name}")


class PayloadValidationError(SellibraError, UnrecoverableJobError):
    """Raised when a job payload does not match its queue's job type."""

    code = "invalid_payload"
    status_code = 422


class JobExecutionError(SellibraError):
    """Raised to a waiting caller when a job failed permanently."""

    code = "job_failed"
    status_code = 502

    def __init__(
        self,
        job_id: str,
        reason: str | None,
        error_type: str | None = None,
        attempts_made: int = 0,
    ) -> None:
        self.job_id = job_id
        self.reason = reason
        self.error_type = error_type
        self.attempts_made = attempts_made
        super().__init__(f"Job {job_id} failed after {attempts_made} attempt(s): {reason}")


class WaitTimeoutError(SellibraError):
    """
    Raised when the outer wait expires before the job finishes.

    The job itself keeps running and may still consume tokens.
    """

    code = "processing_timeout"
    status_code = 504

    def __init__(self, job_id: str, waited_seconds: float) -> None:
        self.job_id = job_id
        self.waited_seconds = waited_seconds
        super().__init__(
            f"Job {job_id} took too long (waited {waited_seconds:.1f}s), please try again later"
        )
