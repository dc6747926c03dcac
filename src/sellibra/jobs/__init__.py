"""
Job queue module.

Named queues with per-queue worker concurrency, retries with exponential
backoff and a timeout-bounded wait, over pluggable transports (in-memory
and Redis).
"""

from sellibra.jobs.base import JobTransport
from sellibra.jobs.factory import create_transport, initialize_transport
from sellibra.jobs.memory import InMemoryTransport
from sellibra.jobs.models import Job, JobOptions, JobState, RetentionPolicy
from sellibra.jobs.payloads import (
    BasePayload,
    GenerateContentPayload,
    ImageToImagePayload,
    RemoveBackgroundPayload,
    TextToImagePayload,
    parse_payload,
    validate_payload,
)
from sellibra.jobs.queue import (
    DEFAULT_QUEUES,
    JobHandle,
    JobQueue,
    QueueDefinition,
    build_queue_definitions,
)
from sellibra.jobs.redis import RedisTransport
from sellibra.jobs.worker import Worker, WorkerPool

__all__ = [
    "BasePayload",
    "DEFAULT_QUEUES",
    "GenerateContentPayload",
    "ImageToImagePayload",
    "InMemoryTransport",
    "Job",
    "JobHandle",
    "JobOptions",
    "JobQueue",
    "JobState",
    "JobTransport",
    "QueueDefinition",
    "RedisTransport",
    "RemoveBackgroundPayload",
    "RetentionPolicy",
    "TextToImagePayload",
    "Worker",
    "WorkerPool",
    "build_queue_definitions",
    "create_transport",
    "initialize_transport",
    "parse_payload",
    "validate_payload",
]
