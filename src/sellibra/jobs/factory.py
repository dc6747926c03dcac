"""Transport factory for creating job transports based on configuration."""

import logging

from sellibra.config import Settings
from sellibra.jobs.base import JobTransport
from sellibra.jobs.memory import InMemoryTransport
from sellibra.jobs.redis import RedisTransport

logger = logging.getLogger(__name__)


def create_transport(settings: Settings, backend: str | None = None) -> JobTransport | None:
    """
    Create a job transport instance.

    Args:
        settings: Application settings
        backend: Backend type ("memory", "redis" or "disabled"), defaults to config

    Returns:
        JobTransport instance, or None when queueing is disabled

    Raises:
        ValueError: If backend type is unknown
    """
    backend_type = backend or settings.queue_backend

    if backend_type == "disabled":
        logger.info("Job queue disabled, AI operations run in-process")
        return None

    elif backend_type == "memory":
        return InMemoryTransport()

    elif backend_type == "redis":
        if not settings.redis_url:
            logger.warning(
                "Redis URL not configured, falling back to in-memory job transport. "
                "Set REDIS_URL environment variable to share jobs across processes."
            )
            return InMemoryTransport()

        return RedisTransport(url=settings.redis_url, prefix=settings.redis_prefix)

    else:
        raise ValueError(f"Unknown queue backend: {backend_type}")


async def initialize_transport(transport: JobTransport | None) -> bool:
    """
    Connect a transport during startup.

    A failed connection is logged and leaves the transport disconnected;
    the queue then reports itself unavailable.

    Returns:
        True if the transport is ready
    """
    if transport is None:
        return False

    connected = await transport.connect()
    if connected:
        logger.info(f"Initialized {transport.name} job transport")
    else:
        logger.warning(f"Failed to connect {transport.name} job transport, queue unavailable")
    return connected
