"""Main entry point for the Sellibra worker process."""

import asyncio
import logging
import signal
import sys
from typing import Any, NoReturn

from sellibra.artifacts import TempArtifactStore
from sellibra.bridge import RequestBridge
from sellibra.config import Settings, get_settings
from sellibra.db import DatabaseManager
from sellibra.jobs import (
    JobQueue,
    RetentionPolicy,
    WorkerPool,
    build_queue_definitions,
    create_transport,
)
from sellibra.logging_config import configure_logging
from sellibra.operations import AIOperations, OperationExecutor, load_operations
from sellibra.quota import QuotaConfig, QuotaManager, QuotaStore
from sellibra.scheduler import SchedulerService

logger = logging.getLogger(__name__)

LEASE_REAPER_INTERVAL_MINUTES = 1


class Application:
    """Constructs the services of one process and manages their lifecycle."""

    def __init__(
        self,
        settings: Settings | None = None,
        operations: AIOperations | None = None,
        run_workers: bool = True,
    ) -> None:
        """
        Initialize the application.

        Args:
            settings: Settings to use, defaults to the environment
            operations: AI operations, defaults to ``settings.ai_operations``
            run_workers: Consume the queues in this process
        """
        self.settings = settings = settings or get_settings()

        self.db_manager = DatabaseManager(
            database_url=settings.database_url,
            echo=settings.database_echo,
        )
        self.quota = QuotaManager(
            QuotaStore(self.db_manager),
            QuotaConfig(
                daily_tokens=settings.default_daily_tokens,
                reset_hours=settings.token_reset_hours,
            ),
        )
        self.artifacts = TempArtifactStore(settings.temp_dir)
        self.executor = OperationExecutor(
            operations or load_operations(settings.ai_operations),
            self.quota,
            self.artifacts,
        )

        definitions = build_queue_definitions(settings)
        self.transport = create_transport(settings)
        self.queue = JobQueue(
            self.transport,
            definitions,
            poll_interval=settings.worker_poll_interval,
            retention=RetentionPolicy(
                completed_age_seconds=settings.completed_job_retention_seconds,
                completed_count=settings.completed_job_retention_count,
                failed_age_seconds=settings.failed_job_retention_seconds,
            ),
        )
        self.bridge = RequestBridge(
            self.quota,
            self.queue,
            self.executor,
            wait_factor=settings.bridge_wait_factor,
        )

        self.workers: WorkerPool | None = None
        if run_workers and self.transport is not None:
            self.workers = WorkerPool(
                self.transport,
                definitions,
                self.executor.process_job,
                poll_interval=settings.worker_poll_interval,
                lease_grace_seconds=settings.lease_grace_seconds,
            )

        self.scheduler = SchedulerService()
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start the application services."""
        if self._started:
            return
        logger.info("Starting Sellibra...")

        await asyncio.to_thread(self.db_manager.init_db)
        logger.info("Database initialized")

        await self.queue.connect()
        if self.workers is not None:
            self.workers.start()

        self.scheduler.start()
        self._register_maintenance()
        self._started = True
        logger.info("Sellibra started")

    def _register_maintenance(self) -> None:
        settings = self.settings
        self.scheduler.add_job(
            job_id="lease_reaper",
            func=self.queue.requeue_expired,
            interval_minutes=LEASE_REAPER_INTERVAL_MINUTES,
        )
        self.scheduler.add_job(
            job_id="job_pruning",
            func=self.queue.prune,
            interval_minutes=settings.maintenance_interval_minutes,
        )
        self.scheduler.add_job(
            job_id="temp_cleanup",
            func=self.artifacts.sweep,
            interval_minutes=settings.maintenance_interval_minutes,
            kwargs={"max_age_minutes": settings.temp_file_max_age_minutes},
        )

    async def run_maintenance(self) -> dict[str, int]:
        """Run every maintenance task once."""
        sweep = await asyncio.to_thread(
            self.artifacts.sweep, self.settings.temp_file_max_age_minutes
        )
        return {
            "jobs_recovered": await self.queue.requeue_expired(),
            "jobs_pruned": await self.queue.prune(),
            "temp_files_deleted": sweep.count,
        }

    async def stop(self) -> None:
        """Stop all services gracefully."""
        logger.info("Stopping Sellibra...")
        if self.workers is not None:
            await self.workers.stop()
        self.scheduler.shutdown()
        await self.queue.close()
        self.db_manager.close()
        self._started = False
        logger.info("Sellibra stopped")

    async def health(self) -> dict[str, Any]:
        """Report the state of the database and the job queue."""
        database_ok = await asyncio.to_thread(self.db_manager.health_check)
        queue_available = self.queue.is_available()

        transport: dict[str, Any] = {}
        counts: dict[str, dict[str, int]] = {}
        if self.transport is not None:
            transport = await self.transport.health_check()
            try:
                counts = await self.queue.counts()
            except Exception as e:
                logger.warning(f"Failed to read job counts: {e}")

        return {
            "status": "healthy" if database_ok and queue_available else "degraded",
            "database": database_ok,
            "queue": {
                "available": queue_available,
                "transport": transport,
                "counts": counts,
            },
            "workers": self.workers is not None and self.workers.is_running,
            "scheduler": self.scheduler.is_running,
        }


async def run(application: Application) -> None:
    """Run until SIGINT or SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(signum: int) -> None:
        logger.info(f"Received signal {signum}")
        stop_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, signal_handler, signum)
        except NotImplementedError:
            # Not available on Windows; KeyboardInterrupt still stops the loop
            pass

    await application.start()
    logger.info("Sellibra worker running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await application.stop()


def main() -> NoReturn:
    """Main entry point."""
    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        asyncio.run(run(Application(settings)))
    except KeyboardInterrupt:
        pass

    sys.exit(0)


if __name__ == "__main__":
    main()
