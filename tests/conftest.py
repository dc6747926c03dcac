"""Pytest configuration and fixtures."""

import os
import tempfile
from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest
import pytest_asyncio

from sellibra.artifacts import TempArtifactStore
from sellibra.config import Settings
from sellibra.db.manager import DatabaseManager
from sellibra.jobs.memory import InMemoryTransport
from sellibra.jobs.queue import QueueDefinition
from sellibra.quota.manager import QuotaConfig, QuotaManager
from sellibra.quota.store import QuotaStore


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    yield db_path
    # Cleanup, including WAL side files
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass


@pytest.fixture
def db_manager(temp_db_path: str) -> Generator[DatabaseManager, None, None]:
    """Create a DatabaseManager with a temporary database."""
    manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}")
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def quota_store(db_manager: DatabaseManager) -> QuotaStore:
    return QuotaStore(db_manager)


@pytest.fixture
def quota_manager(quota_store: QuotaStore) -> QuotaManager:
    """Quota manager with the default 40 token / 24h allowance."""
    return QuotaManager(quota_store, QuotaConfig(daily_tokens=40, reset_hours=24))


@pytest_asyncio.fixture
async def transport() -> AsyncGenerator[InMemoryTransport, None]:
    """Connected in-memory job transport."""
    memory = InMemoryTransport()
    await memory.connect()
    yield memory
    await memory.close()


@pytest.fixture
def artifacts(tmp_path: Path) -> TempArtifactStore:
    return TempArtifactStore(tmp_path / "temp")


@pytest.fixture
def fast_definitions() -> dict[str, QueueDefinition]:
    """Queue definitions with short timeouts and backoff for tests."""
    return {
        "ai-remove-background": QueueDefinition(
            name="ai-remove-background",
            job_type="remove-background",
            concurrency=2,
            timeout_seconds=1.0,
            max_attempts=3,
            backoff_seconds=0.01,
            token_cost=4,
        ),
        "ai-generate-content": QueueDefinition(
            name="ai-generate-content",
            job_type="generate-content",
            concurrency=2,
            timeout_seconds=1.0,
            max_attempts=3,
            backoff_seconds=0.01,
            token_cost=1,
        ),
    }


@pytest.fixture
def settings(temp_db_path: str, tmp_path: Path) -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{temp_db_path}",
        queue_backend="memory",
        temp_dir=tmp_path / "temp",
        worker_poll_interval=0.01,
        job_backoff_seconds=0.01,
    )
