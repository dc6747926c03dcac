"""Tests for the Redis job transport, running its Lua scripts on fakeredis."""

import asyncio
import json
import time
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis
import pytest
import pytest_asyncio

from sellibra.config import Settings
from sellibra.jobs.factory import create_transport, initialize_transport
from sellibra.jobs.memory import InMemoryTransport
from sellibra.jobs.models import Job, JobState, RetentionPolicy
from sellibra.jobs.redis import RedisTransport


def make_job(**kwargs) -> Job:
    payload = kwargs.pop("payload", {"user_id": "u1"})
    return Job.create(queue_name="q", job_type="generate-content", payload=payload, **kwargs)


@pytest.fixture
def fake() -> fakeredis.FakeAsyncRedis:
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())


@pytest_asyncio.fixture
async def redis_transport(
    fake: fakeredis.FakeAsyncRedis,
) -> AsyncGenerator[RedisTransport, None]:
    with patch("sellibra.jobs.redis.aioredis.from_url", return_value=fake):
        transport = RedisTransport(url="redis://localhost:6379/0", prefix="test:")
        assert await transport.connect() is True
        yield transport
        await transport.close()


class TestRedisTransport:
    """Tests for RedisTransport."""

    def test_name(self) -> None:
        assert RedisTransport().name == "redis"

    @pytest.mark.asyncio
    async def test_add_stores_hash_and_pushes_id(
        self, redis_transport: RedisTransport, fake: fakeredis.FakeAsyncRedis
    ) -> None:
        job = await redis_transport.add(make_job())

        fields = await fake.hgetall(f"test:job:{job.id}")
        assert json.loads(fields[b"state"]) == "waiting"
        assert json.loads(fields[b"payload"]) == {"user_id": "u1"}
        assert await fake.lrange("test:queue:q:waiting", 0, -1) == [job.id.encode()]

    @pytest.mark.asyncio
    async def test_claim_is_fifo(self, redis_transport: RedisTransport) -> None:
        first = await redis_transport.add(make_job())
        second = await redis_transport.add(make_job())

        assert (await redis_transport.claim("q", 30)).id == first.id
        assert (await redis_transport.claim("q", 30)).id == second.id
        assert await redis_transport.claim("q", 30) is None

    @pytest.mark.asyncio
    async def test_claim_sets_attempt_and_lease(
        self, redis_transport: RedisTransport, fake: fakeredis.FakeAsyncRedis
    ) -> None:
        added = await redis_transport.add(make_job(timeout_seconds=10))
        before = time.time()

        job = await redis_transport.claim("q", 5)

        assert job.state == JobState.ACTIVE
        assert job.attempts_made == 1
        assert before <= job.started_at <= time.time()
        assert job.lease_expires_at == pytest.approx(job.started_at + 15)
        assert await redis_transport.get(added.id) == job
        score = await fake.zscore("test:queue:q:active", added.id)
        assert score == pytest.approx(job.lease_expires_at)

    @pytest.mark.asyncio
    async def test_claim_keeps_large_numbers_exact(self, redis_transport: RedisTransport) -> None:
        payload = {
            "user_id": "u1",
            "content_type": "tags",
            "product_info": {"sku": 1234567890123456789, "price": 0.1, "title": "Mug"},
        }
        added = await redis_transport.add(make_job(payload=payload))

        claimed = await redis_transport.claim("q", 30)
        assert claimed.payload == payload

        result = {"listing_id": 9007199254740993}
        assert await redis_transport.complete(added.id, 1, result) is True

        stored = await redis_transport.get(added.id)
        assert stored.payload == payload
        assert stored.result == result

    @pytest.mark.asyncio
    async def test_claim_empty_queue(self, redis_transport: RedisTransport) -> None:
        assert await redis_transport.claim("q", 30) is None

    @pytest.mark.asyncio
    async def test_get_missing(self, redis_transport: RedisTransport) -> None:
        assert await redis_transport.get("missing") is None

    @pytest.mark.asyncio
    async def test_complete(self, redis_transport: RedisTransport) -> None:
        added = await redis_transport.add(make_job())
        await redis_transport.claim("q", 30)

        assert await redis_transport.complete(added.id, 1, {"ok": True}) is True

        job = await redis_transport.get(added.id)
        assert job.state == JobState.COMPLETED
        assert job.result == {"ok": True}
        assert job.lease_expires_at is None
        assert job.finished_at is not None
        counts = await redis_transport.counts("q")
        assert counts["active"] == 0
        assert counts["completed"] == 1

    @pytest.mark.asyncio
    async def test_transition_requires_current_attempt(
        self, redis_transport: RedisTransport
    ) -> None:
        added = await redis_transport.add(make_job())
        await redis_transport.claim("q", 30)

        assert await redis_transport.complete(added.id, 2, {}) is False
        assert (await redis_transport.get(added.id)).state == JobState.ACTIVE

        assert await redis_transport.complete(added.id, 1, {}) is True
        # Already finished: a late duplicate changes nothing
        assert await redis_transport.fail(added.id, 1, "late") is False
        assert (await redis_transport.get(added.id)).state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_fail_permanently(self, redis_transport: RedisTransport) -> None:
        added = await redis_transport.add(make_job())
        await redis_transport.claim("q", 30)

        assert await redis_transport.fail(added.id, 1, "boom", "RuntimeError") is True

        job = await redis_transport.get(added.id)
        assert job.state == JobState.FAILED
        assert job.failure_reason == "boom"
        assert job.error_type == "RuntimeError"
        assert (await redis_transport.counts("q"))["failed"] == 1

    @pytest.mark.asyncio
    async def test_fail_missing_job(self, redis_transport: RedisTransport) -> None:
        assert await redis_transport.fail("missing", 1, "boom") is False

    @pytest.mark.asyncio
    async def test_delayed_retry_is_promoted_when_due(
        self, redis_transport: RedisTransport
    ) -> None:
        added = await redis_transport.add(make_job())
        await redis_transport.claim("q", 30)
        await redis_transport.fail(added.id, 1, "boom", "RuntimeError", retry_delay=0.05)

        delayed = await redis_transport.get(added.id)
        assert delayed.state == JobState.DELAYED
        assert delayed.available_at is not None
        assert await redis_transport.claim("q", 30) is None

        await asyncio.sleep(0.1)
        job = await redis_transport.claim("q", 30)

        assert job.id == added.id
        assert job.state == JobState.ACTIVE
        assert job.attempts_made == 2
        assert job.available_at is None
        assert (await redis_transport.counts("q"))["delayed"] == 0

    @pytest.mark.asyncio
    async def test_requeue_expired(self, redis_transport: RedisTransport) -> None:
        added = await redis_transport.add(make_job(timeout_seconds=0.01))
        await redis_transport.claim("q", 0)
        await asyncio.sleep(0.05)

        assert await redis_transport.requeue_expired("q") == 1

        job = await redis_transport.get(added.id)
        assert job.state == JobState.WAITING
        assert job.lease_expires_at is None
        # The orphaned worker can no longer report its attempt
        assert await redis_transport.complete(added.id, 1, {}) is False

        reclaimed = await redis_transport.claim("q", 30)
        assert reclaimed.id == added.id
        assert reclaimed.attempts_made == 2

    @pytest.mark.asyncio
    async def test_requeue_expired_final_attempt_fails(
        self, redis_transport: RedisTransport
    ) -> None:
        added = await redis_transport.add(make_job(timeout_seconds=0.01, max_attempts=1))
        await redis_transport.claim("q", 0)
        await asyncio.sleep(0.05)

        assert await redis_transport.requeue_expired("q") == 1

        job = await redis_transport.get(added.id)
        assert job.state == JobState.FAILED
        assert job.error_type == "LeaseExpired"

    @pytest.mark.asyncio
    async def test_requeue_skips_live_leases(self, redis_transport: RedisTransport) -> None:
        await redis_transport.add(make_job())
        await redis_transport.claim("q", 30)

        assert await redis_transport.requeue_expired("q") == 0

    @pytest.mark.asyncio
    async def test_prune_keeps_newest_completed(self, redis_transport: RedisTransport) -> None:
        ids = []
        for _ in range(3):
            added = await redis_transport.add(make_job())
            await redis_transport.claim("q", 30)
            await redis_transport.complete(added.id, 1, {})
            ids.append(added.id)
            await asyncio.sleep(0.01)

        deleted = await redis_transport.prune("q", RetentionPolicy(completed_count=1))

        assert deleted == 2
        assert await redis_transport.get(ids[0]) is None
        assert await redis_transport.get(ids[2]) is not None
        assert (await redis_transport.counts("q"))["completed"] == 1

    @pytest.mark.asyncio
    async def test_prune_old_failures(self, redis_transport: RedisTransport) -> None:
        added = await redis_transport.add(make_job())
        await redis_transport.claim("q", 30)
        await redis_transport.fail(added.id, 1, "boom")

        deleted = await redis_transport.prune("q", RetentionPolicy(failed_age_seconds=0))

        assert deleted == 1
        assert await redis_transport.get(added.id) is None

    @pytest.mark.asyncio
    async def test_counts(self, redis_transport: RedisTransport) -> None:
        for _ in range(2):
            await redis_transport.add(make_job())
        await redis_transport.claim("q", 30)

        counts = await redis_transport.counts("q")

        assert counts == {"waiting": 1, "delayed": 0, "active": 1, "completed": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_health_check(self, redis_transport: RedisTransport) -> None:
        health = await redis_transport.health_check()

        assert health["connected"] is True
        assert "latency_ms" in health


class TestRedisConnection:
    """Connection handling with an unreachable server."""

    @pytest.fixture
    def client(self) -> MagicMock:
        client = MagicMock()
        client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        client.aclose = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_connect_failure(self, client: MagicMock) -> None:
        with patch("sellibra.jobs.redis.aioredis.from_url", return_value=client):
            transport = RedisTransport()
            assert await transport.connect() is False
        assert not transport.is_connected

    @pytest.mark.asyncio
    async def test_operations_raise_when_unreachable(self, client: MagicMock) -> None:
        with patch("sellibra.jobs.redis.aioredis.from_url", return_value=client):
            transport = RedisTransport()
            with pytest.raises(ConnectionError):
                await transport.add(make_job())

    @pytest.mark.asyncio
    async def test_close(self, fake: fakeredis.FakeAsyncRedis) -> None:
        with patch("sellibra.jobs.redis.aioredis.from_url", return_value=fake):
            transport = RedisTransport()
            await transport.connect()
            await transport.close()
        assert not transport.is_connected


class TestTransportFactory:
    """Tests for create_transport."""

    def test_memory(self) -> None:
        settings = Settings(_env_file=None, queue_backend="memory")
        assert isinstance(create_transport(settings), InMemoryTransport)

    def test_redis_without_url_falls_back(self) -> None:
        settings = Settings(_env_file=None, queue_backend="redis", redis_url=None)
        assert isinstance(create_transport(settings), InMemoryTransport)

    def test_redis(self) -> None:
        settings = Settings(_env_file=None, queue_backend="redis", redis_url="redis://r:6379/1")
        assert isinstance(create_transport(settings), RedisTransport)

    def test_disabled(self) -> None:
        settings = Settings(_env_file=None, queue_backend="disabled")
        assert create_transport(settings) is None

    def test_unknown(self) -> None:
        with pytest.raises(ValueError):
            create_transport(Settings(_env_file=None), backend="kafka")

    @pytest.mark.asyncio
    async def test_initialize_failure_leaves_transport_disconnected(self) -> None:
        client = MagicMock()
        client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        with patch("sellibra.jobs.redis.aioredis.from_url", return_value=client):
            transport = RedisTransport()
            assert await initialize_transport(transport) is False
        assert not transport.is_connected

    @pytest.mark.asyncio
    async def test_initialize_none(self) -> None:
        assert await initialize_transport(None) is False
