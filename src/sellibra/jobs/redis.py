"""Redis job transport implementation."""

import json
import logging
import time
from typing import Any, Iterable

import redis.asyncio as aioredis

from sellibra.jobs.base import JobTransport
from sellibra.jobs.models import Job, JobState, RetentionPolicy

logger = logging.getLogger(__name__)

# Job records are hashes of JSON-encoded field values. The scripts only
# ever write the state fields below and never decode the payload or result.

# KEYS: waiting, delayed, active. ARGV: now, lease grace, job key prefix.
CLAIM_SCRIPT = """
local now = tonumber(ARGV[1])
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[2], id)
  local key = ARGV[3] .. id
  if redis.call('EXISTS', key) == 1 then
    redis.call('HSET', key, 'state', '"waiting"', 'available_at', 'null')
    redis.call('LPUSH', KEYS[1], id)
  end
end
while true do
  local id = redis.call('RPOP', KEYS[1])
  if not id then
    return false
  end
  local key = ARGV[3] .. id
  if redis.call('HGET', key, 'state') == '"waiting"' then
    local timeout = tonumber(redis.call('HGET', key, 'timeout_seconds'))
    local lease = string.format('%.17g', now + timeout + tonumber(ARGV[2]))
    redis.call('HSET', key, 'state', '"active"', 'started_at', ARGV[1], 'lease_expires_at', lease)
    redis.call('HINCRBY', key, 'attempts_made', 1)
    redis.call('ZADD', KEYS[3], lease, id)
    return redis.call('HGETALL', key)
  end
end
"""

# KEYS: job, active, destination.
# ARGV: expected attempt, job id, 'list' or 'zset', score, then field/value pairs.
TRANSITION_SCRIPT = """
if redis.call('HGET', KEYS[1], 'state') ~= '"active"' then
  return 0
end
if tonumber(redis.call('HGET', KEYS[1], 'attempts_made')) ~= tonumber(ARGV[1]) then
  return 0
end
for i = 5, #ARGV, 2 do
  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
redis.call('ZREM', KEYS[2], ARGV[2])
if ARGV[3] == 'list' then
  redis.call('LPUSH', KEYS[3], ARGV[2])
else
  redis.call('ZADD', KEYS[3], ARGV[4], ARGV[2])
end
return 1
"""

# Fields a transition may change
STATE_FIELDS = (
    "state",
    "result",
    "failure_reason",
    "error_type",
    "finished_at",
    "lease_expires_at",
    "available_at",
)


def _text(value: str | bytes) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisTransport(JobTransport):
    """
    Redis job transport shared by API processes and workers.

    Layout under the key prefix:
    - ``job:{id}``: hash of the job's fields, each value JSON-encoded
    - ``queue:{name}:waiting``: list of ready job ids (LPUSH / RPOP)
    - ``queue:{name}:delayed``: zset scored by ``available_at``
    - ``queue:{name}:active``: zset scored by lease expiry
    - ``queue:{name}:completed`` / ``:failed``: zsets scored by ``finished_at``

    Claims and state transitions run as Lua scripts, so they are atomic
    on the server. Payloads and results are written only from Python, so
    they round-trip exactly.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "sellibra:",
        max_connections: int = 20,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
    ) -> None:
        """
        Initialize the Redis transport.

        Args:
            url: Redis connection URL
            prefix: Key prefix for namespacing
            max_connections: Maximum connections in pool
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Connection timeout in seconds
        """
        self._url = url
        self._prefix = prefix
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._client: Any = None
        self._claim_script: Any = None
        self._transition_script: Any = None
        self._connected = False

    @property
    def name(self) -> str:
        return "redis"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}job:{job_id}"

    def _queue_key(self, queue_name: str, part: str) -> str:
        return f"{self._prefix}queue:{queue_name}:{part}"

    @staticmethod
    def _serialize(job: Job, names: Iterable[str] | None = None) -> dict[str, str]:
        data = job.to_dict()
        if names is not None:
            data = {name: data[name] for name in names}
        return {name: json.dumps(value) for name, value in data.items()}

    @staticmethod
    def _deserialize(fields: dict[Any, Any] | list[Any] | None) -> Job | None:
        """Build a job from HGETALL output, as a mapping or a flat field/value list."""
        if not fields:
            return None
        if isinstance(fields, list):
            fields = dict(zip(fields[::2], fields[1::2]))
        return Job.from_dict({_text(k): json.loads(v) for k, v in fields.items()})

    async def connect(self) -> bool:
        """
        Connect to Redis and register the Lua scripts.

        Returns:
            True if connected successfully
        """
        if self._connected and self._client:
            return True

        try:
            self._client = aioredis.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                decode_responses=False,  # We handle encoding ourselves
            )

            # Test connection
            await self._client.ping()
            self._claim_script = self._client.register_script(CLAIM_SCRIPT)
            self._transition_script = self._client.register_script(TRANSITION_SCRIPT)
            self._connected = True
            logger.info(f"Connected to Redis at {self._url}")
            return True

        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self._connected = False
            return False

    async def _ensure_connected(self) -> None:
        """Connect on demand; raise if Redis is unreachable."""
        if not self._connected and not await self.connect():
            raise ConnectionError(f"Redis at {self._url} is unreachable")

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            self._connected = False
            logger.info("Redis connection closed")

    async def add(self, job: Job) -> Job:
        await self._ensure_connected()
        job.state = JobState.WAITING

        async with self._client.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.id), mapping=self._serialize(job))
            pipe.lpush(self._queue_key(job.queue_name, "waiting"), job.id)
            await pipe.execute()

        logger.debug(f"Stored job {job.id} on {job.queue_name}")
        return job

    async def claim(self, queue_name: str, lease_grace_seconds: float) -> Job | None:
        await self._ensure_connected()
        fields = await self._claim_script(
            keys=[
                self._queue_key(queue_name, "waiting"),
                self._queue_key(queue_name, "delayed"),
                self._queue_key(queue_name, "active"),
            ],
            args=[repr(time.time()), repr(float(lease_grace_seconds)), f"{self._prefix}job:"],
        )
        return self._deserialize(fields)

    async def _transition(
        self,
        job: Job,
        attempt: int,
        destination: str,
        score: float | None = None,
    ) -> bool:
        """Write the state fields if the caller still owns ``attempt``."""
        kind = "list" if destination == "waiting" else "zset"
        pairs = [
            item
            for field_value in self._serialize(job, STATE_FIELDS).items()
            for item in field_value
        ]
        applied = await self._transition_script(
            keys=[
                self._job_key(job.id),
                self._queue_key(job.queue_name, "active"),
                self._queue_key(job.queue_name, destination),
            ],
            args=[attempt, job.id, kind, repr(float(score or 0)), *pairs],
        )
        return bool(applied)

    async def complete(self, job_id: str, attempt: int, result: dict[str, Any]) -> bool:
        await self._ensure_connected()
        job = await self.get(job_id)
        if job is None:
            return False

        job.state = JobState.COMPLETED
        job.result = result
        job.finished_at = time.time()
        job.lease_expires_at = None
        return await self._transition(job, attempt, "completed", job.finished_at)

    async def fail(
        self,
        job_id: str,
        attempt: int,
        reason: str,
        error_type: str | None = None,
        retry_delay: float | None = None,
    ) -> bool:
        await self._ensure_connected()
        job = await self.get(job_id)
        if job is None:
            return False
        return await self._apply_failure(job, attempt, reason, error_type, retry_delay)

    async def _apply_failure(
        self,
        job: Job,
        attempt: int,
        reason: str,
        error_type: str | None,
        retry_delay: float | None,
    ) -> bool:
        now = time.time()
        job.failure_reason = reason
        job.error_type = error_type
        job.lease_expires_at = None

        if retry_delay is None:
            job.state = JobState.FAILED
            job.finished_at = now
            return await self._transition(job, attempt, "failed", now)

        job.state = JobState.DELAYED
        job.available_at = now + retry_delay
        return await self._transition(job, attempt, "delayed", job.available_at)

    async def get(self, job_id: str) -> Job | None:
        await self._ensure_connected()
        fields = await self._client.hgetall(self._job_key(job_id))
        return self._deserialize(fields)

    async def requeue_expired(self, queue_name: str) -> int:
        await self._ensure_connected()
        expired = await self._client.zrangebyscore(
            self._queue_key(queue_name, "active"), "-inf", time.time()
        )

        recovered = 0
        for raw_id in expired:
            job_id = _text(raw_id)
            job = await self.get(job_id)
            if job is None:
                await self._client.zrem(self._queue_key(queue_name, "active"), job_id)
                continue

            attempt = job.attempts_made
            if job.is_final_attempt:
                applied = await self._apply_failure(
                    job, attempt, "Job lease expired", "LeaseExpired", None
                )
                if applied:
                    logger.error(f"Job {job_id} lease expired on final attempt, marked failed")
            else:
                job.state = JobState.WAITING
                job.lease_expires_at = None
                applied = await self._transition(job, attempt, "waiting")
                if applied:
                    logger.warning(f"Job {job_id} lease expired, returned to waiting")
            recovered += int(applied)

        return recovered

    async def _delete(self, queue_name: str, part: str, job_ids: list[Any]) -> int:
        if not job_ids:
            return 0
        ids = [_text(i) for i in job_ids]
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zrem(self._queue_key(queue_name, part), *ids)
            pipe.delete(*[self._job_key(i) for i in ids])
            await pipe.execute()
        return len(ids)

    async def prune(self, queue_name: str, retention: RetentionPolicy) -> int:
        await self._ensure_connected()
        now = time.time()
        completed_key = self._queue_key(queue_name, "completed")
        failed_key = self._queue_key(queue_name, "failed")

        deleted = await self._delete(
            queue_name,
            "completed",
            await self._client.zrangebyscore(
                completed_key, "-inf", now - retention.completed_age_seconds
            ),
        )
        # Keep only the newest ``completed_count`` entries
        deleted += await self._delete(
            queue_name,
            "completed",
            await self._client.zrevrange(completed_key, retention.completed_count, -1),
        )
        deleted += await self._delete(
            queue_name,
            "failed",
            await self._client.zrangebyscore(
                failed_key, "-inf", now - retention.failed_age_seconds
            ),
        )

        if deleted:
            logger.info(f"Pruned {deleted} finished jobs from {queue_name}")
        return deleted

    async def counts(self, queue_name: str) -> dict[str, int]:
        await self._ensure_connected()
        async with self._client.pipeline(transaction=False) as pipe:
            pipe.llen(self._queue_key(queue_name, "waiting"))
            pipe.zcard(self._queue_key(queue_name, "delayed"))
            pipe.zcard(self._queue_key(queue_name, "active"))
            pipe.zcard(self._queue_key(queue_name, "completed"))
            pipe.zcard(self._queue_key(queue_name, "failed"))
            waiting, delayed, active, completed, failed = await pipe.execute()

        return {
            JobState.WAITING.value: int(waiting),
            JobState.DELAYED.value: int(delayed),
            JobState.ACTIVE.value: int(active),
            JobState.COMPLETED.value: int(completed),
            JobState.FAILED.value: int(failed),
        }

    async def health_check(self) -> dict[str, Any]:
        """Check Redis health."""
        result: dict[str, Any] = {
            "transport": self.name,
            "connected": self._connected,
            "url": self._url,
        }

        if not self._connected:
            return result

        try:
            latency_start = time.monotonic()
            await self._client.ping()
            result["latency_ms"] = round((time.monotonic() - latency_start) * 1000, 2)
        except Exception as e:
            result["connected"] = False
            result["error"] = str(e)

        return result
