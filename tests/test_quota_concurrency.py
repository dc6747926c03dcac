"""Concurrency tests for atomic token consumption."""

import asyncio
from datetime import timedelta

import pytest

from sellibra.errors import InsufficientQuotaError
from sellibra.quota.manager import QuotaManager
from sellibra.quota.store import QuotaStore, utcnow


async def consume_concurrently(
    quota_manager: QuotaManager, user_id: str, amount: int, requests: int
) -> tuple[list, list]:
    results = await asyncio.gather(
        *(quota_manager.consume_tokens(user_id, amount) for _ in range(requests)),
        return_exceptions=True,
    )
    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    return successes, failures


class TestConcurrentConsumption:
    """Parallel consumers never overdraw a balance."""

    @pytest.mark.asyncio
    async def test_exactly_balance_worth_of_successes(
        self, quota_manager: QuotaManager, quota_store: QuotaStore
    ) -> None:
        quota_store.create_user(40, user_id="u1")

        successes, failures = await consume_concurrently(quota_manager, "u1", 4, 20)

        assert len(successes) == 10
        assert len(failures) == 10
        assert all(isinstance(f, InsufficientQuotaError) for f in failures)
        assert quota_store.read("u1").daily_tokens == 0
        assert sorted(r.remaining_tokens for r in successes) == list(range(0, 40, 4))

    @pytest.mark.asyncio
    async def test_window_refills_once_under_contention(
        self, quota_manager: QuotaManager, quota_store: QuotaStore
    ) -> None:
        quota_store.create_user(0, user_id="u1", last_token_reset=utcnow() - timedelta(hours=25))

        successes, failures = await consume_concurrently(quota_manager, "u1", 4, 20)

        assert len(successes) == 10
        assert all(isinstance(f, InsufficientQuotaError) for f in failures)
        assert quota_store.read("u1").daily_tokens == 0
