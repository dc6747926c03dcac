"""
Token quota module.

Tracks a per-user daily token allowance on a rolling window and consumes
it with a single atomic conditional update.
"""

from sellibra.quota.manager import (
    ConsumeResult,
    QuotaBalance,
    QuotaConfig,
    QuotaManager,
    QuotaStatus,
)
from sellibra.quota.store import QuotaSnapshot, QuotaStore

__all__ = [
    "ConsumeResult",
    "QuotaBalance",
    "QuotaConfig",
    "QuotaManager",
    "QuotaSnapshot",
    "QuotaStatus",
    "QuotaStore",
]
