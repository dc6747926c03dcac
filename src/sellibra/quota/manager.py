"""
Token quota service.

Enforces a per-user daily token allowance on a rolling window. The
authoritative operation, ``consume_tokens``, is a single conditional
update in the database; ``has_enough_tokens`` is an advisory read used to
reject early before expensive work starts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from sellibra.errors import InsufficientQuotaError, UserNotFoundError
from sellibra.quota.store import QuotaSnapshot, QuotaStore, utcnow

logger = logging.getLogger(__name__)


class QuotaStatus(str, Enum):
    """Current quota status."""

    OK = "ok"
    WARNING = "warning"  # Approaching limit
    EXCEEDED = "exceeded"


@dataclass
class QuotaConfig:
    """
    Token allowance configuration.

    The allowance is refilled once ``reset_hours`` have passed since the
    last refill.
    """

    daily_tokens: int = 40
    reset_hours: float = 24
    warning_threshold: float = 0.8  # Warn at 80% usage

    @property
    def window(self) -> timedelta:
        return timedelta(hours=self.reset_hours)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuotaConfig:
        return cls(
            daily_tokens=data.get("daily_tokens", 40),
            reset_hours=data.get("reset_hours", 24),
            warning_threshold=data.get("warning_threshold", 0.8),
        )


@dataclass
class ConsumeResult:
    """Outcome of a successful token consumption."""

    user_id: str
    consumed: int
    remaining_tokens: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class QuotaBalance:
    """Effective balance of a user at a point in time."""

    user_id: str
    effective_tokens: int
    """Tokens usable now (the allowance if the window has expired)."""

    stored_tokens: int
    """Committed value of ``daily_tokens``."""

    allowance: int
    last_token_reset: datetime
    next_reset_at: datetime
    window_expired: bool
    status: QuotaStatus = QuotaStatus.OK
    limits: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "daily_tokens": self.effective_tokens,
            "stored_tokens": self.stored_tokens,
            "allowance": self.allowance,
            "last_token_reset": self.last_token_reset.isoformat(),
            "next_reset_at": self.next_reset_at.isoformat(),
            "window_expired": self.window_expired,
            "status": self.status.value,
        }


class QuotaManager:
    """
    Manages the daily token allowance of users.

    Database calls run in a worker thread so callers on the event loop are
    never blocked.
    """

    def __init__(
        self,
        store: QuotaStore,
        config: QuotaConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the quota manager.

        Args:
            store: Storage for the per-user counters
            config: Allowance and window configuration
            clock: Source of naive UTC timestamps
        """
        self._store = store
        self.config = config or QuotaConfig()
        self._clock = clock

    def _window_expired(self, snapshot: QuotaSnapshot, now: datetime) -> bool:
        return now - snapshot.last_token_reset >= self.config.window

    def _effective_tokens(self, snapshot: QuotaSnapshot, now: datetime) -> int:
        if self._window_expired(snapshot, now):
            return self.config.daily_tokens
        return snapshot.daily_tokens

    async def _read(self, user_id: str) -> QuotaSnapshot:
        snapshot = await asyncio.to_thread(self._store.read, user_id)
        if snapshot is None:
            logger.error(f"Quota lookup for unknown user {user_id}")
            raise UserNotFoundError(user_id)
        return snapshot

    async def create_user(
        self,
        user_id: str | None = None,
        email: str | None = None,
    ) -> QuotaBalance:
        """Create a user holding the default allowance."""
        snapshot = await asyncio.to_thread(
            self._store.create_user,
            self.config.daily_tokens,
            user_id,
            email,
            self._clock(),
        )
        logger.info(f"Created user {snapshot.user_id} with {snapshot.daily_tokens} tokens")
        return self._build_balance(snapshot, self._clock())

    async def has_enough_tokens(self, user_id: str, amount: int) -> bool:
        """
        Advisory check of the effective balance.

        Inherently racy against concurrent consumers; use it only to
        reject early. ``consume_tokens`` is the authority.
        """
        snapshot = await self._read(user_id)
        return self._effective_tokens(snapshot, self._clock()) >= amount

    async def consume_tokens(self, user_id: str, amount: int) -> ConsumeResult:
        """
        Atomically consume tokens, refilling first if the window expired.

        Args:
            user_id: Owner of the allowance
            amount: Positive number of tokens to consume

        Returns:
            ConsumeResult with the new remaining balance

        Raises:
            InsufficientQuotaError: Effective balance is below ``amount``
            UserNotFoundError: No such user
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"Token amount must be a positive integer, got {amount!r}")

        now = self._clock()
        remaining = await asyncio.to_thread(
            self._store.conditional_consume,
            user_id,
            amount,
            self.config.daily_tokens,
            now - self.config.window,
            now,
        )

        if remaining is None:
            # Nothing matched: find out which guard rejected the update
            snapshot = await self._read(user_id)
            available = self._effective_tokens(snapshot, self._clock())
            logger.info(
                f"User {user_id} denied {amount} tokens (available: {available})"
            )
            raise InsufficientQuotaError(user_id, amount, available)

        logger.info(f"User {user_id} consumed {amount} tokens. Remaining: {remaining}")
        return ConsumeResult(user_id=user_id, consumed=amount, remaining_tokens=remaining)

    async def get_balance(self, user_id: str) -> QuotaBalance:
        """Get the effective balance without modifying it."""
        snapshot = await self._read(user_id)
        return self._build_balance(snapshot, self._clock())

    async def set_tokens(self, user_id: str, tokens: int) -> QuotaBalance:
        """
        Overwrite a user's balance and restart the window.

        Args:
            user_id: Owner of the allowance
            tokens: New balance (clamped at 0)
        """
        now = self._clock()
        snapshot = await asyncio.to_thread(self._store.overwrite, user_id, max(0, tokens), now)
        if snapshot is None:
            raise UserNotFoundError(user_id)
        logger.info(f"User {user_id} tokens updated to {snapshot.daily_tokens}")
        return self._build_balance(snapshot, now)

    async def reset_tokens(self, user_id: str) -> QuotaBalance:
        """Refill a user's balance to the default allowance."""
        return await self.set_tokens(user_id, self.config.daily_tokens)

    def _build_balance(self, snapshot: QuotaSnapshot, now: datetime) -> QuotaBalance:
        expired = self._window_expired(snapshot, now)
        effective = self._effective_tokens(snapshot, now)
        if expired:
            next_reset = now + self.config.window
        else:
            next_reset = snapshot.last_token_reset + self.config.window

        status = QuotaStatus.OK
        if effective <= 0:
            status = QuotaStatus.EXCEEDED
        elif self._is_warning(effective):
            status = QuotaStatus.WARNING

        return QuotaBalance(
            user_id=snapshot.user_id,
            effective_tokens=effective,
            stored_tokens=snapshot.daily_tokens,
            allowance=self.config.daily_tokens,
            last_token_reset=snapshot.last_token_reset,
            next_reset_at=next_reset,
            window_expired=expired,
            status=status,
            limits=self.config.to_dict(),
        )

    def _is_warning(self, remaining: int) -> bool:
        """Check if remaining tokens are below the warning threshold."""
        if self.config.daily_tokens == 0:
            return False
        used_percent = 1 - (remaining / self.config.daily_tokens)
        return used_percent >= self.config.warning_threshold
