"""Durable per-user token counters backed by the ``users`` table."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import DateTime, and_, case, literal, or_, select, update

from sellibra.db.manager import DatabaseManager
from sellibra.db.models import User

logger = logging.getLogger(__name__)

users = User.__table__


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class QuotaSnapshot:
    """Committed quota columns of one user."""

    user_id: str
    daily_tokens: int
    last_token_reset: datetime


class QuotaStore:
    """
    Storage operations for the token counters.

    All methods are synchronous and meant to be run off the event loop.
    The only write path used for consumption is ``conditional_consume``,
    a single ``UPDATE ... WHERE ... RETURNING`` statement.
    """

    def __init__(self, db_manager: DatabaseManager) -> None:
        self._db = db_manager

    def create_user(
        self,
        daily_tokens: int,
        user_id: str | None = None,
        email: str | None = None,
        last_token_reset: datetime | None = None,
    ) -> QuotaSnapshot:
        """Insert a user row with the given starting allowance."""
        with self._db.get_session() as session:
            user = User(
                email=email,
                daily_tokens=daily_tokens,
                last_token_reset=last_token_reset or utcnow(),
            )
            if user_id is not None:
                user.id = user_id
            session.add(user)
            session.flush()
            return QuotaSnapshot(user.id, user.daily_tokens, user.last_token_reset)

    def read(self, user_id: str) -> QuotaSnapshot | None:
        """Point read of the quota columns."""
        with self._db.get_session() as session:
            row = session.execute(
                select(users.c.id, users.c.daily_tokens, users.c.last_token_reset).where(
                    users.c.id == user_id
                )
            ).first()
        if row is None:
            return None
        return QuotaSnapshot(row.id, row.daily_tokens, row.last_token_reset)

    def conditional_consume(
        self,
        user_id: str,
        amount: int,
        allowance: int,
        cutoff: datetime,
        now: datetime,
    ) -> int | None:
        """
        Atomically refill-if-due and subtract ``amount``.

        A row whose ``last_token_reset`` is at or before ``cutoff`` is
        refilled to ``allowance`` and stamped with ``now`` before the
        subtraction. The ``WHERE`` clause only matches when the resulting
        balance is non-negative.

        Returns:
            The new balance, or None when no row matched (missing user or
            insufficient balance).
        """
        reset_due = users.c.last_token_reset <= cutoff
        sufficient = [and_(users.c.last_token_reset > cutoff, users.c.daily_tokens >= amount)]
        if allowance >= amount:
            sufficient.append(reset_due)

        stmt = (
            update(users)
            .where(users.c.id == user_id)
            .where(or_(*sufficient))
            .values(
                daily_tokens=case(
                    (reset_due, allowance - amount),
                    else_=users.c.daily_tokens - amount,
                ),
                last_token_reset=case(
                    (reset_due, literal(now, DateTime())),
                    else_=users.c.last_token_reset,
                ),
            )
            .returning(users.c.daily_tokens)
        )

        with self._db.get_session() as session:
            row = session.execute(stmt).first()

        return None if row is None else row.daily_tokens

    def overwrite(self, user_id: str, daily_tokens: int, now: datetime) -> QuotaSnapshot | None:
        """Set the balance unconditionally and restart the window."""
        stmt = (
            update(users)
            .where(users.c.id == user_id)
            .values(daily_tokens=daily_tokens, last_token_reset=now)
            .returning(users.c.id, users.c.daily_tokens, users.c.last_token_reset)
        )
        with self._db.get_session() as session:
            row = session.execute(stmt).first()
        if row is None:
            return None
        return QuotaSnapshot(row.id, row.daily_tokens, row.last_token_reset)
