"""SQLAlchemy models for the quota store."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from sellibra.db.base import Base, TimestampMixin


def _new_user_id() -> str:
    return uuid.uuid4().hex


class User(TimestampMixin, Base):
    """Account row carrying the daily token allowance."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_user_id)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True, index=True)
    daily_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    last_token_reset: Mapped[datetime] = mapped_column(DateTime, nullable=False)
