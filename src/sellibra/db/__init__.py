"""Database package for the quota store."""

from sellibra.db.base import Base
from sellibra.db.manager import DatabaseManager
from sellibra.db.models import User

__all__ = [
    "Base",
    "DatabaseManager",
    "User",
]
