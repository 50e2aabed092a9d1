"""Database layer: async SQLAlchemy engine, session factory, and ORM models."""

from cleo_shared.db.engine import close_engine, create_tables, get_engine, get_session_factory
from cleo_shared.db.models import (
    Base,
    CaptureRow,
    CredentialRow,
    PostRow,
    ThreadRow,
    UserRow,
    as_utc,
    utc_now,
)

__all__ = [
    "Base",
    "CaptureRow",
    "CredentialRow",
    "PostRow",
    "ThreadRow",
    "UserRow",
    "as_utc",
    "utc_now",
    "close_engine",
    "create_tables",
    "get_engine",
    "get_session_factory",
]
