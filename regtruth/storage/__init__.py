"""Persistence layer: SQLAlchemy database access, records and repositories."""

from regtruth.storage.database import (
    get_db,
    get_engine,
    init_db,
    reset_db,
    reset_engine,
    set_db_path,
    transaction,
)

__all__ = [
    "get_db",
    "get_engine",
    "init_db",
    "reset_db",
    "reset_engine",
    "set_db_path",
    "transaction",
]
