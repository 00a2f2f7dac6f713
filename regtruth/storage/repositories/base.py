"""Shared connection handling for repositories."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from sqlalchemy.engine import Connection

from regtruth.storage.database import get_db


class BaseRepository:
    """Repository bound to an optional caller-owned connection.

    Inside ``transaction()`` pass the transaction's connection and the
    caller decides when to commit. Without one, each call opens its own
    connection and commits on success.
    """

    def __init__(self, conn: Connection | None = None):
        self._conn = conn

    @contextmanager
    def _connect(self) -> Generator[Connection, None, None]:
        if self._conn is not None:
            yield self._conn
            return
        with get_db() as conn:
            yield conn
            conn.commit()
