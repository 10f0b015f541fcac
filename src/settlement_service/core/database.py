"""Shared SQLite connection and the atomic unit every multi-entity write runs in."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class Database:
    """
    One SQLite connection shared by all stores of a process.

    Writes happen inside transaction(). The outermost call opens a
    BEGIN IMMEDIATE transaction, so concurrent writers (threads holding
    other connections, or other processes) queue on the database write lock
    instead of interleaving. Nested calls become savepoints: an inner
    failure rolls back only its own writes, and nothing is durable until
    the outermost block commits.
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000) -> None:
        self._lock = RLock()
        self._depth = 0
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed block atomically; joins an enclosing transaction as a savepoint."""
        with self._lock:
            depth = self._depth
            savepoint = f"sp_{depth}"
            if depth == 0:
                self._db.execute("BEGIN IMMEDIATE")
            else:
                self._db.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self._db
            except BaseException:
                self._depth -= 1
                if depth == 0:
                    self._db.execute("ROLLBACK")
                else:
                    self._db.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    self._db.execute(f"RELEASE SAVEPOINT {savepoint}")
                raise
            self._depth -= 1
            if depth == 0:
                self._db.execute("COMMIT")
            else:
                self._db.execute(f"RELEASE SAVEPOINT {savepoint}")

    def executescript(self, script: str) -> None:
        """Apply DDL. Must not be called inside a transaction."""
        with self._lock:
            self._db.executescript(script)

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(sql, tuple(params)).fetchone()
        return dict(row) if row is not None else None

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._db.execute(sql, tuple(params)).fetchall()
        return [dict(row) for row in rows]

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        with self._lock:
            row = self._db.execute(sql, tuple(params)).fetchone()
        return row[0] if row is not None else None

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
