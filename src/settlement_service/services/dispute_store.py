"""SQLite-backed dispute storage."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from settlement_service.core.database import Database


class DuplicateDisputeError(Exception):
    """Raised when a task already has an unresolved dispute."""


class DisputeStore:
    """Storage for disputes. Resolution columns are written through conditional updates."""

    _COLUMNS: tuple[str, ...] = (
        "dispute_id",
        "task_id",
        "escrow_id",
        "raised_by_id",
        "raised_by_role",
        "reason",
        "description",
        "status",
        "resolution_type",
        "resolved_in_favor_of",
        "poster_refund_amount",
        "doer_payout_amount",
        "resolution_notes",
        "resolved_by",
        "resolved_at",
        "created_at",
        "updated_at",
    )
    _COLUMNS_SQL = ", ".join(_COLUMNS)
    _SELECT_BASE_SQL = f"SELECT {_COLUMNS_SQL} FROM disputes"  # noqa: S608

    def __init__(self, db: Database) -> None:
        self._db = db
        self._init_schema()

    def _init_schema(self) -> None:
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS disputes (
                dispute_id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                escrow_id TEXT,
                raised_by_id TEXT NOT NULL,
                raised_by_role TEXT NOT NULL,
                reason TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'open',
                resolution_type TEXT,
                resolved_in_favor_of TEXT,
                poster_refund_amount INTEGER,
                doer_payout_amount INTEGER,
                resolution_notes TEXT,
                resolved_by TEXT,
                resolved_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS ux_disputes_unresolved_task
                ON disputes(task_id)
                WHERE status != 'resolved';

            CREATE INDEX IF NOT EXISTS ix_disputes_status ON disputes(status, created_at);

            CREATE TRIGGER IF NOT EXISTS tr_disputes_resolution_once
            BEFORE UPDATE OF poster_refund_amount, doer_payout_amount ON disputes
            WHEN OLD.status = 'resolved'
            BEGIN
                SELECT RAISE(ABORT, 'dispute resolution amounts are set once');
            END;
            """
        )

    def insert_dispute(self, dispute: dict[str, Any]) -> None:
        values = tuple(dispute.get(column) for column in self._COLUMNS)
        placeholders = ", ".join("?" for _ in self._COLUMNS)
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    f"INSERT INTO disputes ({self._COLUMNS_SQL}) VALUES ({placeholders})",  # noqa: S608
                    values,
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateDisputeError(str(dispute["task_id"])) from exc

    def get_dispute(self, dispute_id: str) -> dict[str, Any] | None:
        return self._db.fetchone(f"{self._SELECT_BASE_SQL} WHERE dispute_id = ?", (dispute_id,))

    def list_for_task(self, task_id: str) -> list[dict[str, Any]]:
        return self._db.fetchall(
            f"{self._SELECT_BASE_SQL} WHERE task_id = ? ORDER BY created_at",
            (task_id,),
        )

    def list_disputes(
        self,
        *,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        sql = self._SELECT_BASE_SQL
        params: list[Any] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY created_at DESC, dispute_id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                sql += " OFFSET ?"
                params.append(offset)
        return self._db.fetchall(sql, params)
