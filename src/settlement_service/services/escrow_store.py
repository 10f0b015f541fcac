"""SQLite-backed escrow storage."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Any

from settlement_service.core.exceptions import InvariantViolationError

if TYPE_CHECKING:
    from settlement_service.core.database import Database


class DuplicateEscrowError(Exception):
    """Raised when a task already has an escrow row."""


class EscrowStore:
    """
    Storage for escrow transactions, one per task.

    Amount columns are written once at insert; only status, doer and the
    timestamps change afterwards, through the conditional-update primitive.
    """

    _COLUMNS: tuple[str, ...] = (
        "escrow_id",
        "task_id",
        "poster_id",
        "doer_id",
        "gross_amount",
        "platform_fee",
        "net_payout",
        "fee_percentage",
        "status",
        "auto_release_at",
        "released_at",
        "refunded_at",
        "created_at",
        "updated_at",
    )
    _COLUMNS_SQL = ", ".join(_COLUMNS)
    _SELECT_BASE_SQL = f"SELECT {_COLUMNS_SQL} FROM escrows"  # noqa: S608

    def __init__(self, db: Database) -> None:
        self._db = db
        self._init_schema()

    def _init_schema(self) -> None:
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS escrows (
                escrow_id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL UNIQUE,
                poster_id TEXT NOT NULL,
                doer_id TEXT,
                gross_amount INTEGER NOT NULL CHECK (gross_amount > 0),
                platform_fee INTEGER NOT NULL CHECK (platform_fee >= 0),
                net_payout INTEGER NOT NULL CHECK (net_payout >= 0),
                fee_percentage REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                auto_release_at TEXT,
                released_at TEXT,
                refunded_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK (gross_amount = platform_fee + net_payout)
            );

            CREATE INDEX IF NOT EXISTS ix_escrows_status ON escrows(status);
            CREATE INDEX IF NOT EXISTS ix_escrows_poster ON escrows(poster_id);
            CREATE INDEX IF NOT EXISTS ix_escrows_doer ON escrows(doer_id);

            CREATE TRIGGER IF NOT EXISTS tr_escrows_amounts_immutable
            BEFORE UPDATE OF gross_amount, platform_fee, net_payout, fee_percentage ON escrows
            BEGIN
                SELECT RAISE(ABORT, 'escrow amounts are immutable');
            END;
            """
        )

    def insert_escrow(self, escrow: dict[str, Any]) -> None:
        """Insert an escrow row after checking its amounts add up."""
        if escrow["gross_amount"] != escrow["platform_fee"] + escrow["net_payout"]:
            raise InvariantViolationError(
                "Escrow amounts do not sum to the gross amount",
                {
                    "task_id": escrow["task_id"],
                    "gross_amount": escrow["gross_amount"],
                    "platform_fee": escrow["platform_fee"],
                    "net_payout": escrow["net_payout"],
                },
            )
        values = tuple(escrow.get(column) for column in self._COLUMNS)
        placeholders = ", ".join("?" for _ in self._COLUMNS)
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    f"INSERT INTO escrows ({self._COLUMNS_SQL}) VALUES ({placeholders})",  # noqa: S608
                    values,
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateEscrowError(str(escrow["task_id"])) from exc

    def get_escrow(self, escrow_id: str) -> dict[str, Any] | None:
        return self._db.fetchone(f"{self._SELECT_BASE_SQL} WHERE escrow_id = ?", (escrow_id,))

    def get_escrow_by_task(self, task_id: str) -> dict[str, Any] | None:
        return self._db.fetchone(f"{self._SELECT_BASE_SQL} WHERE task_id = ?", (task_id,))

    def list_escrows(
        self,
        *,
        user_id: str | None = None,
        role: str | None = None,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        List escrows newest first.

        role "poster" or "doer" restricts to escrows where user_id plays that
        role; with no role, either side matches.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            if role == "poster":
                clauses.append("poster_id = ?")
                params.append(user_id)
            elif role == "doer":
                clauses.append("doer_id = ?")
                params.append(user_id)
            else:
                clauses.append("(poster_id = ? OR doer_id = ?)")
                params.extend([user_id, user_id])
        if status is not None:
            clauses.append("status = ?")
            params.append(status)

        sql = self._SELECT_BASE_SQL
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, escrow_id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                sql += " OFFSET ?"
                params.append(offset)
        return self._db.fetchall(sql, params)

    def list_settled(self) -> list[dict[str, Any]]:
        """Escrows in a terminal state, for reconciliation."""
        return self._db.fetchall(
            f"{self._SELECT_BASE_SQL} WHERE status IN ('released', 'refunded') ORDER BY created_at"
        )
