"""SQLite-backed task and submission storage."""

from __future__ import annotations

import json
import sqlite3
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from settlement_service.core.database import Database


class DuplicateTaskError(Exception):
    """Raised when attempting to insert a task with a duplicate task_id or task_code."""


class TaskStore:
    """
    Storage for tasks and their submissions.

    Status changes on existing tasks do not go through this class; they go
    through services.concurrency.conditional_update so every write carries
    its expected-status predicate.
    """

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "task_code",
        "poster_id",
        "doer_id",
        "title",
        "description",
        "category",
        "reward_amount",
        "deadline",
        "is_in_person",
        "location_address",
        "location_lat",
        "location_lng",
        "status",
        "created_at",
        "updated_at",
        "accepted_at",
        "started_at",
        "submitted_at",
        "approved_at",
        "completed_at",
        "auto_release_at",
    )
    _TASK_COLUMNS_SQL = ", ".join(_TASK_COLUMNS)
    _TASK_INSERT_SQL = (
        f"INSERT INTO tasks ({_TASK_COLUMNS_SQL}) "  # noqa: S608
        f"VALUES ({', '.join('?' for _ in _TASK_COLUMNS)})"
    )
    _TASK_SELECT_BASE_SQL = f"SELECT {_TASK_COLUMNS_SQL} FROM tasks"  # noqa: S608

    def __init__(self, db: Database) -> None:
        self._db = db
        self._init_schema()

    def _init_schema(self) -> None:
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                task_id TEXT PRIMARY KEY,
                task_code TEXT NOT NULL UNIQUE,
                poster_id TEXT NOT NULL,
                doer_id TEXT,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                category TEXT NOT NULL,
                reward_amount INTEGER NOT NULL CHECK (reward_amount > 0),
                deadline TEXT NOT NULL,
                is_in_person INTEGER NOT NULL DEFAULT 0,
                location_address TEXT,
                location_lat REAL,
                location_lng REAL,
                status TEXT NOT NULL DEFAULT 'open',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                accepted_at TEXT,
                started_at TEXT,
                submitted_at TEXT,
                approved_at TEXT,
                completed_at TEXT,
                auto_release_at TEXT,
                CHECK ((status = 'open') = (doer_id IS NULL) OR status = 'cancelled')
            );

            CREATE INDEX IF NOT EXISTS ix_tasks_status ON tasks(status);
            CREATE INDEX IF NOT EXISTS ix_tasks_poster ON tasks(poster_id);
            CREATE INDEX IF NOT EXISTS ix_tasks_doer ON tasks(doer_id);
            CREATE INDEX IF NOT EXISTS ix_tasks_auto_release ON tasks(status, auto_release_at);

            CREATE TABLE IF NOT EXISTS submissions (
                submission_id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL REFERENCES tasks(task_id),
                submitted_by TEXT NOT NULL,
                message TEXT NOT NULL,
                attachments TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS ix_submissions_task ON submissions(task_id, created_at);
            """
        )

    def _task_row(self, row: dict[str, Any]) -> dict[str, Any]:
        row["is_in_person"] = bool(row["is_in_person"])
        return row

    def insert_task(self, task_data: dict[str, Any]) -> None:
        """Insert a task row. Raises DuplicateTaskError on id or code collision."""
        values = tuple(task_data.get(column) for column in self._TASK_COLUMNS)
        try:
            with self._db.transaction() as conn:
                conn.execute(self._TASK_INSERT_SQL, values)
        except sqlite3.IntegrityError as exc:
            raise DuplicateTaskError(str(task_data.get("task_id"))) from exc

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        row = self._db.fetchone(f"{self._TASK_SELECT_BASE_SQL} WHERE task_id = ?", (task_id,))
        return self._task_row(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: str | None = None,
        category: str | None = None,
        poster_id: str | None = None,
        doer_id: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """List tasks newest first, filtered by any combination of the arguments."""
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("status", status),
            ("category", category),
            ("poster_id", poster_id),
            ("doer_id", doer_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)

        sql = self._TASK_SELECT_BASE_SQL
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, task_id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                sql += " OFFSET ?"
                params.append(offset)
        return [self._task_row(row) for row in self._db.fetchall(sql, params)]

    def list_due_for_auto_release(self, now_iso: str) -> list[dict[str, Any]]:
        """Submitted tasks whose auto-release moment has passed, oldest first."""
        rows = self._db.fetchall(
            f"{self._TASK_SELECT_BASE_SQL} "
            "WHERE status = 'submitted' AND auto_release_at IS NOT NULL AND auto_release_at < ? "
            "ORDER BY auto_release_at",
            (now_iso,),
        )
        return [self._task_row(row) for row in rows]

    def count_tasks_by_status(self) -> dict[str, int]:
        rows = self._db.fetchall("SELECT status, COUNT(*) AS n FROM tasks GROUP BY status")
        return {row["status"]: row["n"] for row in rows}

    def insert_submission(self, submission: dict[str, Any]) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO submissions "
                "(submission_id, task_id, submitted_by, message, attachments, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    submission["submission_id"],
                    submission["task_id"],
                    submission["submitted_by"],
                    submission["message"],
                    json.dumps(submission.get("attachments", [])),
                    submission["created_at"],
                ),
            )

    def list_submissions(self, task_id: str) -> list[dict[str, Any]]:
        rows = self._db.fetchall(
            "SELECT submission_id, task_id, submitted_by, message, attachments, created_at "
            "FROM submissions WHERE task_id = ? ORDER BY created_at",
            (task_id,),
        )
        for row in rows:
            row["attachments"] = json.loads(row["attachments"])
        return rows
