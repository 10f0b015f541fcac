"""Append-only audit trail: task events and admin actions."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from settlement_service.core.clock import new_id, now_iso

if TYPE_CHECKING:
    from settlement_service.core.database import Database


class AuditLog:
    """Writes and reads task_events and admin_actions. Rows are never updated or deleted."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self._init_schema()

    def _init_schema(self) -> None:
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS task_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL UNIQUE,
                task_id TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                actor_role TEXT NOT NULL,
                event_type TEXT NOT NULL,
                old_state TEXT,
                new_state TEXT,
                metadata TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS ix_task_events_task ON task_events(task_id, seq);

            CREATE TABLE IF NOT EXISTS admin_actions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                action_id TEXT NOT NULL UNIQUE,
                admin_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                target_type TEXT NOT NULL,
                target_id TEXT NOT NULL,
                reason TEXT,
                old_value TEXT,
                new_value TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS ix_admin_actions_target
                ON admin_actions(target_type, target_id);

            CREATE TRIGGER IF NOT EXISTS tr_task_events_no_update
            BEFORE UPDATE ON task_events
            BEGIN
                SELECT RAISE(ABORT, 'task events are append-only');
            END;

            CREATE TRIGGER IF NOT EXISTS tr_task_events_no_delete
            BEFORE DELETE ON task_events
            BEGIN
                SELECT RAISE(ABORT, 'task events are append-only');
            END;

            CREATE TRIGGER IF NOT EXISTS tr_admin_actions_no_update
            BEFORE UPDATE ON admin_actions
            BEGIN
                SELECT RAISE(ABORT, 'admin actions are append-only');
            END;
            """
        )

    def record_task_event(
        self,
        task_id: str,
        actor_id: str,
        actor_role: str,
        event_type: str,
        old_state: str | None,
        new_state: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        event_id = new_id("te")
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO task_events (event_id, task_id, actor_id, actor_role, event_type, "
                "old_state, new_state, metadata, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event_id,
                    task_id,
                    actor_id,
                    actor_role,
                    event_type,
                    old_state,
                    new_state,
                    json.dumps(metadata or {}, default=str),
                    now_iso(),
                ),
            )
        return event_id

    def list_task_events(self, task_id: str) -> list[dict[str, Any]]:
        rows = self._db.fetchall(
            "SELECT event_id, task_id, actor_id, actor_role, event_type, old_state, new_state, "
            "metadata, created_at FROM task_events WHERE task_id = ? ORDER BY seq",
            (task_id,),
        )
        for row in rows:
            row["metadata"] = json.loads(row["metadata"])
        return rows

    def record_admin_action(
        self,
        admin_id: str,
        action_type: str,
        target_type: str,
        target_id: str,
        *,
        reason: str | None = None,
        old_value: dict[str, Any] | None = None,
        new_value: dict[str, Any] | None = None,
    ) -> str:
        action_id = new_id("aa")
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO admin_actions (action_id, admin_id, action_type, target_type, "
                "target_id, reason, old_value, new_value, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    action_id,
                    admin_id,
                    action_type,
                    target_type,
                    target_id,
                    reason,
                    None if old_value is None else json.dumps(old_value, default=str),
                    None if new_value is None else json.dumps(new_value, default=str),
                    now_iso(),
                ),
            )
        return action_id

    def list_admin_actions(
        self,
        *,
        target_type: str | None = None,
        target_id: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        sql = (
            "SELECT action_id, admin_id, action_type, target_type, target_id, reason, "
            "old_value, new_value, created_at FROM admin_actions"
        )
        clauses: list[str] = []
        params: list[Any] = []
        if target_type is not None:
            clauses.append("target_type = ?")
            params.append(target_type)
        if target_id is not None:
            clauses.append("target_id = ?")
            params.append(target_id)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY seq DESC LIMIT ?"
        params.append(limit)
        rows = self._db.fetchall(sql, params)
        for row in rows:
            for column in ("old_value", "new_value"):
                if row[column] is not None:
                    row[column] = json.loads(row[column])
        return rows
