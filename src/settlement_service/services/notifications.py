"""Notification outbox and the dispatcher that drains it."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from starlette.concurrency import run_in_threadpool

from settlement_service.core.clock import new_id, now_iso, to_iso, utc_now
from settlement_service.core.exceptions import ServiceError
from settlement_service.logging import get_logger

if TYPE_CHECKING:
    from settlement_service.clients.notification_client import NotificationClient
    from settlement_service.core.database import Database

# A claim older than this is treated as abandoned by a crashed dispatcher
CLAIM_LEASE_SECONDS = 300


class NotificationOutbox:
    """
    Notifications are written in the same transaction as the mutation that
    causes them, so a rolled-back operation never notifies anyone.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._init_schema()

    def _init_schema(self) -> None:
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS notifications (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                notification_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                title TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                claimed_at TEXT,
                delivered_at TEXT,
                attempts INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS ix_notifications_pending
                ON notifications(delivered_at, seq);
            CREATE INDEX IF NOT EXISTS ix_notifications_user ON notifications(user_id, seq);
            """
        )

    def enqueue(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        payload: dict[str, Any],
    ) -> str:
        notification_id = new_id("ntf")
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO notifications (notification_id, user_id, type, title, payload, "
                "created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    notification_id,
                    user_id,
                    notification_type,
                    title,
                    json.dumps(payload, default=str),
                    now_iso(),
                ),
            )
        return notification_id

    def _decode(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for row in rows:
            row["payload"] = json.loads(row["payload"])
        return rows

    def list_pending(self, limit: int = 100) -> list[dict[str, Any]]:
        return self._decode(
            self._db.fetchall(
                "SELECT notification_id, user_id, type, title, payload, created_at, attempts "
                "FROM notifications WHERE delivered_at IS NULL ORDER BY seq LIMIT ?",
                (limit,),
            )
        )

    def claim_pending(self, limit: int = 100) -> list[dict[str, Any]]:
        """
        Mark up to `limit` deliverable rows as claimed and return them.

        A row is claimed by exactly one caller: the claim is a conditional
        update, so a concurrent dispatcher sees rowcount 0 and skips it.
        """
        now = utc_now()
        stale_before = to_iso(now - timedelta(seconds=CLAIM_LEASE_SECONDS))
        claimed_at = to_iso(now)
        claimed: list[dict[str, Any]] = []
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT notification_id, user_id, type, title, payload, created_at, attempts "
                "FROM notifications WHERE delivered_at IS NULL "
                "AND (claimed_at IS NULL OR claimed_at < ?) ORDER BY seq LIMIT ?",
                (stale_before, limit),
            ).fetchall()
            for row in rows:
                cursor = conn.execute(
                    "UPDATE notifications SET claimed_at = ? "
                    "WHERE notification_id = ? AND delivered_at IS NULL "
                    "AND (claimed_at IS NULL OR claimed_at < ?)",
                    (claimed_at, row["notification_id"], stale_before),
                )
                if cursor.rowcount == 1:
                    claimed.append(dict(row))
        return self._decode(claimed)

    def list_for_user(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        return self._decode(
            self._db.fetchall(
                "SELECT notification_id, user_id, type, title, payload, created_at, delivered_at "
                "FROM notifications WHERE user_id = ? ORDER BY seq DESC LIMIT ?",
                (user_id, limit),
            )
        )

    def mark_delivered(self, notification_id: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE notifications SET delivered_at = ?, attempts = attempts + 1 "
                "WHERE notification_id = ?",
                (now_iso(), notification_id),
            )

    def mark_failed(self, notification_id: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE notifications SET attempts = attempts + 1, claimed_at = NULL "
                "WHERE notification_id = ?",
                (notification_id,),
            )


class NotificationDispatcher:
    """Drains pending outbox rows to the notification client, fire-and-forget."""

    def __init__(
        self,
        outbox: NotificationOutbox,
        client: NotificationClient | None,
        batch_size: int = 100,
    ) -> None:
        self._outbox = outbox
        self._client = client
        self._batch_size = batch_size
        self._lock = asyncio.Lock()
        self._logger = get_logger(__name__)

    async def flush(self) -> dict[str, int]:
        """
        Try to deliver every pending notification once.

        Flushes in this process run one at a time, and each row is claimed
        before delivery, so overlapping flushes never send a row twice.
        Never raises on delivery failure; failed rows stay pending.
        With no client configured the outbox is left untouched.
        """
        if self._client is None:
            return {"delivered": 0, "failed": 0}

        async with self._lock:
            return await self._deliver_claimed(self._client)

    async def _deliver_claimed(self, client: NotificationClient) -> dict[str, int]:
        delivered = 0
        failed = 0
        claimed = await run_in_threadpool(self._outbox.claim_pending, self._batch_size)
        for notification in claimed:
            try:
                await client.deliver(notification)
            except ServiceError as exc:
                failed += 1
                await run_in_threadpool(self._outbox.mark_failed, notification["notification_id"])
                self._logger.warning(
                    "Notification delivery failed",
                    extra={
                        "notification_id": notification["notification_id"],
                        "error_code": exc.error,
                    },
                )
                continue
            await run_in_threadpool(self._outbox.mark_delivered, notification["notification_id"])
            delivered += 1

        if delivered or failed:
            self._logger.info(
                "Notification flush finished",
                extra={"delivered": delivered, "failed": failed},
            )
        return {"delivered": delivered, "failed": failed}
