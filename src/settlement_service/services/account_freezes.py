"""Registry of frozen accounts consulted before every mutation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from settlement_service.core.clock import now_iso
from settlement_service.core.exceptions import AccountFrozenError, ServiceError

if TYPE_CHECKING:
    from settlement_service.core.database import Database


class AccountFreezeRegistry:
    """
    A user is frozen while they have a freeze row with no unfrozen_at.

    History is kept: unfreezing stamps the open row rather than deleting it.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._init_schema()

    def _init_schema(self) -> None:
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS user_freezes (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                frozen_by TEXT NOT NULL,
                reason TEXT NOT NULL,
                frozen_at TEXT NOT NULL,
                unfrozen_at TEXT,
                unfrozen_by TEXT
            );

            CREATE UNIQUE INDEX IF NOT EXISTS ux_user_freezes_active
                ON user_freezes(user_id)
                WHERE unfrozen_at IS NULL;
            """
        )

    def is_frozen(self, user_id: str) -> bool:
        row = self._db.fetchone(
            "SELECT 1 AS frozen FROM user_freezes WHERE user_id = ? AND unfrozen_at IS NULL",
            (user_id,),
        )
        return row is not None

    def ensure_not_frozen(self, user_id: str) -> None:
        """Raise AccountFrozenError if the user is currently frozen."""
        if self.is_frozen(user_id):
            raise AccountFrozenError(user_id)

    def freeze(self, user_id: str, frozen_by: str, reason: str) -> dict[str, Any]:
        if self.is_frozen(user_id):
            raise ServiceError(
                "ALREADY_FROZEN", "Account is already frozen", 409, {"user_id": user_id}
            )
        frozen_at = now_iso()
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO user_freezes (user_id, frozen_by, reason, frozen_at) "
                "VALUES (?, ?, ?, ?)",
                (user_id, frozen_by, reason, frozen_at),
            )
        return {"user_id": user_id, "frozen": True, "frozen_by": frozen_by, "frozen_at": frozen_at}

    def unfreeze(self, user_id: str, unfrozen_by: str) -> dict[str, Any]:
        unfrozen_at = now_iso()
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE user_freezes SET unfrozen_at = ?, unfrozen_by = ? "
                "WHERE user_id = ? AND unfrozen_at IS NULL",
                (unfrozen_at, unfrozen_by, user_id),
            )
        if cursor.rowcount == 0:
            raise ServiceError("NOT_FROZEN", "Account is not frozen", 409, {"user_id": user_id})
        return {
            "user_id": user_id,
            "frozen": False,
            "unfrozen_by": unfrozen_by,
            "unfrozen_at": unfrozen_at,
        }

    def list_frozen(self) -> list[dict[str, Any]]:
        return self._db.fetchall(
            "SELECT user_id, frozen_by, reason, frozen_at FROM user_freezes "
            "WHERE unfrozen_at IS NULL ORDER BY frozen_at"
        )
