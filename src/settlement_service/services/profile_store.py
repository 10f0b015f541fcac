"""Per-user profile counters: cached wallet balance, completed tasks, lifetime earnings."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from settlement_service.core.clock import now_iso

if TYPE_CHECKING:
    from settlement_service.core.database import Database


class ProfileStore:
    """
    Storage for user profiles.

    Profiles are created lazily the first time a user is referenced. The
    wallet_balance column is a cache of the wallet ledger; only the ledger
    writes it, through compare_and_set_balance().
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._init_schema()

    def _init_schema(self) -> None:
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS profiles (
                user_id TEXT PRIMARY KEY,
                wallet_balance INTEGER NOT NULL DEFAULT 0 CHECK (wallet_balance >= 0),
                tasks_completed INTEGER NOT NULL DEFAULT 0 CHECK (tasks_completed >= 0),
                total_earnings INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )

    def ensure_profile(self, user_id: str) -> None:
        now = now_iso()
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO profiles (user_id, created_at, updated_at) VALUES (?, ?, ?)",
                (user_id, now, now),
            )

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        return self._db.fetchone(
            "SELECT user_id, wallet_balance, tasks_completed, total_earnings, created_at, "
            "updated_at FROM profiles WHERE user_id = ?",
            (user_id,),
        )

    def get_or_create(self, user_id: str) -> dict[str, Any]:
        profile = self.get_profile(user_id)
        if profile is None:
            self.ensure_profile(user_id)
            profile = self.get_profile(user_id)
        if profile is None:
            msg = f"Profile could not be created for {user_id}"
            raise RuntimeError(msg)
        return profile

    def get_tasks_completed(self, user_id: str) -> int:
        count = self._db.scalar("SELECT tasks_completed FROM profiles WHERE user_id = ?", (user_id,))
        return int(count) if count is not None else 0

    def compare_and_set_balance(
        self,
        user_id: str,
        expected_balance: int,
        new_balance: int,
        earnings_delta: int = 0,
    ) -> bool:
        """Write new_balance only if the cached balance still equals expected_balance."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE profiles SET wallet_balance = ?, "
                "total_earnings = total_earnings + ?, updated_at = ? "
                "WHERE user_id = ? AND wallet_balance = ?",
                (new_balance, earnings_delta, now_iso(), user_id, expected_balance),
            )
        return cursor.rowcount == 1

    def increment_tasks_completed(self, user_id: str) -> None:
        self.ensure_profile(user_id)
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE profiles SET tasks_completed = tasks_completed + 1, updated_at = ? "
                "WHERE user_id = ?",
                (now_iso(), user_id),
            )

    def list_user_ids(self) -> list[str]:
        rows = self._db.fetchall("SELECT user_id FROM profiles ORDER BY user_id")
        return [row["user_id"] for row in rows]
