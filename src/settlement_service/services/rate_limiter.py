"""Per-user, per-endpoint request ceilings over a rolling window."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from settlement_service.core.clock import to_iso, utc_now
from settlement_service.core.exceptions import RateLimitExceededError
from settlement_service.logging import get_logger

if TYPE_CHECKING:
    from settlement_service.config import RateLimitsConfig
    from settlement_service.core.database import Database


class RateLimiter:
    """
    Counts successful hits in the last `window_seconds` and rejects once the
    count reaches the endpoint's ceiling.

    check() runs before the operation; record() runs inside the operation's
    transaction, so failed or replayed requests never consume quota.
    """

    def __init__(self, db: Database, config: RateLimitsConfig) -> None:
        self._db = db
        self._window = timedelta(seconds=config.window_seconds)
        self._window_seconds = config.window_seconds
        self._limits: dict[str, int] = {
            "task_create": config.task_create,
            "task_accept": config.task_accept,
            "wallet_deposit": config.wallet_deposit,
            "wallet_withdraw": config.wallet_withdraw,
        }
        self._logger = get_logger(__name__)
        self._init_schema()

    def _init_schema(self) -> None:
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS rate_limit_hits (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                identifier TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                hit_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS ix_rate_limit_hits_lookup
                ON rate_limit_hits(identifier, endpoint, hit_at);
            """
        )

    def limit_for(self, endpoint: str) -> int:
        if endpoint not in self._limits:
            msg = f"No rate limit configured for endpoint: {endpoint}"
            raise KeyError(msg)
        return self._limits[endpoint]

    def hits_in_window(self, identifier: str, endpoint: str) -> int:
        window_start = to_iso(utc_now() - self._window)
        count = self._db.scalar(
            "SELECT COUNT(*) FROM rate_limit_hits "
            "WHERE identifier = ? AND endpoint = ? AND hit_at >= ?",
            (identifier, endpoint, window_start),
        )
        return int(count or 0)

    def check(self, identifier: str, endpoint: str) -> None:
        """Raise RateLimitExceededError if the caller has used up this window's quota."""
        limit = self.limit_for(endpoint)
        if self.hits_in_window(identifier, endpoint) >= limit:
            self._logger.warning(
                "Rate limit exceeded",
                extra={"identifier": identifier, "endpoint": endpoint, "limit": limit},
            )
            raise RateLimitExceededError(endpoint, limit, self._window_seconds)

    def record(self, identifier: str, endpoint: str) -> None:
        """Store one hit and drop this caller's expired hits for the same endpoint."""
        self.limit_for(endpoint)
        now = utc_now()
        with self._db.transaction() as conn:
            conn.execute(
                "DELETE FROM rate_limit_hits WHERE identifier = ? AND endpoint = ? AND hit_at < ?",
                (identifier, endpoint, to_iso(now - self._window)),
            )
            conn.execute(
                "INSERT INTO rate_limit_hits (identifier, endpoint, hit_at) VALUES (?, ?, ?)",
                (identifier, endpoint, to_iso(now)),
            )

    def prune(self) -> int:
        """Drop hits older than the window. Returns the number removed."""
        cutoff = to_iso(utc_now() - self._window)
        with self._db.transaction() as conn:
            cursor = conn.execute("DELETE FROM rate_limit_hits WHERE hit_at < ?", (cutoff,))
        return cursor.rowcount
