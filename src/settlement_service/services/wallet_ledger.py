"""Append-only wallet ledger with a cached balance per user."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from settlement_service.core.clock import new_id, now_iso
from settlement_service.core.exceptions import (
    InsufficientBalanceError,
    InvariantViolationError,
    ServiceError,
)
from settlement_service.logging import get_logger

if TYPE_CHECKING:
    from settlement_service.core.database import Database
    from settlement_service.services.profile_store import ProfileStore

WALLET_EVENT_TYPES: frozenset[str] = frozenset(
    {
        "escrow_release",
        "dispute_resolution",
        "dispute_refund",
        "admin_credit",
        "sandbox_deposit",
        "sandbox_withdrawal",
    }
)

# credits of these types are task income and count towards total_earnings
EARNING_EVENT_TYPES: frozenset[str] = frozenset({"escrow_release", "dispute_resolution"})


class WalletLedger:
    """
    The only writer of wallet balances.

    Every credit or debit reads the cached balance, computes the new one,
    swaps it in with a compare-and-set on the profile row, and appends a
    wallet event recording balance_before and balance_after. All of it runs
    in the caller's transaction, so a rollback upstream also undoes the
    ledger entry.
    """

    _EVENT_COLUMNS_SQL = (
        "seq, event_id, user_id, event_type, amount, balance_before, balance_after, "
        "task_id, escrow_id, actor_id, metadata, created_at"
    )

    def __init__(self, db: Database, profiles: ProfileStore) -> None:
        self._db = db
        self._profiles = profiles
        self._logger = get_logger(__name__)
        self._init_schema()

    def _init_schema(self) -> None:
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS wallet_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                amount INTEGER NOT NULL CHECK (amount != 0),
                balance_before INTEGER NOT NULL,
                balance_after INTEGER NOT NULL CHECK (balance_after >= 0),
                task_id TEXT,
                escrow_id TEXT,
                actor_id TEXT,
                metadata TEXT NOT NULL,
                created_at TEXT NOT NULL,
                CHECK (balance_after = balance_before + amount)
            );

            CREATE INDEX IF NOT EXISTS ix_wallet_events_user_seq ON wallet_events(user_id, seq);
            CREATE INDEX IF NOT EXISTS ix_wallet_events_escrow ON wallet_events(escrow_id);

            CREATE TRIGGER IF NOT EXISTS tr_wallet_events_no_update
            BEFORE UPDATE ON wallet_events
            BEGIN
                SELECT RAISE(ABORT, 'wallet events are append-only');
            END;

            CREATE TRIGGER IF NOT EXISTS tr_wallet_events_no_delete
            BEFORE DELETE ON wallet_events
            BEGIN
                SELECT RAISE(ABORT, 'wallet events are append-only');
            END;
            """
        )

    def credit(
        self,
        user_id: str,
        amount: int,
        event_type: str,
        *,
        task_id: str | None = None,
        escrow_id: str | None = None,
        actor_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Add funds to a user's wallet.

        Returns:
            The appended wallet event.

        Raises:
            ServiceError: INVALID_AMOUNT for a non-positive amount.
        """
        self._check_request(amount, event_type)
        earnings = amount if event_type in EARNING_EVENT_TYPES else 0
        return self._apply(
            user_id,
            amount,
            event_type,
            earnings_delta=earnings,
            task_id=task_id,
            escrow_id=escrow_id,
            actor_id=actor_id,
            metadata=metadata,
        )

    def debit(
        self,
        user_id: str,
        amount: int,
        event_type: str,
        *,
        task_id: str | None = None,
        escrow_id: str | None = None,
        actor_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Remove funds from a user's wallet. The event records a negative amount.

        Raises:
            InsufficientBalanceError: amount exceeds the current balance.
            ServiceError: INVALID_AMOUNT for a non-positive amount.
        """
        self._check_request(amount, event_type)
        return self._apply(
            user_id,
            -amount,
            event_type,
            earnings_delta=0,
            task_id=task_id,
            escrow_id=escrow_id,
            actor_id=actor_id,
            metadata=metadata,
        )

    def _check_request(self, amount: int, event_type: str) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ServiceError("INVALID_AMOUNT", "Amount must be a positive integer", 400, {})
        if event_type not in WALLET_EVENT_TYPES:
            msg = f"Unknown wallet event type: {event_type}"
            raise ValueError(msg)

    def _apply(
        self,
        user_id: str,
        signed_amount: int,
        event_type: str,
        *,
        earnings_delta: int,
        task_id: str | None,
        escrow_id: str | None,
        actor_id: str | None,
        metadata: dict[str, Any] | None,
    ) -> dict[str, Any]:
        with self._db.transaction() as conn:
            self._profiles.ensure_profile(user_id)

            balance_before = self._cached_balance(user_id)
            balance_after = balance_before + signed_amount
            if signed_amount < 0 and -signed_amount > balance_before:
                raise InsufficientBalanceError(balance_before, -signed_amount)
            # the enclosing transaction holds the write lock, so a miss means the
            # profile row was changed outside this ledger
            if not self._profiles.compare_and_set_balance(
                user_id, balance_before, balance_after, earnings_delta
            ):
                self._logger.error(
                    "Wallet balance changed under the write lock",
                    extra={"user_id": user_id, "expected_balance": balance_before},
                )
                raise InvariantViolationError(
                    "Cached wallet balance changed during the update",
                    {"user_id": user_id, "expected": balance_before},
                )

            last_after = self._last_balance_after(user_id)
            if last_after != balance_before:
                self._logger.error(
                    "Wallet ledger chain broken",
                    extra={
                        "user_id": user_id,
                        "cached_balance": balance_before,
                        "ledger_balance": last_after,
                    },
                )
                raise InvariantViolationError(
                    "Cached wallet balance disagrees with the ledger",
                    {"user_id": user_id, "cached": balance_before, "ledger": last_after},
                )

            event = {
                "event_id": new_id("we"),
                "user_id": user_id,
                "event_type": event_type,
                "amount": signed_amount,
                "balance_before": balance_before,
                "balance_after": balance_after,
                "task_id": task_id,
                "escrow_id": escrow_id,
                "actor_id": actor_id,
                "metadata": metadata or {},
                "created_at": now_iso(),
            }
            cursor = conn.execute(
                "INSERT INTO wallet_events (event_id, user_id, event_type, amount, "
                "balance_before, balance_after, task_id, escrow_id, actor_id, metadata, "
                "created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event["event_id"],
                    user_id,
                    event_type,
                    signed_amount,
                    balance_before,
                    balance_after,
                    task_id,
                    escrow_id,
                    actor_id,
                    json.dumps(event["metadata"]),
                    event["created_at"],
                ),
            )
            event["seq"] = cursor.lastrowid

        self._logger.info(
            "Wallet event recorded",
            extra={
                "user_id": user_id,
                "event_type": event_type,
                "amount": signed_amount,
                "balance_after": balance_after,
                "task_id": task_id,
            },
        )
        return event

    def _cached_balance(self, user_id: str) -> int:
        balance = self._db.scalar("SELECT wallet_balance FROM profiles WHERE user_id = ?", (user_id,))
        return int(balance) if balance is not None else 0

    def _last_balance_after(self, user_id: str) -> int:
        last = self._db.scalar(
            "SELECT balance_after FROM wallet_events WHERE user_id = ? ORDER BY seq DESC LIMIT 1",
            (user_id,),
        )
        return int(last) if last is not None else 0

    def get_balance(self, user_id: str) -> int:
        return self._cached_balance(user_id)

    def _decode(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for row in rows:
            row["metadata"] = json.loads(row["metadata"])
        return rows

    def list_events(
        self,
        user_id: str,
        *,
        event_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """A user's wallet events, newest first."""
        sql = f"SELECT {self._EVENT_COLUMNS_SQL} FROM wallet_events WHERE user_id = ?"  # noqa: S608
        params: list[Any] = [user_id]
        if event_type is not None:
            sql += " AND event_type = ?"
            params.append(event_type)
        sql += " ORDER BY seq DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return self._decode(self._db.fetchall(sql, params))

    def count_events(self, user_id: str, event_type: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM wallet_events WHERE user_id = ?"
        params: list[Any] = [user_id]
        if event_type is not None:
            sql += " AND event_type = ?"
            params.append(event_type)
        return int(self._db.scalar(sql, params))

    def events_in_order(self, user_id: str) -> list[dict[str, Any]]:
        """A user's wallet events in the order they were appended."""
        return self._decode(
            self._db.fetchall(
                f"SELECT {self._EVENT_COLUMNS_SQL} FROM wallet_events "  # noqa: S608
                "WHERE user_id = ? ORDER BY seq",
                (user_id,),
            )
        )

    def events_for_task(self, task_id: str) -> list[dict[str, Any]]:
        return self._decode(
            self._db.fetchall(
                f"SELECT {self._EVENT_COLUMNS_SQL} FROM wallet_events "  # noqa: S608
                "WHERE task_id = ? ORDER BY seq",
                (task_id,),
            )
        )

    def events_for_escrow(self, escrow_id: str) -> list[dict[str, Any]]:
        return self._decode(
            self._db.fetchall(
                f"SELECT {self._EVENT_COLUMNS_SQL} FROM wallet_events "  # noqa: S608
                "WHERE escrow_id = ? ORDER BY seq",
                (escrow_id,),
            )
        )
