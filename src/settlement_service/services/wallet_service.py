"""Sandbox wallet operations layered over the wallet ledger."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from settlement_service.core.exceptions import ForbiddenError, ServiceError
from settlement_service.logging import get_logger
from settlement_service.services.wallet_ledger import WALLET_EVENT_TYPES

if TYPE_CHECKING:
    from collections.abc import Callable

    from settlement_service.config import WalletConfig
    from settlement_service.core.caller import Caller
    from settlement_service.core.database import Database
    from settlement_service.services.account_freezes import AccountFreezeRegistry
    from settlement_service.services.audit_log import AuditLog
    from settlement_service.services.idempotency import IdempotencyGuard
    from settlement_service.services.profile_store import ProfileStore
    from settlement_service.services.rate_limiter import RateLimiter
    from settlement_service.services.wallet_ledger import WalletLedger

MAX_REASON_LENGTH = 2000


class WalletService:
    """
    Deposits, withdrawals and admin credits. No money leaves the platform:
    balances are a sandboxed ledger, so deposit and withdraw only record
    events against it.
    """

    def __init__(
        self,
        db: Database,
        profiles: ProfileStore,
        ledger: WalletLedger,
        audit: AuditLog,
        freezes: AccountFreezeRegistry,
        rate_limiter: RateLimiter,
        idempotency: IdempotencyGuard,
        config: WalletConfig,
    ) -> None:
        self._db = db
        self._profiles = profiles
        self._ledger = ledger
        self._audit = audit
        self._freezes = freezes
        self._rate_limiter = rate_limiter
        self._idempotency = idempotency
        self._config = config
        self._logger = get_logger(__name__)

    def _validate_amount(self, data: dict[str, Any]) -> int:
        amount = data.get("amount")
        if amount is None:
            raise ServiceError("INVALID_PAYLOAD", "Missing required field: amount", 400, {})
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ServiceError("INVALID_AMOUNT", "Amount must be a positive integer", 400, {})
        if amount <= 0 or amount > self._config.max_deposit:
            raise ServiceError(
                "INVALID_AMOUNT",
                f"Amount must be between 1 and {self._config.max_deposit}",
                400,
                {"max": self._config.max_deposit},
            )
        return amount

    def _run(
        self,
        caller: Caller,
        endpoint: str,
        rate_limit: str,
        idempotency_key: str | None,
        request_body: dict[str, Any],
        operation: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        def execute() -> dict[str, Any]:
            with self._db.transaction():
                self._freezes.ensure_not_frozen(caller.user_id)
                self._rate_limiter.check(caller.user_id, rate_limit)
                result = operation()
                self._rate_limiter.record(caller.user_id, rate_limit)
                return result

        return self._idempotency.guard(
            idempotency_key, caller.user_id, endpoint, request_body, execute
        )

    def get_wallet(self, caller: Caller, user_id: str | None = None) -> dict[str, Any]:
        """The caller's wallet, or any user's wallet for an admin."""
        target = user_id or caller.user_id
        if target != caller.user_id and not caller.is_admin:
            raise ForbiddenError("FORBIDDEN", "You can only view your own wallet")
        profile = self._profiles.get_or_create(target)
        return {
            "user_id": target,
            "balance": profile["wallet_balance"],
            "tasks_completed": profile["tasks_completed"],
            "total_earnings": profile["total_earnings"],
        }

    def list_events(
        self,
        caller: Caller,
        *,
        user_id: str | None = None,
        event_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        target = user_id or caller.user_id
        if target != caller.user_id and not caller.is_admin:
            raise ForbiddenError("FORBIDDEN", "You can only view your own wallet")
        if event_type is not None and event_type not in WALLET_EVENT_TYPES:
            raise ServiceError("INVALID_PAYLOAD", f"Unknown event type: {event_type}", 400, {})
        return {
            "user_id": target,
            "events": self._ledger.list_events(
                target, event_type=event_type, limit=limit, offset=offset
            ),
            "total": self._ledger.count_events(target, event_type),
            "limit": limit,
            "offset": offset,
        }

    def deposit(
        self,
        caller: Caller,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        amount = self._validate_amount(payload)

        def operation() -> dict[str, Any]:
            event = self._ledger.credit(
                caller.user_id, amount, "sandbox_deposit", actor_id=caller.user_id
            )
            return {"event": event, "new_balance": event["balance_after"]}

        return self._run(
            caller,
            "wallet.deposit",
            "wallet_deposit",
            idempotency_key,
            {"amount": amount},
            operation,
        )

    def withdraw(
        self,
        caller: Caller,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        amount = self._validate_amount(payload)

        def operation() -> dict[str, Any]:
            event = self._ledger.debit(
                caller.user_id, amount, "sandbox_withdrawal", actor_id=caller.user_id
            )
            return {"event": event, "new_balance": event["balance_after"]}

        return self._run(
            caller,
            "wallet.withdraw",
            "wallet_withdraw",
            idempotency_key,
            {"amount": amount},
            operation,
        )

    def admin_credit(
        self,
        caller: Caller,
        user_id: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Credit any user's wallet and record why."""
        if not caller.is_admin:
            raise ForbiddenError("FORBIDDEN", "Admin access required")
        amount = self._validate_amount(payload)
        reason = payload.get("reason")
        if not isinstance(reason, str) or not reason.strip() or len(reason) > MAX_REASON_LENGTH:
            raise ServiceError("INVALID_PAYLOAD", "Reason is required", 400, {})
        reason = reason.strip()

        def execute() -> dict[str, Any]:
            with self._db.transaction():
                self._freezes.ensure_not_frozen(caller.user_id)
                event = self._ledger.credit(
                    user_id,
                    amount,
                    "admin_credit",
                    actor_id=caller.user_id,
                    metadata={"reason": reason},
                )
                self._audit.record_admin_action(
                    caller.user_id,
                    "wallet_credit",
                    "user",
                    user_id,
                    reason=reason,
                    old_value={"balance": event["balance_before"]},
                    new_value={"balance": event["balance_after"]},
                )
            self._logger.info(
                "Admin wallet credit",
                extra={"admin_id": caller.user_id, "user_id": user_id, "amount": amount},
            )
            return {"event": event, "new_balance": event["balance_after"]}

        return self._idempotency.guard(
            idempotency_key,
            caller.user_id,
            "admin.wallet_credit",
            {"user_id": user_id, "amount": amount, "reason": reason},
            execute,
        )
