"""Admin freeze and unfreeze of user accounts, with an audit trail."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from settlement_service.core.exceptions import ForbiddenError, ServiceError
from settlement_service.logging import get_logger

if TYPE_CHECKING:
    from settlement_service.core.caller import Caller
    from settlement_service.core.database import Database
    from settlement_service.services.account_freezes import AccountFreezeRegistry
    from settlement_service.services.audit_log import AuditLog

MAX_REASON_LENGTH = 2000


class AccountAdmin:
    """Wraps the freeze registry so every change also writes an AdminAction."""

    def __init__(self, db: Database, freezes: AccountFreezeRegistry, audit: AuditLog) -> None:
        self._db = db
        self._freezes = freezes
        self._audit = audit
        self._logger = get_logger(__name__)

    def _require_admin(self, caller: Caller) -> None:
        if not caller.is_admin:
            raise ForbiddenError("FORBIDDEN", "Admin access required")

    def freeze(self, caller: Caller, user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        self._require_admin(caller)
        if user_id == caller.user_id:
            raise ServiceError("INVALID_PAYLOAD", "Admins cannot freeze themselves", 400, {})
        reason = payload.get("reason")
        if not isinstance(reason, str) or not reason.strip() or len(reason) > MAX_REASON_LENGTH:
            raise ServiceError("INVALID_PAYLOAD", "Reason is required", 400, {})

        with self._db.transaction():
            result = self._freezes.freeze(user_id, caller.user_id, reason.strip())
            self._audit.record_admin_action(
                caller.user_id,
                "freeze_user",
                "user",
                user_id,
                reason=reason.strip(),
                old_value={"frozen": False},
                new_value={"frozen": True},
            )
        self._logger.info("Account frozen", extra={"user_id": user_id, "admin_id": caller.user_id})
        return result

    def unfreeze(self, caller: Caller, user_id: str) -> dict[str, Any]:
        self._require_admin(caller)
        with self._db.transaction():
            result = self._freezes.unfreeze(user_id, caller.user_id)
            self._audit.record_admin_action(
                caller.user_id,
                "unfreeze_user",
                "user",
                user_id,
                old_value={"frozen": True},
                new_value={"frozen": False},
            )
        self._logger.info(
            "Account unfrozen", extra={"user_id": user_id, "admin_id": caller.user_id}
        )
        return result

    def list_frozen(self, caller: Caller) -> dict[str, Any]:
        self._require_admin(caller)
        return {"frozen_users": self._freezes.list_frozen()}
