"""Dispute resolution: decide who gets the escrowed funds and pay them out."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from settlement_service.core.clock import now_iso
from settlement_service.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvariantViolationError,
    NotFoundError,
    ServiceError,
)
from settlement_service.logging import get_logger
from settlement_service.services.concurrency import conditional_update
from settlement_service.services.fee_calculator import percent_of
from settlement_service.services.state_machine import (
    DisputeStatus,
    EscrowStatus,
    TaskStatus,
    validate_dispute_transition,
    validate_escrow_transition,
    validate_task_transition,
)

if TYPE_CHECKING:
    from settlement_service.core.caller import Caller
    from settlement_service.core.database import Database
    from settlement_service.services.account_freezes import AccountFreezeRegistry
    from settlement_service.services.audit_log import AuditLog
    from settlement_service.services.dispute_store import DisputeStore
    from settlement_service.services.escrow_store import EscrowStore
    from settlement_service.services.idempotency import IdempotencyGuard
    from settlement_service.services.notifications import NotificationOutbox
    from settlement_service.services.profile_store import ProfileStore
    from settlement_service.services.task_store import TaskStore
    from settlement_service.services.wallet_ledger import WalletLedger

RESOLUTION_TYPES = ("full_release", "full_refund", "split")
MAX_NOTES_LENGTH = 5000


def _parse_percent(value: object, field: str) -> Decimal:
    if value is None:
        raise ServiceError(
            "INVALID_PAYLOAD", f"{field} is required for a split resolution", 400, {}
        )
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ServiceError("INVALID_PAYLOAD", f"{field} must be a number", 400, {})
    try:
        percent = Decimal(str(value))
    except InvalidOperation as exc:
        raise ServiceError("INVALID_PAYLOAD", f"{field} must be a number", 400, {}) from exc
    if not percent.is_finite() or percent < 0 or percent > 100:
        raise ServiceError("INVALID_PAYLOAD", f"{field} must be between 0 and 100", 400, {})
    return percent


def compute_resolution(
    escrow: dict[str, Any],
    resolution_type: str,
    poster_refund_percent: object = None,
    doer_payout_percent: object = None,
) -> dict[str, Any]:
    """
    Work out the amounts for one resolution of an escrow.

    Split percentages apply independently: the poster's to the gross amount,
    the doer's to the net payout. They need not sum to 100, but the two
    amounts together may never exceed the gross amount.

    Returns:
        {"poster_refund", "doer_payout", "resolved_in_favor_of"}
    """
    gross = escrow["gross_amount"]
    net = escrow["net_payout"]

    if resolution_type == "full_release":
        return {"poster_refund": 0, "doer_payout": net, "resolved_in_favor_of": "doer"}
    if resolution_type == "full_refund":
        return {"poster_refund": gross, "doer_payout": 0, "resolved_in_favor_of": "poster"}
    if resolution_type != "split":
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"resolution_type must be one of {', '.join(RESOLUTION_TYPES)}",
            400,
            {},
        )

    poster_refund = percent_of(gross, _parse_percent(poster_refund_percent, "poster_refund_percent"))
    doer_payout = percent_of(net, _parse_percent(doer_payout_percent, "doer_payout_percent"))
    if poster_refund + doer_payout > gross:
        raise ServiceError(
            "INVALID_SPLIT",
            "Split amounts exceed the escrowed amount",
            400,
            {"poster_refund": poster_refund, "doer_payout": doer_payout, "gross_amount": gross},
        )
    return {
        "poster_refund": poster_refund,
        "doer_payout": doer_payout,
        "resolved_in_favor_of": "split",
    }


class DisputeResolver:
    """
    Admin-side settlement of disputed escrows.

    resolve() writes the dispute, the escrow, the task, up to two wallets,
    the admin audit trail and both parties' notifications in one transaction.
    """

    def __init__(
        self,
        db: Database,
        tasks: TaskStore,
        escrows: EscrowStore,
        disputes: DisputeStore,
        profiles: ProfileStore,
        ledger: WalletLedger,
        audit: AuditLog,
        outbox: NotificationOutbox,
        freezes: AccountFreezeRegistry,
        idempotency: IdempotencyGuard,
    ) -> None:
        self._db = db
        self._tasks = tasks
        self._escrows = escrows
        self._disputes = disputes
        self._profiles = profiles
        self._ledger = ledger
        self._audit = audit
        self._outbox = outbox
        self._freezes = freezes
        self._idempotency = idempotency
        self._logger = get_logger(__name__)

    def resolve(
        self,
        caller: Caller,
        dispute_id: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Resolve an open dispute.

        Args:
            payload: resolution_type, plus poster_refund_percent and
                doer_payout_percent for a split, and optional notes.

        Returns:
            {"dispute": ..., "escrow": ..., "task": ..., "poster_refund",
             "doer_payout", "resolved_in_favor_of"}
        """
        if not caller.is_admin:
            raise ForbiddenError("FORBIDDEN", "Admin access required")

        resolution_type = payload.get("resolution_type")
        if not isinstance(resolution_type, str) or resolution_type not in RESOLUTION_TYPES:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"resolution_type must be one of {', '.join(RESOLUTION_TYPES)}",
                400,
                {},
            )
        notes = payload.get("notes")
        if notes is not None and (not isinstance(notes, str) or len(notes) > MAX_NOTES_LENGTH):
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"notes must be a string of at most {MAX_NOTES_LENGTH} characters",
                400,
                {},
            )
        request_body = {
            "dispute_id": dispute_id,
            "resolution_type": resolution_type,
            "poster_refund_percent": payload.get("poster_refund_percent"),
            "doer_payout_percent": payload.get("doer_payout_percent"),
            "notes": notes,
        }

        def execute() -> dict[str, Any]:
            with self._db.transaction():
                self._freezes.ensure_not_frozen(caller.user_id)
                return self._resolve(caller, dispute_id, request_body)

        return self._idempotency.guard(
            idempotency_key,
            caller.user_id,
            "admin.resolve_dispute",
            request_body,
            execute,
        )

    def _resolve(self, caller: Caller, dispute_id: str, request: dict[str, Any]) -> dict[str, Any]:
        dispute = self._disputes.get_dispute(dispute_id)
        if dispute is None:
            raise NotFoundError(
                "DISPUTE_NOT_FOUND", "Dispute not found", {"dispute_id": dispute_id}
            )
        if dispute["status"] != DisputeStatus.OPEN.value:
            raise ConflictError(
                "Dispute is not open",
                {"dispute_id": dispute_id, "status": dispute["status"]},
                error="DISPUTE_NOT_OPEN",
            )

        task_id = dispute["task_id"]
        task = self._tasks.get_task(task_id)
        if task is None:
            raise InvariantViolationError(
                "Dispute references a missing task", {"dispute_id": dispute_id, "task_id": task_id}
            )
        escrow = None
        if dispute["escrow_id"] is not None:
            escrow = self._escrows.get_escrow(dispute["escrow_id"])
        if escrow is None:
            escrow = self._escrows.get_escrow_by_task(task_id)
        if escrow is None:
            raise NotFoundError("ESCROW_NOT_FOUND", "Escrow not found", {"task_id": task_id})

        if escrow["status"] in (EscrowStatus.RELEASED.value, EscrowStatus.REFUNDED.value):
            raise ConflictError(
                "Escrow is already settled",
                {"escrow_id": escrow["escrow_id"], "status": escrow["status"]},
                error="ESCROW_ALREADY_SETTLED",
            )

        resolution_type = request["resolution_type"]
        amounts = compute_resolution(
            escrow,
            resolution_type,
            request["poster_refund_percent"],
            request["doer_payout_percent"],
        )
        poster_refund = amounts["poster_refund"]
        doer_payout = amounts["doer_payout"]
        escrow_target = (
            EscrowStatus.REFUNDED if resolution_type == "full_refund" else EscrowStatus.RELEASED
        )

        validate_dispute_transition(dispute["status"], DisputeStatus.RESOLVED)
        validate_escrow_transition(escrow["status"], escrow_target)
        validate_task_transition(task["status"], TaskStatus.COMPLETED)

        now = now_iso()
        conditional_update(
            self._db,
            "dispute",
            dispute_id,
            DisputeStatus.OPEN,
            {
                "status": DisputeStatus.RESOLVED,
                "resolution_type": resolution_type,
                "resolved_in_favor_of": amounts["resolved_in_favor_of"],
                "poster_refund_amount": poster_refund,
                "doer_payout_amount": doer_payout,
                "resolution_notes": request["notes"],
                "resolved_by": caller.user_id,
                "resolved_at": now,
                "updated_at": now,
            },
        ).raise_on_conflict("Dispute was resolved by someone else", error="DISPUTE_NOT_OPEN")

        escrow_fields: dict[str, Any] = {"status": escrow_target, "updated_at": now}
        if escrow_target is EscrowStatus.REFUNDED:
            escrow_fields["refunded_at"] = now
        else:
            escrow_fields["released_at"] = now
        conditional_update(
            self._db, "escrow", escrow["escrow_id"], EscrowStatus.DISPUTED, escrow_fields
        ).raise_on_conflict("Escrow is already settled", error="ESCROW_ALREADY_SETTLED")

        conditional_update(
            self._db,
            "task",
            task_id,
            TaskStatus.DISPUTED,
            {"status": TaskStatus.COMPLETED, "completed_at": now, "updated_at": now},
        ).raise_on_conflict("Task state changed, refresh and retry")

        context = {
            "task_id": task_id,
            "escrow_id": escrow["escrow_id"],
            "actor_id": caller.user_id,
            "metadata": {"dispute_id": dispute_id, "resolution_type": resolution_type},
        }
        if doer_payout > 0:
            self._ledger.credit(task["doer_id"], doer_payout, "dispute_resolution", **context)
            self._profiles.increment_tasks_completed(task["doer_id"])
        if poster_refund > 0:
            self._ledger.credit(task["poster_id"], poster_refund, "dispute_refund", **context)

        self._audit.record_admin_action(
            caller.user_id,
            "dispute_resolution",
            "dispute",
            dispute_id,
            reason=request["notes"],
            old_value={"status": dispute["status"], "escrow_status": escrow["status"]},
            new_value={
                "status": DisputeStatus.RESOLVED.value,
                "escrow_status": escrow_target.value,
                "resolution_type": resolution_type,
                "poster_refund": poster_refund,
                "doer_payout": doer_payout,
            },
        )
        self._audit.record_task_event(
            task_id,
            caller.user_id,
            "admin",
            "dispute_resolved",
            TaskStatus.DISPUTED.value,
            TaskStatus.COMPLETED.value,
            {
                "dispute_id": dispute_id,
                "resolution_type": resolution_type,
                "poster_refund": poster_refund,
                "doer_payout": doer_payout,
            },
        )
        for user_id in (task["poster_id"], task["doer_id"]):
            self._outbox.enqueue(
                user_id,
                "dispute_resolved",
                "Dispute Resolved",
                {
                    "task_id": task_id,
                    "dispute_id": dispute_id,
                    "resolution_type": resolution_type,
                    "poster_refund": poster_refund,
                    "doer_payout": doer_payout,
                },
            )

        self._logger.info(
            "Dispute resolved",
            extra={
                "dispute_id": dispute_id,
                "task_id": task_id,
                "resolution_type": resolution_type,
                "poster_refund": poster_refund,
                "doer_payout": doer_payout,
            },
        )
        return {
            "dispute": self._disputes.get_dispute(dispute_id),
            "escrow": self._escrows.get_escrow(escrow["escrow_id"]),
            "task": self._tasks.get_task(task_id),
            **amounts,
        }

    def list_disputes(
        self,
        caller: Caller,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        if not caller.is_admin:
            raise ForbiddenError("FORBIDDEN", "Admin access required")
        if status is not None and status not in {member.value for member in DisputeStatus}:
            raise ServiceError("INVALID_PAYLOAD", f"Unknown dispute status: {status}", 400, {})
        disputes = self._disputes.list_disputes(status=status, limit=limit, offset=offset)
        return {"disputes": disputes, "limit": limit, "offset": offset}

    def get_dispute(self, caller: Caller, dispute_id: str) -> dict[str, Any]:
        """Admins see any dispute; task participants see disputes on their own tasks."""
        dispute = self._disputes.get_dispute(dispute_id)
        if dispute is None:
            raise NotFoundError(
                "DISPUTE_NOT_FOUND", "Dispute not found", {"dispute_id": dispute_id}
            )
        if not caller.is_admin:
            task = self._tasks.get_task(dispute["task_id"])
            if task is None or caller.user_id not in (task["poster_id"], task["doer_id"]):
                raise ForbiddenError("FORBIDDEN", "Only task participants can view this dispute")
        return {"dispute": dispute}
