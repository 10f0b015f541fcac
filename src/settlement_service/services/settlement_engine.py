"""Task lifecycle and escrow release. All settlement business logic lives here."""

from __future__ import annotations

import math
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from settlement_service.core.caller import Caller
from settlement_service.core.clock import new_id, new_task_code, parse_iso, to_iso, utc_now
from settlement_service.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvariantViolationError,
    NotFoundError,
    ServiceError,
)
from settlement_service.logging import get_logger
from settlement_service.services.concurrency import conditional_update
from settlement_service.services.dispute_store import DuplicateDisputeError
from settlement_service.services.fee_calculator import calculate_fee
from settlement_service.services.state_machine import (
    DisputeStatus,
    EscrowStatus,
    TaskStatus,
    validate_escrow_transition,
    validate_task_transition,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from settlement_service.config import SettlementConfig
    from settlement_service.core.database import Database
    from settlement_service.services.account_freezes import AccountFreezeRegistry
    from settlement_service.services.audit_log import AuditLog
    from settlement_service.services.dispute_store import DisputeStore
    from settlement_service.services.escrow_store import EscrowStore
    from settlement_service.services.idempotency import IdempotencyGuard
    from settlement_service.services.notifications import NotificationOutbox
    from settlement_service.services.profile_store import ProfileStore
    from settlement_service.services.rate_limiter import RateLimiter
    from settlement_service.services.task_store import TaskStore
    from settlement_service.services.wallet_ledger import WalletLedger

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000
MAX_CATEGORY_LENGTH = 50
MAX_REASON_LENGTH = 2000
MAX_MESSAGE_LENGTH = 5000
MAX_ATTACHMENTS = 20


def _is_int(value: object) -> bool:
    """Check if value is an integer (not float, not bool)."""
    return isinstance(value, int) and not isinstance(value, bool)


def _require_text(data: dict[str, Any], field: str, max_length: int) -> str:
    value = data.get(field)
    if value is None:
        raise ServiceError("INVALID_PAYLOAD", f"Missing required field: {field}", 400, {})
    if not isinstance(value, str):
        raise ServiceError("INVALID_PAYLOAD", f"Field '{field}' must be a string", 400, {})
    value = value.strip()
    if not value:
        raise ServiceError("INVALID_PAYLOAD", f"Field '{field}' must not be empty", 400, {})
    if len(value) > max_length:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Field '{field}' must be at most {max_length} characters",
            400,
            {},
        )
    return value


def _optional_text(data: dict[str, Any], field: str, max_length: int) -> str | None:
    if data.get(field) is None:
        return None
    return _require_text(data, field, max_length)


def _optional_coordinate(data: dict[str, Any], field: str, bound: float) -> float | None:
    value = data.get(field)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ServiceError("INVALID_PAYLOAD", f"Field '{field}' must be a number", 400, {})
    if abs(value) > bound:
        raise ServiceError("INVALID_PAYLOAD", f"Field '{field}' is out of range", 400, {})
    return float(value)


class SettlementEngine:
    """
    Runs the task lifecycle (create, accept, start, submit, approve, dispute)
    and every path that releases escrowed funds.

    Each public mutation goes through the idempotency guard, then runs as one
    database transaction: freeze check, rate limit, role checks,
    transition validation, conditional updates, wallet credits, audit rows
    and outbox notifications either all persist or none do.
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
        rate_limiter: RateLimiter,
        idempotency: IdempotencyGuard,
        config: SettlementConfig,
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
        self._rate_limiter = rate_limiter
        self._idempotency = idempotency
        self._config = config
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    def _run_mutation(
        self,
        caller: Caller,
        endpoint: str,
        idempotency_key: str | None,
        request_body: dict[str, Any],
        operation: Callable[[], dict[str, Any]],
        rate_limit: str | None = None,
    ) -> dict[str, Any]:
        """
        Idempotency guard around one atomic unit.

        The freeze check and every clock-dependent check run inside the unit,
        after the stored-key lookup, so a replay of a committed request always
        returns the stored response.
        """

        def execute() -> dict[str, Any]:
            with self._db.transaction():
                if not caller.is_system:
                    self._freezes.ensure_not_frozen(caller.user_id)
                if rate_limit is not None:
                    self._rate_limiter.check(caller.user_id, rate_limit)
                result = operation()
                if rate_limit is not None:
                    self._rate_limiter.record(caller.user_id, rate_limit)
                return result

        return self._idempotency.guard(
            idempotency_key,
            caller.user_id,
            endpoint,
            request_body,
            execute,
        )

    def _load_task(self, task_id: str) -> dict[str, Any]:
        task = self._tasks.get_task(task_id)
        if task is None:
            raise NotFoundError("TASK_NOT_FOUND", "Task not found", {"task_id": task_id})
        return task

    def _load_escrow_for_task(self, task_id: str) -> dict[str, Any]:
        escrow = self._escrows.get_escrow_by_task(task_id)
        if escrow is None:
            raise NotFoundError("ESCROW_NOT_FOUND", "Escrow not found", {"task_id": task_id})
        return escrow

    def _actor_role(self, caller: Caller, task: dict[str, Any]) -> str:
        if caller.is_system:
            return "system"
        if caller.is_admin:
            return "admin"
        if caller.user_id == task["poster_id"]:
            return "poster"
        if caller.user_id == task["doer_id"]:
            return "doer"
        return "user"

    def _require_poster(self, caller: Caller, task: dict[str, Any], action: str) -> None:
        if caller.user_id != task["poster_id"]:
            raise ForbiddenError("FORBIDDEN", f"Only the task poster can {action}")

    def _require_doer(self, caller: Caller, task: dict[str, Any], action: str) -> None:
        if task["doer_id"] is None or caller.user_id != task["doer_id"]:
            raise ForbiddenError("FORBIDDEN", f"Only the assigned doer can {action}")

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_task(
        self,
        caller: Caller,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a task and its escrow in one transaction.

        The fee tier is fixed now, from the poster's own completed-task
        count, and never recomputed.

        Returns:
            {"task": ..., "escrow": ..., "fee": ...}
        """
        fields = self._validate_new_task(payload)

        def operation() -> dict[str, Any]:
            return self._create_task(caller, fields)

        return self._run_mutation(
            caller,
            "tasks.create",
            idempotency_key,
            fields,
            operation,
            rate_limit="task_create",
        )

    def _validate_new_task(self, payload: dict[str, Any]) -> dict[str, Any]:
        title = _require_text(payload, "title", MAX_TITLE_LENGTH)
        description = _require_text(payload, "description", MAX_DESCRIPTION_LENGTH)
        category = _optional_text(payload, "category", MAX_CATEGORY_LENGTH) or "other"

        reward = payload.get("reward_amount")
        if reward is None:
            raise ServiceError("INVALID_PAYLOAD", "Missing required field: reward_amount", 400, {})
        if not _is_int(reward) or not (
            self._config.min_reward <= reward <= self._config.max_reward
        ):
            raise ServiceError(
                "INVALID_REWARD",
                f"Reward must be an integer between {self._config.min_reward} "
                f"and {self._config.max_reward}",
                400,
                {"min": self._config.min_reward, "max": self._config.max_reward},
            )

        deadline_raw = _require_text(payload, "deadline", 64)
        try:
            deadline = parse_iso(deadline_raw)
        except ValueError as exc:
            raise ServiceError(
                "INVALID_DEADLINE", "deadline must be an ISO 8601 timestamp", 400, {}
            ) from exc
        if deadline.tzinfo is None:
            raise ServiceError("INVALID_DEADLINE", "deadline must include a timezone", 400, {})

        is_in_person = payload.get("is_in_person", False)
        if not isinstance(is_in_person, bool):
            raise ServiceError("INVALID_PAYLOAD", "Field 'is_in_person' must be a boolean", 400, {})

        return {
            "title": title,
            "description": description,
            "category": category,
            "reward_amount": reward,
            "deadline": to_iso(deadline),
            "is_in_person": is_in_person,
            "location_address": _optional_text(payload, "location_address", 500),
            "location_lat": _optional_coordinate(payload, "location_lat", 90.0),
            "location_lng": _optional_coordinate(payload, "location_lng", 180.0),
        }

    def _create_task(self, caller: Caller, fields: dict[str, Any]) -> dict[str, Any]:
        if parse_iso(fields["deadline"]) <= utc_now():
            raise ServiceError("INVALID_DEADLINE", "deadline must be in the future", 400, {})
        self._profiles.ensure_profile(caller.user_id)
        fee = calculate_fee(
            fields["reward_amount"],
            self._profiles.get_tasks_completed(caller.user_id),
        )
        if fee.platform_fee + fee.net_payout != fields["reward_amount"]:
            raise InvariantViolationError("Fee breakdown does not conserve the gross amount", fee.to_dict())

        now = to_iso(utc_now())
        task_id = new_id("t")
        escrow_id = new_id("esc")

        self._tasks.insert_task(
            {
                **fields,
                "task_id": task_id,
                "task_code": new_task_code(),
                "poster_id": caller.user_id,
                "doer_id": None,
                "is_in_person": int(fields["is_in_person"]),
                "status": TaskStatus.OPEN.value,
                "created_at": now,
                "updated_at": now,
            }
        )
        self._escrows.insert_escrow(
            {
                "escrow_id": escrow_id,
                "task_id": task_id,
                "poster_id": caller.user_id,
                "doer_id": None,
                "gross_amount": fee.gross_amount,
                "platform_fee": fee.platform_fee,
                "net_payout": fee.net_payout,
                "fee_percentage": fee.applied_fee_percent,
                "status": EscrowStatus.PENDING.value,
                "created_at": now,
                "updated_at": now,
            }
        )
        # funding is sandboxed, so the escrow is held as soon as it exists
        validate_escrow_transition(EscrowStatus.PENDING, EscrowStatus.IN_ESCROW)
        conditional_update(
            self._db,
            "escrow",
            escrow_id,
            EscrowStatus.PENDING,
            {"status": EscrowStatus.IN_ESCROW, "updated_at": now},
        ).raise_on_conflict("Escrow changed during creation")

        self._audit.record_task_event(
            task_id,
            caller.user_id,
            "poster",
            "task_created",
            None,
            TaskStatus.OPEN.value,
            {"reward_amount": fee.gross_amount, "fee_percentage": fee.applied_fee_percent},
        )
        task = self._load_task(task_id)
        self._outbox.enqueue(
            caller.user_id,
            "task_created",
            "Task Created",
            {"task_id": task_id, "task_code": task["task_code"]},
        )

        self._logger.info(
            "Task created",
            extra={
                "task_id": task_id,
                "poster_id": caller.user_id,
                "reward_amount": fee.gross_amount,
                "platform_fee": fee.platform_fee,
            },
        )
        return {
            "task": task,
            "escrow": self._load_escrow_for_task(task_id),
            "fee": fee.to_dict(),
        }

    # ------------------------------------------------------------------
    # Accept / start / submit
    # ------------------------------------------------------------------

    def accept_task(
        self,
        caller: Caller,
        task_id: str,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Assign the caller as doer of an open task. At most one accept ever succeeds."""

        def operation() -> dict[str, Any]:
            task = self._load_task(task_id)
            if caller.user_id == task["poster_id"]:
                raise ForbiddenError("CANNOT_ACCEPT_OWN_TASK", "Cannot accept your own task")
            validate_task_transition(task["status"], TaskStatus.ACCEPTED)

            now = to_iso(utc_now())
            conditional_update(
                self._db,
                "task",
                task_id,
                TaskStatus.OPEN,
                {
                    "status": TaskStatus.ACCEPTED,
                    "doer_id": caller.user_id,
                    "accepted_at": now,
                    "updated_at": now,
                },
            ).raise_on_conflict("Task was taken by someone else", error="TASK_ALREADY_TAKEN")

            escrow = self._load_escrow_for_task(task_id)
            conditional_update(
                self._db,
                "escrow",
                escrow["escrow_id"],
                EscrowStatus.IN_ESCROW,
                {"doer_id": caller.user_id, "updated_at": now},
            ).raise_on_conflict("Escrow is no longer held")

            self._profiles.ensure_profile(caller.user_id)
            self._audit.record_task_event(
                task_id,
                caller.user_id,
                "doer",
                "task_accepted",
                TaskStatus.OPEN.value,
                TaskStatus.ACCEPTED.value,
            )
            self._outbox.enqueue(
                task["poster_id"],
                "task_accepted",
                "Task Accepted",
                {"task_id": task_id, "doer_id": caller.user_id},
            )
            self._logger.info("Task accepted", extra={"task_id": task_id, "doer_id": caller.user_id})
            return {"task": self._load_task(task_id)}

        return self._run_mutation(
            caller,
            "tasks.accept",
            idempotency_key,
            {"task_id": task_id, "action": "accept"},
            operation,
            rate_limit="task_accept",
        )

    def start_task(
        self,
        caller: Caller,
        task_id: str,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Move an accepted task into progress. Assigned doer only."""

        def operation() -> dict[str, Any]:
            task = self._load_task(task_id)
            self._require_doer(caller, task, "start this task")
            validate_task_transition(task["status"], TaskStatus.IN_PROGRESS)

            now = to_iso(utc_now())
            conditional_update(
                self._db,
                "task",
                task_id,
                TaskStatus.ACCEPTED,
                {"status": TaskStatus.IN_PROGRESS, "started_at": now, "updated_at": now},
            ).raise_on_conflict("Task state changed, refresh and retry")

            self._audit.record_task_event(
                task_id,
                caller.user_id,
                "doer",
                "task_started",
                TaskStatus.ACCEPTED.value,
                TaskStatus.IN_PROGRESS.value,
            )
            self._logger.info("Task started", extra={"task_id": task_id, "doer_id": caller.user_id})
            return {"task": self._load_task(task_id)}

        return self._run_mutation(
            caller,
            "tasks.start",
            idempotency_key,
            {"task_id": task_id, "action": "start"},
            operation,
        )

    def submit_task(
        self,
        caller: Caller,
        task_id: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Submit work for review. Assigned doer only.

        Starts the auto-release clock on both the task and its escrow.
        """
        message = _optional_text(payload, "message", MAX_MESSAGE_LENGTH) or ""
        attachments = payload.get("attachments", [])
        if (
            not isinstance(attachments, list)
            or len(attachments) > MAX_ATTACHMENTS
            or not all(isinstance(item, str) and item for item in attachments)
        ):
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"attachments must be a list of at most {MAX_ATTACHMENTS} non-empty strings",
                400,
                {},
            )

        def operation() -> dict[str, Any]:
            task = self._load_task(task_id)
            self._require_doer(caller, task, "submit this task")
            validate_task_transition(task["status"], TaskStatus.SUBMITTED)

            now_dt = utc_now()
            now = to_iso(now_dt)
            auto_release_at = to_iso(now_dt + timedelta(hours=self._config.auto_release_hours))

            conditional_update(
                self._db,
                "task",
                task_id,
                TaskStatus.IN_PROGRESS,
                {
                    "status": TaskStatus.SUBMITTED,
                    "submitted_at": now,
                    "auto_release_at": auto_release_at,
                    "updated_at": now,
                },
            ).raise_on_conflict("Task state changed, refresh and retry")

            escrow = self._load_escrow_for_task(task_id)
            conditional_update(
                self._db,
                "escrow",
                escrow["escrow_id"],
                EscrowStatus.IN_ESCROW,
                {"auto_release_at": auto_release_at, "updated_at": now},
            ).raise_on_conflict("Escrow is no longer held")

            submission_id = new_id("sub")
            self._tasks.insert_submission(
                {
                    "submission_id": submission_id,
                    "task_id": task_id,
                    "submitted_by": caller.user_id,
                    "message": message,
                    "attachments": attachments,
                    "created_at": now,
                }
            )
            self._audit.record_task_event(
                task_id,
                caller.user_id,
                "doer",
                "task_submitted",
                TaskStatus.IN_PROGRESS.value,
                TaskStatus.SUBMITTED.value,
                {"submission_id": submission_id},
            )
            self._outbox.enqueue(
                task["poster_id"],
                "task_submitted",
                "Task Submitted for Review",
                {"task_id": task_id, "auto_release_at": auto_release_at},
            )
            self._logger.info(
                "Task submitted",
                extra={"task_id": task_id, "auto_release_at": auto_release_at},
            )
            return {
                "task": self._load_task(task_id),
                "submission_id": submission_id,
                "auto_release_at": auto_release_at,
            }

        return self._run_mutation(
            caller,
            "tasks.submit",
            idempotency_key,
            {"task_id": task_id, "message": message, "attachments": attachments},
            operation,
        )

    # ------------------------------------------------------------------
    # Release paths: approve, manual release, admin force, auto-release
    # ------------------------------------------------------------------

    def approve_task(
        self,
        caller: Caller,
        task_id: str,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Approve submitted work and pay the doer. Poster only.

        Returns:
            {"success", "task_id", "escrow_id", "released_amount",
             "platform_fee", "new_balance"}
        """

        def operation() -> dict[str, Any]:
            task = self._load_task(task_id)
            self._require_poster(caller, task, "approve")
            return self._release(
                caller,
                task,
                via_approved=True,
                task_event="task_approved",
                approval_type="manual",
                doer_notification=("task_approved", "Payment Released!"),
            )

        return self._run_mutation(
            caller,
            "tasks.approve",
            idempotency_key,
            {"task_id": task_id, "action": "approve"},
            operation,
        )

    def release_escrow(
        self,
        caller: Caller,
        task_id: str,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Poster-initiated release. Mutually exclusive with approve via the escrow status guard."""

        def operation() -> dict[str, Any]:
            task = self._load_task(task_id)
            self._require_poster(caller, task, "release payment")
            return self._release(
                caller,
                task,
                via_approved=True,
                task_event="escrow_released",
                approval_type="manual_release",
                doer_notification=("payment_released", "Payment Released!"),
            )

        return self._run_mutation(
            caller,
            "escrow.release",
            idempotency_key,
            {"task_id": task_id, "action": "release"},
            operation,
        )

    def force_complete(
        self,
        caller: Caller,
        task_id: str,
        reason: str,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Admin completes a submitted task on the poster's behalf, paying the doer."""
        if not caller.is_admin:
            raise ForbiddenError("FORBIDDEN", "Admin access required")
        reason = _require_text({"reason": reason}, "reason", MAX_REASON_LENGTH)

        def operation() -> dict[str, Any]:
            task = self._load_task(task_id)
            result = self._release(
                caller,
                task,
                via_approved=False,
                task_event="admin_force_complete",
                approval_type="admin_force",
                doer_notification=("payment_released", "Payment Released!"),
                metadata={"reason": reason},
            )
            self._audit.record_admin_action(
                caller.user_id,
                "force_complete",
                "task",
                task_id,
                reason=reason,
                old_value={"status": task["status"]},
                new_value={"status": TaskStatus.COMPLETED.value},
            )
            return result

        return self._run_mutation(
            caller,
            "admin.force_complete",
            idempotency_key,
            {"task_id": task_id, "reason": reason},
            operation,
        )

    def auto_release_due(self) -> dict[str, Any]:
        """
        Release every submitted task whose auto-release moment has passed.

        Each task settles in its own transaction; a task another caller
        settled first is reported under "skipped", never raised.
        """
        caller = Caller.system()
        now_iso = to_iso(utc_now())
        released: list[dict[str, Any]] = []
        skipped: list[dict[str, Any]] = []

        for candidate in self._tasks.list_due_for_auto_release(now_iso):
            task_id = candidate["task_id"]
            try:
                with self._db.transaction():
                    task = self._load_task(task_id)
                    result = self._release(
                        caller,
                        task,
                        via_approved=False,
                        task_event="auto_released",
                        approval_type="auto",
                        doer_notification=("payment_auto_released", "Payment Auto-Released!"),
                        poster_notification=("task_auto_completed", "Task Auto-Completed"),
                    )
            except ServiceError as exc:
                if exc.status_code >= 500:
                    raise
                skipped.append({"task_id": task_id, "error": exc.error})
                self._logger.warning(
                    "Auto-release skipped",
                    extra={"task_id": task_id, "error_code": exc.error},
                )
                continue
            released.append(result)

        if released or skipped:
            self._logger.info(
                "Auto-release sweep finished",
                extra={"released": len(released), "skipped": len(skipped)},
            )
        return {"processed": len(released), "released": released, "skipped": skipped}

    def _release(
        self,
        caller: Caller,
        task: dict[str, Any],
        *,
        via_approved: bool,
        task_event: str,
        approval_type: str,
        doer_notification: tuple[str, str],
        poster_notification: tuple[str, str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Settle a submitted task in the doer's favour. Must run inside a transaction.

        The escrow conditional update (in_escrow -> released) is the single
        gate shared by every release path, so at most one of them succeeds.
        """
        task_id = task["task_id"]
        escrow = self._load_escrow_for_task(task_id)

        if escrow["status"] == EscrowStatus.RELEASED.value:
            raise ConflictError(
                "Payment already released",
                {"task_id": task_id, "escrow_id": escrow["escrow_id"]},
                error="PAYMENT_ALREADY_RELEASED",
            )
        if escrow["status"] == EscrowStatus.REFUNDED.value:
            raise ConflictError(
                "Payment already refunded",
                {"task_id": task_id, "escrow_id": escrow["escrow_id"]},
                error="PAYMENT_ALREADY_REFUNDED",
            )

        if via_approved:
            validate_task_transition(task["status"], TaskStatus.APPROVED)
            validate_task_transition(TaskStatus.APPROVED, TaskStatus.COMPLETED)
        else:
            validate_task_transition(task["status"], TaskStatus.COMPLETED)
        validate_escrow_transition(escrow["status"], EscrowStatus.RELEASED)
        if escrow["status"] != EscrowStatus.IN_ESCROW.value:
            # disputed escrows settle only through dispute resolution
            raise ConflictError(
                "Escrow is under dispute",
                {"task_id": task_id, "escrow_status": escrow["status"]},
                error="ESCROW_DISPUTED",
            )

        doer_id = task["doer_id"]
        if doer_id is None or escrow["doer_id"] != doer_id:
            raise InvariantViolationError(
                "Escrow doer does not match task doer",
                {"task_id": task_id, "task_doer": doer_id, "escrow_doer": escrow["doer_id"]},
            )

        now = to_iso(utc_now())
        task_fields: dict[str, Any] = {
            "status": TaskStatus.COMPLETED,
            "completed_at": now,
            "updated_at": now,
        }
        if via_approved:
            task_fields["approved_at"] = now
        conditional_update(
            self._db, "task", task_id, TaskStatus.SUBMITTED, task_fields
        ).raise_on_conflict("Task state changed, refresh and retry")

        conditional_update(
            self._db,
            "escrow",
            escrow["escrow_id"],
            EscrowStatus.IN_ESCROW,
            {"status": EscrowStatus.RELEASED, "released_at": now, "updated_at": now},
        ).raise_on_conflict("Payment already released", error="PAYMENT_ALREADY_RELEASED")

        event = self._ledger.credit(
            doer_id,
            escrow["net_payout"],
            "escrow_release",
            task_id=task_id,
            escrow_id=escrow["escrow_id"],
            actor_id=caller.user_id,
            metadata={"approval_type": approval_type, **(metadata or {})},
        )
        self._profiles.increment_tasks_completed(doer_id)

        self._audit.record_task_event(
            task_id,
            caller.user_id,
            self._actor_role(caller, task),
            task_event,
            task["status"],
            TaskStatus.COMPLETED.value,
            {"approval_type": approval_type, "amount": escrow["net_payout"], **(metadata or {})},
        )
        notification_type, title = doer_notification
        self._outbox.enqueue(
            doer_id,
            notification_type,
            title,
            {"task_id": task_id, "amount": escrow["net_payout"]},
        )
        if poster_notification is not None:
            notification_type, title = poster_notification
            self._outbox.enqueue(task["poster_id"], notification_type, title, {"task_id": task_id})

        self._logger.info(
            "Escrow released",
            extra={
                "task_id": task_id,
                "escrow_id": escrow["escrow_id"],
                "doer_id": doer_id,
                "net_payout": escrow["net_payout"],
                "approval_type": approval_type,
            },
        )
        return {
            "success": True,
            "task_id": task_id,
            "escrow_id": escrow["escrow_id"],
            "released_amount": escrow["net_payout"],
            "platform_fee": escrow["platform_fee"],
            "new_balance": event["balance_after"],
        }

    # ------------------------------------------------------------------
    # Dispute
    # ------------------------------------------------------------------

    def dispute_task(
        self,
        caller: Caller,
        task_id: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Contest a submitted task. The poster, the doer or an admin may raise it."""
        reason = _require_text(payload, "reason", MAX_REASON_LENGTH)
        description = _optional_text(payload, "description", MAX_DESCRIPTION_LENGTH)

        def operation() -> dict[str, Any]:
            task = self._load_task(task_id)
            raised_by_role = self._actor_role(caller, task)
            if raised_by_role not in ("poster", "doer", "admin"):
                raise ForbiddenError(
                    "FORBIDDEN", "Only the task poster or assigned doer can dispute"
                )
            validate_task_transition(task["status"], TaskStatus.DISPUTED)

            escrow = self._load_escrow_for_task(task_id)
            validate_escrow_transition(escrow["status"], EscrowStatus.DISPUTED)

            now = to_iso(utc_now())
            conditional_update(
                self._db,
                "task",
                task_id,
                TaskStatus.SUBMITTED,
                {"status": TaskStatus.DISPUTED, "updated_at": now},
            ).raise_on_conflict("Task state changed, refresh and retry")
            conditional_update(
                self._db,
                "escrow",
                escrow["escrow_id"],
                EscrowStatus.IN_ESCROW,
                {"status": EscrowStatus.DISPUTED, "updated_at": now},
            ).raise_on_conflict("Escrow is no longer held")

            dispute_id = new_id("disp")
            try:
                self._disputes.insert_dispute(
                    {
                        "dispute_id": dispute_id,
                        "task_id": task_id,
                        "escrow_id": escrow["escrow_id"],
                        "raised_by_id": caller.user_id,
                        "raised_by_role": raised_by_role,
                        "reason": reason,
                        "description": description,
                        "status": DisputeStatus.OPEN.value,
                        "created_at": now,
                        "updated_at": now,
                    }
                )
            except DuplicateDisputeError as exc:
                raise ConflictError(
                    "Task already has an open dispute",
                    {"task_id": task_id},
                    error="DISPUTE_EXISTS",
                ) from exc

            self._audit.record_task_event(
                task_id,
                caller.user_id,
                raised_by_role,
                "task_disputed",
                TaskStatus.SUBMITTED.value,
                TaskStatus.DISPUTED.value,
                {"dispute_id": dispute_id, "reason": reason},
            )
            recipients = [
                user_id
                for user_id in (task["poster_id"], task["doer_id"])
                if user_id is not None and user_id != caller.user_id
            ]
            for user_id in recipients:
                self._outbox.enqueue(
                    user_id,
                    "task_disputed",
                    "Task Disputed",
                    {"task_id": task_id, "dispute_id": dispute_id, "reason": reason},
                )
            self._logger.info(
                "Task disputed",
                extra={"task_id": task_id, "dispute_id": dispute_id, "raised_by": raised_by_role},
            )
            return {
                "task": self._load_task(task_id),
                "dispute": self._disputes.get_dispute(dispute_id),
            }

        return self._run_mutation(
            caller,
            "tasks.dispute",
            idempotency_key,
            {"task_id": task_id, "reason": reason, "description": description},
            operation,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_task(self, caller: Caller, task_id: str) -> dict[str, Any]:
        """Task detail; escrow, submissions and history are shown to participants and admins."""
        task = self._load_task(task_id)
        result: dict[str, Any] = {"task": task}
        if caller.is_admin or caller.user_id in (task["poster_id"], task["doer_id"]):
            result["escrow"] = self._escrows.get_escrow_by_task(task_id)
            result["submissions"] = self._tasks.list_submissions(task_id)
            result["events"] = self._audit.list_task_events(task_id)
        return result

    def list_tasks(
        self,
        caller: Caller,
        *,
        status: str | None = None,
        category: str | None = None,
        role: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        """
        List tasks. role "poster" or "doer" restricts to the caller's own
        tasks; with no role only open tasks are listed unless a status is given.
        """
        poster_id: str | None = None
        doer_id: str | None = None
        if role == "poster":
            poster_id = caller.user_id
        elif role == "doer":
            doer_id = caller.user_id
        elif role is not None:
            raise ServiceError("INVALID_PAYLOAD", "role must be 'poster' or 'doer'", 400, {})
        elif status is None:
            status = TaskStatus.OPEN.value

        if status is not None and status not in {member.value for member in TaskStatus}:
            raise ServiceError("INVALID_PAYLOAD", f"Unknown task status: {status}", 400, {})

        tasks = self._tasks.list_tasks(
            status=status,
            category=category,
            poster_id=poster_id,
            doer_id=doer_id,
            limit=limit,
            offset=offset,
        )
        return {"tasks": tasks, "limit": limit, "offset": offset}

    def get_escrow(self, caller: Caller, escrow_id: str) -> dict[str, Any]:
        escrow = self._escrows.get_escrow(escrow_id)
        if escrow is None:
            raise NotFoundError("ESCROW_NOT_FOUND", "Escrow not found", {"escrow_id": escrow_id})
        if not caller.is_admin and caller.user_id not in (escrow["poster_id"], escrow["doer_id"]):
            raise ForbiddenError("FORBIDDEN", "Only task participants can view this escrow")
        return {"escrow": escrow, "wallet_events": self._ledger.events_for_escrow(escrow_id)}

    def list_escrows(
        self,
        caller: Caller,
        *,
        role: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        if role not in (None, "poster", "doer"):
            raise ServiceError("INVALID_PAYLOAD", "role must be 'poster' or 'doer'", 400, {})
        if status is not None and status not in {member.value for member in EscrowStatus}:
            raise ServiceError("INVALID_PAYLOAD", f"Unknown escrow status: {status}", 400, {})
        escrows = self._escrows.list_escrows(
            user_id=caller.user_id,
            role=role,
            status=status,
            limit=limit,
            offset=offset,
        )
        return {"escrows": escrows, "limit": limit, "offset": offset}

    def get_audit_trail(self, caller: Caller, task_id: str) -> dict[str, Any]:
        """Everything recorded about one task, for admins."""
        if not caller.is_admin:
            raise ForbiddenError("FORBIDDEN", "Admin access required")
        task = self._load_task(task_id)
        return {
            "task": task,
            "escrow": self._escrows.get_escrow_by_task(task_id),
            "submissions": self._tasks.list_submissions(task_id),
            "disputes": self._disputes.list_for_task(task_id),
            "task_events": self._audit.list_task_events(task_id),
            "wallet_events": self._ledger.events_for_task(task_id),
            "admin_actions": self._audit.list_admin_actions(target_type="task", target_id=task_id),
        }

    def get_stats(self) -> dict[str, Any]:
        by_status = self._tasks.count_tasks_by_status()
        return {"total_tasks": sum(by_status.values()), "tasks_by_status": by_status}
