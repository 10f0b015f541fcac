"""
Status enumerations and the legal-transition tables for tasks, escrows and disputes.

Everything here is pure: no I/O, no clock. The settlement engine checks
roles and ownership first, then asks this module whether the status change
itself is legal, so a permission failure and an illegal transition surface
as different errors.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from settlement_service.core.exceptions import InvalidTransitionError

if TYPE_CHECKING:
    from collections.abc import Mapping


class TaskStatus(str, Enum):
    OPEN = "open"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EscrowStatus(str, Enum):
    PENDING = "pending"
    IN_ESCROW = "in_escrow"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class DisputeStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


TASK_TRANSITIONS: Mapping[TaskStatus, frozenset[TaskStatus]] = MappingProxyType(
    {
        TaskStatus.OPEN: frozenset({TaskStatus.ACCEPTED, TaskStatus.CANCELLED}),
        TaskStatus.ACCEPTED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
        TaskStatus.IN_PROGRESS: frozenset({TaskStatus.SUBMITTED}),
        # completed straight from submitted = auto-release or admin force
        TaskStatus.SUBMITTED: frozenset(
            {TaskStatus.APPROVED, TaskStatus.DISPUTED, TaskStatus.COMPLETED}
        ),
        TaskStatus.APPROVED: frozenset({TaskStatus.COMPLETED}),
        TaskStatus.DISPUTED: frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED}),
        TaskStatus.COMPLETED: frozenset(),
        TaskStatus.CANCELLED: frozenset(),
    }
)

ESCROW_TRANSITIONS: Mapping[EscrowStatus, frozenset[EscrowStatus]] = MappingProxyType(
    {
        EscrowStatus.PENDING: frozenset({EscrowStatus.IN_ESCROW}),
        EscrowStatus.IN_ESCROW: frozenset({EscrowStatus.RELEASED, EscrowStatus.DISPUTED}),
        EscrowStatus.DISPUTED: frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED}),
        EscrowStatus.RELEASED: frozenset(),
        EscrowStatus.REFUNDED: frozenset(),
    }
)

DISPUTE_TRANSITIONS: Mapping[DisputeStatus, frozenset[DisputeStatus]] = MappingProxyType(
    {
        DisputeStatus.OPEN: frozenset(
            {DisputeStatus.UNDER_REVIEW, DisputeStatus.ESCALATED, DisputeStatus.RESOLVED}
        ),
        DisputeStatus.UNDER_REVIEW: frozenset({DisputeStatus.ESCALATED, DisputeStatus.RESOLVED}),
        DisputeStatus.ESCALATED: frozenset({DisputeStatus.RESOLVED}),
        DisputeStatus.RESOLVED: frozenset(),
    }
)


def _label(value: str | Enum) -> str:
    return str(value.value) if isinstance(value, Enum) else str(value)


def _validate(
    entity: str,
    enum_type: type[Enum],
    table: Mapping[Any, frozenset[Any]],
    current: str | Enum,
    requested: str | Enum,
) -> None:
    try:
        source = enum_type(current)
        target = enum_type(requested)
    except ValueError as exc:
        # unknown status strings are illegal transitions, never a crash
        raise InvalidTransitionError(entity, _label(current), _label(requested)) from exc
    if target not in table[source]:
        raise InvalidTransitionError(entity, _label(source), _label(target))


def validate_task_transition(current: str | TaskStatus, requested: str | TaskStatus) -> None:
    """Raise InvalidTransitionError unless `current -> requested` is a legal task edge."""
    _validate("task", TaskStatus, TASK_TRANSITIONS, current, requested)


def validate_escrow_transition(current: str | EscrowStatus, requested: str | EscrowStatus) -> None:
    """Raise InvalidTransitionError unless `current -> requested` is a legal escrow edge."""
    _validate("escrow", EscrowStatus, ESCROW_TRANSITIONS, current, requested)


def validate_dispute_transition(
    current: str | DisputeStatus,
    requested: str | DisputeStatus,
) -> None:
    """Raise InvalidTransitionError unless `current -> requested` is a legal dispute edge."""
    _validate("dispute", DisputeStatus, DISPUTE_TRANSITIONS, current, requested)


def is_terminal_task_status(status: str | TaskStatus) -> bool:
    return not TASK_TRANSITIONS[TaskStatus(status)]
