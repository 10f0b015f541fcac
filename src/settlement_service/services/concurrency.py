"""Conditional-update primitive: write a row only if its status is still what the caller read."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from settlement_service.core.exceptions import ConflictError

if TYPE_CHECKING:
    from settlement_service.core.database import Database

# entity name -> (table, primary key column); the only tables this primitive may touch
_GUARDED_TABLES: dict[str, tuple[str, str]] = {
    "task": ("tasks", "task_id"),
    "escrow": ("escrows", "escrow_id"),
    "dispute": ("disputes", "dispute_id"),
}

_UPDATABLE_COLUMNS: dict[str, frozenset[str]] = {
    "task": frozenset(
        {
            "status",
            "doer_id",
            "accepted_at",
            "started_at",
            "submitted_at",
            "approved_at",
            "completed_at",
            "auto_release_at",
            "updated_at",
        }
    ),
    "escrow": frozenset(
        {"status", "doer_id", "auto_release_at", "released_at", "refunded_at", "updated_at"}
    ),
    "dispute": frozenset(
        {
            "status",
            "resolution_type",
            "resolved_in_favor_of",
            "poster_refund_amount",
            "doer_payout_amount",
            "resolution_notes",
            "resolved_by",
            "resolved_at",
            "updated_at",
        }
    ),
}


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of a conditional update. `updated=False` means the precondition failed."""

    entity: str
    entity_id: str
    expected_status: str
    updated: bool

    def raise_on_conflict(self, message: str, error: str = "CONFLICT") -> None:
        """Turn a missed precondition into a ConflictError."""
        if not self.updated:
            raise ConflictError(
                message,
                {
                    "entity": self.entity,
                    "entity_id": self.entity_id,
                    "expected_status": self.expected_status,
                },
                error=error,
            )


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def conditional_update(
    db: Database,
    entity: str,
    entity_id: str,
    expected_status: str | Enum,
    fields: dict[str, Any],
) -> UpdateResult:
    """
    UPDATE <entity> SET <fields> WHERE id = ? AND status = ?.

    Zero affected rows means another writer moved the row first (or it does
    not exist); the caller decides what that means and must not retry blindly.
    """
    if entity not in _GUARDED_TABLES:
        msg = f"Unknown entity for conditional update: {entity}"
        raise ValueError(msg)
    if not fields:
        msg = "conditional_update requires at least one field"
        raise ValueError(msg)
    unknown = set(fields) - _UPDATABLE_COLUMNS[entity]
    if unknown:
        msg = f"Columns not updatable on {entity}: {sorted(unknown)}"
        raise ValueError(msg)

    table, key_column = _GUARDED_TABLES[entity]
    columns = sorted(fields)
    assignments = ", ".join(f"{column} = ?" for column in columns)
    params = [_plain(fields[column]) for column in columns]
    expected = _plain(expected_status)

    with db.transaction() as conn:
        cursor = conn.execute(
            f"UPDATE {table} SET {assignments} WHERE {key_column} = ? AND status = ?",  # noqa: S608
            (*params, entity_id, expected),
        )
        updated = cursor.rowcount == 1

    return UpdateResult(entity=entity, entity_id=entity_id, expected_status=expected, updated=updated)
