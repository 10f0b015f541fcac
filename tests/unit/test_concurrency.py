"""Tests for the conditional-update primitive."""

from __future__ import annotations

import pytest

from settlement_service.core.exceptions import ConflictError
from settlement_service.services.concurrency import conditional_update
from settlement_service.services.state_machine import TaskStatus
from tests.helpers import task_payload


@pytest.fixture
def open_task(components, poster):
    return components.engine.create_task(poster, task_payload())["task"]


@pytest.mark.unit
def test_update_applies_when_status_matches(components, open_task):
    result = conditional_update(
        components.db,
        "task",
        open_task["task_id"],
        TaskStatus.OPEN,
        {"status": TaskStatus.ACCEPTED, "doer_id": "u-someone"},
    )

    assert result.updated is True
    row = components.tasks.get_task(open_task["task_id"])
    assert row["status"] == "accepted"
    assert row["doer_id"] == "u-someone"


@pytest.mark.unit
def test_stale_expected_status_updates_nothing(components, open_task):
    """A writer that read 'accepted' cannot overwrite a row that is still 'open'."""
    result = conditional_update(
        components.db,
        "task",
        open_task["task_id"],
        TaskStatus.ACCEPTED,
        {"status": TaskStatus.IN_PROGRESS},
    )

    assert result.updated is False
    assert components.tasks.get_task(open_task["task_id"])["status"] == "open"


@pytest.mark.unit
def test_second_writer_loses(components, open_task):
    first = conditional_update(
        components.db,
        "task",
        open_task["task_id"],
        "open",
        {"status": "accepted", "doer_id": "u-first"},
    )
    second = conditional_update(
        components.db,
        "task",
        open_task["task_id"],
        "open",
        {"status": "accepted", "doer_id": "u-second"},
    )

    assert first.updated is True
    assert second.updated is False
    assert components.tasks.get_task(open_task["task_id"])["doer_id"] == "u-first"


@pytest.mark.unit
def test_raise_on_conflict(components):
    result = conditional_update(
        components.db, "escrow", "esc-missing", "in_escrow", {"status": "released"}
    )
    with pytest.raises(ConflictError) as exc_info:
        result.raise_on_conflict("gone", error="PAYMENT_ALREADY_RELEASED")

    assert exc_info.value.error == "PAYMENT_ALREADY_RELEASED"
    assert exc_info.value.status_code == 409
    assert exc_info.value.details == {
        "entity": "escrow",
        "entity_id": "esc-missing",
        "expected_status": "in_escrow",
    }


@pytest.mark.unit
def test_amount_columns_are_not_updatable(components, open_task):
    escrow = components.escrows.get_escrow_by_task(open_task["task_id"])
    with pytest.raises(ValueError, match="not updatable"):
        conditional_update(
            components.db, "escrow", escrow["escrow_id"], "in_escrow", {"net_payout": 1}
        )


@pytest.mark.unit
def test_unknown_entity_and_empty_fields_are_rejected(components):
    with pytest.raises(ValueError, match="Unknown entity"):
        conditional_update(components.db, "profile", "x", "open", {"status": "x"})
    with pytest.raises(ValueError, match="at least one field"):
        conditional_update(components.db, "task", "x", "open", {})
