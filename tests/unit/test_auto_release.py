"""Auto-release sweep tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from freezegun import freeze_time

from settlement_service.services.concurrency import conditional_update
from tests.helpers import disputed_task, submitted_task


def _later(hours: float) -> datetime:
    return datetime.now(UTC) + timedelta(hours=hours)


@pytest.mark.unit
def test_nothing_is_released_before_the_window_closes(components, poster, doer):
    task = submitted_task(components, poster, doer)

    with freeze_time(_later(23)):
        result = components.engine.auto_release_due()

    assert result == {"processed": 0, "released": [], "skipped": []}
    assert components.tasks.get_task(task["task_id"])["status"] == "submitted"


@pytest.mark.unit
def test_overdue_submission_is_released_to_doer(components, poster, doer):
    task = submitted_task(components, poster, doer)

    with freeze_time(_later(25)):
        result = components.engine.auto_release_due()

    assert result["processed"] == 1
    assert result["released"][0]["task_id"] == task["task_id"]
    assert result["released"][0]["released_amount"] == 8000

    stored = components.tasks.get_task(task["task_id"])
    assert stored["status"] == "completed"
    assert stored["approved_at"] is None
    assert components.escrows.get_escrow_by_task(task["task_id"])["status"] == "released"
    assert components.ledger.get_balance(doer.user_id) == 8000
    assert components.profiles.get_tasks_completed(doer.user_id) == 1

    event = components.audit.list_task_events(task["task_id"])[-1]
    assert event["event_type"] == "auto_released"
    assert event["actor_id"] == "system"
    assert event["actor_role"] == "system"

    assert components.outbox.list_for_user(doer.user_id)[0]["title"] == "Payment Auto-Released!"
    assert components.outbox.list_for_user(poster.user_id)[0]["title"] == "Task Auto-Completed"


@pytest.mark.unit
def test_sweep_is_idempotent(components, poster, doer):
    submitted_task(components, poster, doer)

    with freeze_time(_later(25)):
        first = components.engine.auto_release_due()
        second = components.engine.auto_release_due()

    assert first["processed"] == 1
    assert second["processed"] == 0
    assert components.ledger.count_events(doer.user_id) == 1


@pytest.mark.unit
def test_approved_and_disputed_tasks_are_not_swept(components, poster, doer):
    approved = submitted_task(components, poster, doer)
    components.engine.approve_task(poster, approved["task_id"])
    disputed, _dispute = disputed_task(components, poster, doer)

    with freeze_time(_later(48)):
        result = components.engine.auto_release_due()

    assert result["processed"] == 0
    assert components.escrows.get_escrow_by_task(disputed["task_id"])["status"] == "disputed"
    assert components.ledger.count_events(doer.user_id) == 1


@pytest.mark.unit
def test_task_settled_elsewhere_is_skipped_not_raised(components, poster, doer):
    """Another worker released the escrow between listing and settling."""
    first = submitted_task(components, poster, doer)
    second = submitted_task(components, poster, doer)
    escrow = components.escrows.get_escrow_by_task(first["task_id"])
    conditional_update(
        components.db, "escrow", escrow["escrow_id"], "in_escrow", {"status": "released"}
    )

    with freeze_time(_later(25)):
        result = components.engine.auto_release_due()

    assert result["processed"] == 1
    assert result["released"][0]["task_id"] == second["task_id"]
    assert result["skipped"] == [{"task_id": first["task_id"], "error": "PAYMENT_ALREADY_RELEASED"}]
    assert components.tasks.get_task(first["task_id"])["status"] == "submitted"


@pytest.mark.unit
def test_frozen_doer_still_receives_auto_release(components, poster, doer, admin):
    submitted_task(components, poster, doer)
    components.account_admin.freeze(admin, doer.user_id, {"reason": "under review"})

    with freeze_time(_later(25)):
        result = components.engine.auto_release_due()

    assert result["processed"] == 1
    assert components.ledger.get_balance(doer.user_id) == 8000
