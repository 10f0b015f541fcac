"""Reconciliation tests: ledger replay and settled-escrow payout checks."""

from __future__ import annotations

import pytest

from settlement_service.services.concurrency import conditional_update
from tests.helpers import disputed_task, make_user_id, submitted_task, task_payload


@pytest.mark.unit
def test_clean_platform_is_consistent(components, poster, doer, admin):
    components.wallets.deposit(poster, {"amount": 3000})
    approved = submitted_task(components, poster, doer)
    components.engine.approve_task(poster, approved["task_id"])
    _task, dispute = disputed_task(components, poster, doer)
    components.resolver.resolve(
        admin,
        dispute["dispute_id"],
        {"resolution_type": "split", "poster_refund_percent": 30, "doer_payout_percent": 60},
    )

    report = components.reconciler.run()

    assert report["consistent"] is True
    assert report["escrows_checked"] == 2
    assert report["users_checked"] >= 2
    assert report["user_problems"] == []
    assert report["escrow_problems"] == []


@pytest.mark.unit
def test_cached_balance_drift_is_reported(components, poster):
    components.wallets.deposit(poster, {"amount": 100})
    with components.db.transaction() as conn:
        conn.execute("UPDATE profiles SET wallet_balance = 90 WHERE user_id = ?", (poster.user_id,))

    report = components.reconciler.run()

    assert report["consistent"] is False
    assert report["user_problems"] == [
        {
            "user_id": poster.user_id,
            "problem": "cached_balance_mismatch",
            "cached_balance": 90,
            "ledger_balance": 100,
        }
    ]


@pytest.mark.unit
def test_chain_break_is_reported(components):
    user_id = make_user_id()
    components.profiles.ensure_profile(user_id)
    with components.db.transaction() as conn:
        conn.execute(
            "INSERT INTO wallet_events (event_id, user_id, event_type, amount, balance_before, "
            "balance_after, metadata, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            ("we-forged", user_id, "admin_credit", 10, 5, 15, "{}", "2026-01-01T00:00:00.000000Z"),
        )

    problem = components.reconciler.check_user(user_id)

    assert problem["problem"] == "chain_break"
    assert problem["event_id"] == "we-forged"
    assert problem["expected_before"] == 0


@pytest.mark.unit
def test_released_escrow_without_payout_is_reported(components, poster):
    task = components.engine.create_task(poster, task_payload())["task"]
    escrow = components.escrows.get_escrow_by_task(task["task_id"])
    conditional_update(
        components.db, "escrow", escrow["escrow_id"], "in_escrow", {"status": "released"}
    )

    report = components.reconciler.run()

    assert report["consistent"] is False
    assert report["escrow_problems"][0]["problem"] == "settled_without_wallet_event"
    assert report["escrow_problems"][0]["escrow_id"] == escrow["escrow_id"]


@pytest.mark.unit
def test_payout_mismatch_is_reported(components, poster, doer):
    task = submitted_task(components, poster, doer)
    components.engine.approve_task(poster, task["task_id"])
    escrow = components.escrows.get_escrow_by_task(task["task_id"])
    components.ledger.credit(
        doer.user_id, 1, "admin_credit", task_id=task["task_id"], escrow_id=escrow["escrow_id"]
    )

    problem = components.reconciler.check_escrow(escrow)

    assert problem == {
        "escrow_id": escrow["escrow_id"],
        "task_id": task["task_id"],
        "problem": "payout_mismatch",
        "expected": 8000,
        "paid": 8001,
    }
