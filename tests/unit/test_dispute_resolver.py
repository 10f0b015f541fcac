"""Dispute resolution tests: amounts, state changes, permissions."""

from __future__ import annotations

import pytest

from settlement_service.core.caller import Caller
from settlement_service.core.exceptions import ServiceError
from settlement_service.services.dispute_resolver import compute_resolution
from tests.helpers import bump_tasks_completed, disputed_task, make_user_id, submitted_task

ESCROW_5000 = {"gross_amount": 5000, "platform_fee": 625, "net_payout": 4375}
ESCROW_10000 = {"gross_amount": 10_000, "platform_fee": 2000, "net_payout": 8000}


# ---------------------------------------------------------------------------
# compute_resolution
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_split_rounds_half_up_per_party():
    """50/50 on 5000 gross / 4375 net: poster 2500, doer 2187.5 rounded up to 2188."""
    amounts = compute_resolution(ESCROW_5000, "split", 50, 50)
    assert amounts == {"poster_refund": 2500, "doer_payout": 2188, "resolved_in_favor_of": "split"}


@pytest.mark.unit
def test_full_release_and_full_refund_amounts():
    assert compute_resolution(ESCROW_10000, "full_release") == {
        "poster_refund": 0,
        "doer_payout": 8000,
        "resolved_in_favor_of": "doer",
    }
    assert compute_resolution(ESCROW_10000, "full_refund") == {
        "poster_refund": 10_000,
        "doer_payout": 0,
        "resolved_in_favor_of": "poster",
    }


@pytest.mark.unit
@pytest.mark.parametrize(("poster_pct", "doer_pct"), [(100, 100), (90, 20), (100, 0.1)])
def test_split_exceeding_gross_is_rejected(poster_pct, doer_pct):
    with pytest.raises(ServiceError) as exc_info:
        compute_resolution(ESCROW_10000, "split", poster_pct, doer_pct)
    assert exc_info.value.error == "INVALID_SPLIT"
    assert exc_info.value.status_code == 400


@pytest.mark.unit
def test_split_percentages_need_not_sum_to_100():
    amounts = compute_resolution(ESCROW_10000, "split", 20, 50)
    assert amounts["poster_refund"] == 2000
    assert amounts["doer_payout"] == 4000


@pytest.mark.unit
@pytest.mark.parametrize(
    ("poster_pct", "doer_pct"),
    [(None, 50), (50, None), (-1, 50), (50, 100.5), ("50", 50), (True, 50)],
)
def test_split_percentages_are_validated(poster_pct, doer_pct):
    with pytest.raises(ServiceError) as exc_info:
        compute_resolution(ESCROW_10000, "split", poster_pct, doer_pct)
    assert exc_info.value.error == "INVALID_PAYLOAD"


# ---------------------------------------------------------------------------
# resolve
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_split_resolution_end_to_end(components, poster, doer, admin):
    bump_tasks_completed(components, poster.user_id, 50)
    task, dispute = disputed_task(components, poster, doer, reward_amount=5000)
    escrow = components.escrows.get_escrow_by_task(task["task_id"])
    assert (escrow["platform_fee"], escrow["net_payout"]) == (625, 4375)

    result = components.resolver.resolve(
        admin,
        dispute["dispute_id"],
        {
            "resolution_type": "split",
            "poster_refund_percent": 50,
            "doer_payout_percent": 50,
            "notes": "Half the shelf was built",
        },
    )

    assert result["poster_refund"] == 2500
    assert result["doer_payout"] == 2188
    assert result["task"]["status"] == "completed"
    assert result["escrow"]["status"] == "released"
    assert result["dispute"]["status"] == "resolved"
    assert result["dispute"]["resolved_by"] == admin.user_id
    assert result["dispute"]["resolution_notes"] == "Half the shelf was built"

    assert components.ledger.get_balance(poster.user_id) == 2500
    assert components.ledger.get_balance(doer.user_id) == 2188
    assert components.profiles.get_tasks_completed(doer.user_id) == 1
    types = {event["event_type"] for event in components.ledger.events_for_task(task["task_id"])}
    assert types == {"dispute_refund", "dispute_resolution"}


@pytest.mark.unit
def test_full_refund_returns_gross_to_poster(components, poster, doer, admin):
    task, dispute = disputed_task(components, poster, doer)

    result = components.resolver.resolve(
        admin, dispute["dispute_id"], {"resolution_type": "full_refund"}
    )

    assert result["escrow"]["status"] == "refunded"
    assert result["escrow"]["refunded_at"] is not None
    assert result["resolved_in_favor_of"] == "poster"
    assert components.ledger.get_balance(poster.user_id) == 10_000
    assert components.ledger.get_balance(doer.user_id) == 0
    assert components.profiles.get_tasks_completed(doer.user_id) == 0
    assert components.tasks.get_task(task["task_id"])["status"] == "completed"


@pytest.mark.unit
def test_full_release_pays_doer_net(components, poster, doer, admin):
    _task, dispute = disputed_task(components, poster, doer)

    result = components.resolver.resolve(
        admin, dispute["dispute_id"], {"resolution_type": "full_release"}
    )

    assert result["escrow"]["status"] == "released"
    assert components.ledger.get_balance(doer.user_id) == 8000
    assert components.ledger.get_balance(poster.user_id) == 0


@pytest.mark.unit
def test_resolution_is_audited_and_notifies_both_parties(components, poster, doer, admin):
    task, dispute = disputed_task(components, poster, doer)
    components.resolver.resolve(admin, dispute["dispute_id"], {"resolution_type": "full_release"})

    actions = components.audit.list_admin_actions(
        target_type="dispute", target_id=dispute["dispute_id"]
    )
    assert len(actions) == 1
    assert actions[0]["action_type"] == "dispute_resolution"
    assert actions[0]["new_value"]["doer_payout"] == 8000

    history = components.audit.list_task_events(task["task_id"])
    assert history[-1]["event_type"] == "dispute_resolved"
    for user in (poster, doer):
        assert components.outbox.list_for_user(user.user_id)[0]["title"] == "Dispute Resolved"


@pytest.mark.unit
def test_dispute_cannot_be_resolved_twice(components, poster, doer, admin):
    _task, dispute = disputed_task(components, poster, doer)
    components.resolver.resolve(admin, dispute["dispute_id"], {"resolution_type": "full_refund"})

    with pytest.raises(ServiceError) as exc_info:
        components.resolver.resolve(
            admin, dispute["dispute_id"], {"resolution_type": "full_release"}
        )

    assert exc_info.value.error == "DISPUTE_NOT_OPEN"
    assert exc_info.value.status_code == 409
    assert components.ledger.get_balance(doer.user_id) == 0
    assert components.ledger.get_balance(poster.user_id) == 10_000


@pytest.mark.unit
def test_invalid_split_leaves_everything_untouched(components, poster, doer, admin):
    task, dispute = disputed_task(components, poster, doer)

    with pytest.raises(ServiceError) as exc_info:
        components.resolver.resolve(
            admin,
            dispute["dispute_id"],
            {"resolution_type": "split", "poster_refund_percent": 100, "doer_payout_percent": 50},
        )

    assert exc_info.value.error == "INVALID_SPLIT"
    assert components.disputes.get_dispute(dispute["dispute_id"])["status"] == "open"
    assert components.escrows.get_escrow_by_task(task["task_id"])["status"] == "disputed"
    assert components.ledger.count_events(poster.user_id) == 0


@pytest.mark.unit
def test_resolve_requires_admin_and_valid_type(components, poster, doer, admin):
    _task, dispute = disputed_task(components, poster, doer)

    with pytest.raises(ServiceError) as exc_info:
        components.resolver.resolve(poster, dispute["dispute_id"], {"resolution_type": "full_refund"})
    assert exc_info.value.error == "FORBIDDEN"

    with pytest.raises(ServiceError) as exc_info:
        components.resolver.resolve(admin, dispute["dispute_id"], {"resolution_type": "coin_flip"})
    assert exc_info.value.error == "INVALID_PAYLOAD"

    with pytest.raises(ServiceError) as exc_info:
        components.resolver.resolve(admin, "disp-missing", {"resolution_type": "full_refund"})
    assert exc_info.value.error == "DISPUTE_NOT_FOUND"
    assert exc_info.value.status_code == 404


@pytest.mark.unit
def test_resolve_replay_with_same_key(components, poster, doer, admin):
    _task, dispute = disputed_task(components, poster, doer)
    body = {"resolution_type": "full_release"}

    first = components.resolver.resolve(admin, dispute["dispute_id"], body, "resolve-1")
    second = components.resolver.resolve(admin, dispute["dispute_id"], body, "resolve-1")

    assert first["doer_payout"] == second["doer_payout"] == 8000
    assert components.ledger.count_events(doer.user_id) == 1


@pytest.mark.unit
def test_dispute_reads(components, poster, doer, admin):
    _task, dispute = disputed_task(components, poster, doer)
    other = submitted_task(components, poster, doer)
    components.engine.approve_task(poster, other["task_id"])

    listed = components.resolver.list_disputes(admin, status="open")["disputes"]
    assert [row["dispute_id"] for row in listed] == [dispute["dispute_id"]]
    assert components.resolver.list_disputes(admin, status="resolved")["disputes"] == []

    with pytest.raises(ServiceError):
        components.resolver.list_disputes(poster)

    assert components.resolver.get_dispute(doer, dispute["dispute_id"])["dispute"]["reason"] == (
        "Shelf is wobbly"
    )
    with pytest.raises(ServiceError) as exc_info:
        components.resolver.get_dispute(Caller(user_id=make_user_id()), dispute["dispute_id"])
    assert exc_info.value.error == "FORBIDDEN"
