"""Transition table tests for tasks, escrows and disputes."""

from __future__ import annotations

import itertools

import pytest

from settlement_service.core.exceptions import InvalidTransitionError
from settlement_service.services.state_machine import (
    DISPUTE_TRANSITIONS,
    ESCROW_TRANSITIONS,
    TASK_TRANSITIONS,
    DisputeStatus,
    EscrowStatus,
    TaskStatus,
    is_terminal_task_status,
    validate_dispute_transition,
    validate_escrow_transition,
    validate_task_transition,
)

LEGAL_TASK_EDGES = {
    ("open", "accepted"),
    ("open", "cancelled"),
    ("accepted", "in_progress"),
    ("accepted", "cancelled"),
    ("in_progress", "submitted"),
    ("submitted", "approved"),
    ("submitted", "disputed"),
    ("submitted", "completed"),
    ("approved", "completed"),
    ("disputed", "completed"),
    ("disputed", "cancelled"),
}

LEGAL_ESCROW_EDGES = {
    ("pending", "in_escrow"),
    ("in_escrow", "released"),
    ("in_escrow", "disputed"),
    ("disputed", "released"),
    ("disputed", "refunded"),
}


@pytest.mark.unit
def test_task_table_matches_legal_edges():
    edges = {
        (source.value, target.value)
        for source, targets in TASK_TRANSITIONS.items()
        for target in targets
    }
    assert edges == LEGAL_TASK_EDGES


@pytest.mark.unit
def test_escrow_table_matches_legal_edges():
    edges = {
        (source.value, target.value)
        for source, targets in ESCROW_TRANSITIONS.items()
        for target in targets
    }
    assert edges == LEGAL_ESCROW_EDGES


@pytest.mark.unit
@pytest.mark.parametrize(
    ("current", "requested"),
    list(itertools.product([s.value for s in TaskStatus], repeat=2)),
)
def test_every_task_pair_is_accepted_iff_legal(current, requested):
    if (current, requested) in LEGAL_TASK_EDGES:
        validate_task_transition(current, requested)
        return
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_task_transition(current, requested)
    assert exc_info.value.error == "INVALID_TRANSITION"
    assert exc_info.value.status_code == 409
    assert exc_info.value.details == {"entity": "task", "from": current, "to": requested}


@pytest.mark.unit
@pytest.mark.parametrize(
    ("current", "requested"),
    list(itertools.product([s.value for s in EscrowStatus], repeat=2)),
)
def test_every_escrow_pair_is_accepted_iff_legal(current, requested):
    if (current, requested) in LEGAL_ESCROW_EDGES:
        validate_escrow_transition(current, requested)
        return
    with pytest.raises(InvalidTransitionError):
        validate_escrow_transition(current, requested)


@pytest.mark.unit
def test_released_and_refunded_escrows_are_terminal():
    """Once money has moved out of escrow nothing may move it again."""
    assert ESCROW_TRANSITIONS[EscrowStatus.RELEASED] == frozenset()
    assert ESCROW_TRANSITIONS[EscrowStatus.REFUNDED] == frozenset()
    with pytest.raises(InvalidTransitionError):
        validate_escrow_transition("released", "refunded")
    with pytest.raises(InvalidTransitionError):
        validate_escrow_transition("refunded", "released")


@pytest.mark.unit
def test_dispute_transitions():
    validate_dispute_transition(DisputeStatus.OPEN, DisputeStatus.RESOLVED)
    validate_dispute_transition("under_review", "escalated")
    validate_dispute_transition("escalated", "resolved")
    assert DISPUTE_TRANSITIONS[DisputeStatus.RESOLVED] == frozenset()
    with pytest.raises(InvalidTransitionError):
        validate_dispute_transition("resolved", "open")
    with pytest.raises(InvalidTransitionError):
        validate_dispute_transition("escalated", "under_review")


@pytest.mark.unit
def test_unknown_status_is_an_illegal_transition_not_a_crash():
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_task_transition("open", "teleported")
    assert exc_info.value.details["to"] == "teleported"

    with pytest.raises(InvalidTransitionError):
        validate_escrow_transition("vanished", "released")


@pytest.mark.unit
def test_enum_and_string_arguments_are_interchangeable():
    validate_task_transition(TaskStatus.SUBMITTED, "completed")
    validate_task_transition("submitted", TaskStatus.COMPLETED)


@pytest.mark.unit
def test_terminal_task_statuses():
    assert is_terminal_task_status("completed")
    assert is_terminal_task_status(TaskStatus.CANCELLED)
    assert not is_terminal_task_status("submitted")
