"""Caller identity tests."""

from __future__ import annotations

import dataclasses

import pytest

from settlement_service.core.caller import Caller


@pytest.mark.unit
def test_default_role_is_user():
    caller = Caller(user_id="u-1")
    assert caller.role == "user"
    assert not caller.is_admin
    assert not caller.is_system


@pytest.mark.unit
def test_system_caller():
    caller = Caller.system()
    assert caller.user_id == "system"
    assert caller.is_system
    assert not caller.is_admin


@pytest.mark.unit
@pytest.mark.parametrize(("user_id", "role"), [("", "user"), ("u-1", "root")])
def test_invalid_callers_are_rejected(user_id, role):
    with pytest.raises(ValueError):
        Caller(user_id=user_id, role=role)


@pytest.mark.unit
def test_caller_is_immutable():
    caller = Caller(user_id="u-1")
    with pytest.raises(dataclasses.FrozenInstanceError):
        caller.role = "admin"  # type: ignore[misc]
