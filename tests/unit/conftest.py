"""Unit test fixtures: fresh components per test, caches cleared."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from settlement_service.config import clear_settings_cache
from settlement_service.core.caller import Caller
from settlement_service.core.state import reset_app_state
from tests.helpers import build_components, make_user_id

if TYPE_CHECKING:
    from collections.abc import Iterator

    from tests.helpers import Components


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def components(tmp_path) -> Iterator[Components]:
    """All settlement components on a fresh database."""
    built = build_components(str(tmp_path / "settlement.db"))
    yield built
    built.close()


@pytest.fixture
def poster() -> Caller:
    return Caller(user_id=make_user_id())


@pytest.fixture
def doer() -> Caller:
    return Caller(user_id=make_user_id())


@pytest.fixture
def admin() -> Caller:
    return Caller(user_id=make_user_id(), role="admin")
