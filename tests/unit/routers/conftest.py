"""Router test fixtures: a real app on a temp database, driven through HTTP."""

from __future__ import annotations

import os
import uuid
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from settlement_service.app import create_app
from settlement_service.config import clear_settings_cache
from settlement_service.core.lifespan import lifespan
from settlement_service.core.state import reset_app_state
from tests.helpers import task_payload

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Fixed user IDs
# ---------------------------------------------------------------------------
POSTER_ID = "u-poster"
DOER_ID = "u-doer"
STRANGER_ID = "u-stranger"
ADMIN_ID = "u-admin"


def user_headers(user_id: str, role: str = "user", key: str | None = None) -> dict[str, str]:
    """Identity headers as the upstream gateway would set them."""
    headers = {"X-User-Id": user_id, "X-User-Role": role}
    if key is not None:
        headers["X-Idempotency-Key"] = key
    return headers


def admin_headers(key: str | None = None) -> dict[str, str]:
    return user_headers(ADMIN_ID, "admin", key)


def make_key() -> str:
    """Generate a unique idempotency key."""
    return f"idem-{uuid.uuid4()}"


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with a temp database and no notification webhook."""
    db_path = tmp_path / "test.db"
    config_content = f"""\
service:
  name: "escrow-settlement"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: null
database:
  path: "{db_path}"
request:
  max_body_size: 4096
settlement:
  auto_release_hours: 24
  min_reward: 100
  max_reward: 10000000
wallet:
  max_deposit: 1000000
rate_limits:
  window_seconds: 3600
  task_create: 5
  task_accept: 5
  wallet_deposit: 3
  wallet_withdraw: 3
notifications:
  webhook_url: null
  timeout_seconds: 5
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------
async def create_task(client: AsyncClient, poster_id: str = POSTER_ID, **overrides: Any) -> dict:
    response = await client.post(
        "/tasks", json=task_payload(**overrides), headers=user_headers(poster_id)
    )
    assert response.status_code == 201, response.text
    return response.json()


async def submit_task(client: AsyncClient, **overrides: Any) -> str:
    """Create, accept, start and submit a task over HTTP. Returns the task ID."""
    created = await create_task(client, **overrides)
    task_id = created["task"]["task_id"]
    for action in ("accept", "start"):
        response = await client.post(f"/tasks/{task_id}/{action}", headers=user_headers(DOER_ID))
        assert response.status_code == 200, response.text
    response = await client.post(
        f"/tasks/{task_id}/submit",
        json={"message": "Done", "attachments": ["https://files.example.com/photo.jpg"]},
        headers=user_headers(DOER_ID),
    )
    assert response.status_code == 200, response.text
    return task_id


async def dispute_task(client: AsyncClient, **overrides: Any) -> tuple[str, str]:
    """A submitted task disputed by its poster. Returns (task_id, dispute_id)."""
    task_id = await submit_task(client, **overrides)
    response = await client.post(
        f"/tasks/{task_id}/dispute",
        json={"reason": "Shelf is wobbly"},
        headers=user_headers(POSTER_ID),
    )
    assert response.status_code == 200, response.text
    return task_id, response.json()["dispute"]["dispute_id"]
