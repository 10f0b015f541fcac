"""Request validation: content type, body size, identity headers, pagination."""

from __future__ import annotations

import pytest

from tests.unit.routers.conftest import POSTER_ID, create_task, user_headers


@pytest.mark.unit
async def test_wrong_content_type_is_415(client):
    response = await client.post(
        "/tasks",
        content=b"title=Shelf",
        headers={**user_headers(POSTER_ID), "Content-Type": "application/x-www-form-urlencoded"},
    )

    assert response.status_code == 415
    assert response.json() == {
        "error": "UNSUPPORTED_MEDIA_TYPE",
        "message": "Content-Type must be application/json",
        "details": {},
    }


@pytest.mark.unit
async def test_oversized_body_is_413(client):
    response = await client.post(
        "/wallet/deposit",
        content=b'{"amount": 1, "padding": "' + b"x" * 5000 + b'"}',
        headers={**user_headers(POSTER_ID), "Content-Type": "application/json"},
    )

    assert response.status_code == 413
    assert response.json()["error"] == "PAYLOAD_TOO_LARGE"


@pytest.mark.unit
async def test_action_without_body_skips_content_type_check(client):
    task_id = (await create_task(client))["task"]["task_id"]

    response = await client.post(f"/tasks/{task_id}/accept", headers=user_headers("u-doer"))

    assert response.status_code == 200


@pytest.mark.unit
@pytest.mark.parametrize("body", [b"{not json", b"[1, 2, 3]", b"\xff\xfe"])
async def test_malformed_json_is_rejected(client, body):
    response = await client.post(
        "/tasks",
        content=body,
        headers={**user_headers(POSTER_ID), "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_JSON"


@pytest.mark.unit
async def test_missing_identity_is_401(client):
    response = await client.get("/wallet")

    assert response.status_code == 401
    assert response.json()["error"] == "UNAUTHORIZED"


@pytest.mark.unit
@pytest.mark.parametrize("role", ["system", "superuser"])
async def test_unknown_or_reserved_role_is_rejected(client, role):
    response = await client.get("/wallet", headers=user_headers(POSTER_ID, role))

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_ROLE"


@pytest.mark.unit
async def test_role_header_defaults_to_user(client):
    response = await client.get("/admin/config", headers={"X-User-Id": POSTER_ID})

    assert response.status_code == 403


@pytest.mark.unit
async def test_overlong_idempotency_key_is_rejected(client):
    response = await client.post(
        "/wallet/deposit",
        json={"amount": 10},
        headers=user_headers(POSTER_ID, key="k" * 256),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_PAYLOAD"


@pytest.mark.unit
@pytest.mark.parametrize(
    "params",
    [{"limit": "ten"}, {"limit": "0"}, {"offset": "-1"}, {"offset": "1.5"}],
)
async def test_bad_pagination_is_rejected(client, params):
    response = await client.get("/tasks", params=params, headers=user_headers(POSTER_ID))

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_PAYLOAD"


@pytest.mark.unit
async def test_page_size_is_capped(client):
    response = await client.get("/tasks", params={"limit": "5000"}, headers=user_headers(POSTER_ID))

    assert response.json()["limit"] == 200


@pytest.mark.unit
async def test_wrong_method_is_405(client):
    response = await client.delete("/wallet", headers=user_headers(POSTER_ID))

    assert response.status_code == 405
    assert response.json()["error"] == "METHOD_NOT_ALLOWED"


@pytest.mark.unit
async def test_unknown_route_is_404(client):
    response = await client.get("/nowhere")

    assert response.status_code == 404
    assert response.json()["error"] == "HTTP_ERROR"
