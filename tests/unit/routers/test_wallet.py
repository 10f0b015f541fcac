"""Sandbox wallet endpoint tests."""

from __future__ import annotations

import pytest

from tests.unit.routers.conftest import POSTER_ID, make_key, user_headers


@pytest.mark.unit
async def test_new_wallet_is_empty(client):
    response = await client.get("/wallet", headers=user_headers(POSTER_ID))

    assert response.status_code == 200
    assert response.json() == {
        "user_id": POSTER_ID,
        "balance": 0,
        "tasks_completed": 0,
        "total_earnings": 0,
    }


@pytest.mark.unit
async def test_deposit_then_withdraw(client):
    headers = user_headers(POSTER_ID)

    deposited = await client.post("/wallet/deposit", json={"amount": 1200}, headers=headers)
    assert deposited.status_code == 200
    assert deposited.json()["new_balance"] == 1200

    withdrawn = await client.post("/wallet/withdraw", json={"amount": 200}, headers=headers)
    assert withdrawn.status_code == 200
    assert withdrawn.json()["new_balance"] == 1000

    events = await client.get("/wallet/events", headers=headers)
    assert [event["event_type"] for event in events.json()["events"]] == [
        "sandbox_withdrawal",
        "sandbox_deposit",
    ]


@pytest.mark.unit
async def test_withdraw_more_than_balance(client):
    response = await client.post(
        "/wallet/withdraw", json={"amount": 1}, headers=user_headers(POSTER_ID)
    )

    assert response.status_code == 402
    assert response.json()["error"] == "INSUFFICIENT_BALANCE"
    assert response.json()["details"] == {"balance": 0, "requested": 1}


@pytest.mark.unit
async def test_deposit_rejects_bad_amount(client):
    response = await client.post(
        "/wallet/deposit", json={"amount": -5}, headers=user_headers(POSTER_ID)
    )

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_AMOUNT"


@pytest.mark.unit
async def test_deposit_replay_with_key(client):
    headers = user_headers(POSTER_ID, key=make_key())

    first = await client.post("/wallet/deposit", json={"amount": 300}, headers=headers)
    second = await client.post("/wallet/deposit", json={"amount": 300}, headers=headers)

    assert first.json() == second.json()
    wallet = await client.get("/wallet", headers=user_headers(POSTER_ID))
    assert wallet.json()["balance"] == 300


@pytest.mark.unit
async def test_deposit_rate_limit(client):
    headers = user_headers(POSTER_ID)
    for _ in range(3):
        response = await client.post("/wallet/deposit", json={"amount": 10}, headers=headers)
        assert response.status_code == 200

    response = await client.post("/wallet/deposit", json={"amount": 10}, headers=headers)

    assert response.status_code == 429
    wallet = await client.get("/wallet", headers=headers)
    assert wallet.json()["balance"] == 30


@pytest.mark.unit
async def test_event_type_filter_is_validated(client):
    response = await client.get(
        "/wallet/events", params={"type": "free_money"}, headers=user_headers(POSTER_ID)
    )

    assert response.status_code == 400
