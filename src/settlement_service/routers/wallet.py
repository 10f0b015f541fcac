"""Sandbox wallet endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from settlement_service.routers.helpers import require_wallet_service
from settlement_service.routers.validation import (
    get_caller,
    get_idempotency_key,
    parse_pagination,
    read_json_body,
)
from settlement_service.schemas import WalletResponse

router = APIRouter()


@router.get("/wallet", response_model=WalletResponse)
async def get_wallet(request: Request) -> WalletResponse:
    """The caller's balance and earnings."""
    caller = get_caller(request)
    result = await run_in_threadpool(require_wallet_service().get_wallet, caller)
    return WalletResponse.model_validate(result)


@router.get("/wallet/events")
async def list_wallet_events(request: Request) -> dict[str, Any]:
    """The caller's wallet events, newest first."""
    caller = get_caller(request)
    limit, offset = parse_pagination(request)
    return await run_in_threadpool(
        lambda: require_wallet_service().list_events(
            caller,
            event_type=request.query_params.get("type"),
            limit=limit,
            offset=offset,
        )
    )


@router.post("/wallet/deposit")
async def deposit(request: Request) -> JSONResponse:
    """Add sandbox funds to the caller's wallet."""
    caller = get_caller(request)
    data = await read_json_body(request)
    key = get_idempotency_key(request)
    result = await run_in_threadpool(require_wallet_service().deposit, caller, data, key)
    return JSONResponse(status_code=200, content=result)


@router.post("/wallet/withdraw")
async def withdraw(request: Request) -> JSONResponse:
    """Remove sandbox funds from the caller's wallet."""
    caller = get_caller(request)
    data = await read_json_body(request)
    key = get_idempotency_key(request)
    result = await run_in_threadpool(require_wallet_service().withdraw, caller, data, key)
    return JSONResponse(status_code=200, content=result)
