"""Escrow endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Request
from starlette.concurrency import run_in_threadpool

from settlement_service.routers.helpers import require_engine, schedule_notification_flush
from settlement_service.routers.validation import (
    get_caller,
    get_idempotency_key,
    parse_pagination,
)
from settlement_service.schemas import ReleaseResponse

router = APIRouter()


@router.get("/escrow")
async def list_escrows(request: Request) -> dict[str, Any]:
    """List escrows where the caller is poster or doer."""
    caller = get_caller(request)
    limit, offset = parse_pagination(request)
    return await run_in_threadpool(
        lambda: require_engine().list_escrows(
            caller,
            role=request.query_params.get("role"),
            status=request.query_params.get("status"),
            limit=limit,
            offset=offset,
        )
    )


@router.get("/escrow/{escrow_id}")
async def get_escrow(escrow_id: str, request: Request) -> dict[str, Any]:
    """Escrow detail with the wallet events it produced."""
    caller = get_caller(request)
    return await run_in_threadpool(require_engine().get_escrow, caller, escrow_id)


# === POST /escrow/{task_id}/release (manual release by the poster) ===


@router.post("/escrow/{task_id}/release", response_model=ReleaseResponse)
async def release_escrow(
    task_id: str, request: Request, background_tasks: BackgroundTasks
) -> ReleaseResponse:
    """Release a submitted task's escrow to the doer without a separate approval."""
    caller = get_caller(request)
    key = get_idempotency_key(request)
    result = await run_in_threadpool(require_engine().release_escrow, caller, task_id, key)
    schedule_notification_flush(background_tasks)
    return ReleaseResponse.model_validate(result)
