"""Admin endpoints: dispute resolution, forced completion, freezes, audit, sweeps."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from settlement_service.config import get_safe_config
from settlement_service.core.exceptions import ServiceError
from settlement_service.routers.helpers import (
    require_account_admin,
    require_dispute_resolver,
    require_engine,
    require_reconciler,
    require_wallet_service,
    schedule_notification_flush,
)
from settlement_service.routers.validation import (
    get_caller,
    get_idempotency_key,
    parse_pagination,
    read_json_body,
    require_admin,
)
from settlement_service.schemas import ReleaseResponse, WalletResponse

router = APIRouter(prefix="/admin")


# === Disputes ===


@router.get("/disputes")
async def list_disputes(request: Request) -> dict[str, Any]:
    """List disputes, optionally filtered by status."""
    caller = get_caller(request)
    limit, offset = parse_pagination(request)
    return await run_in_threadpool(
        lambda: require_dispute_resolver().list_disputes(
            caller,
            status=request.query_params.get("status"),
            limit=limit,
            offset=offset,
        )
    )


@router.post("/disputes/{dispute_id}/resolve")
async def resolve_dispute(
    dispute_id: str, request: Request, background_tasks: BackgroundTasks
) -> JSONResponse:
    """Settle a dispute as full_release, full_refund or split."""
    caller = get_caller(request)
    data = await read_json_body(request)
    key = get_idempotency_key(request)
    result = await run_in_threadpool(
        require_dispute_resolver().resolve, caller, dispute_id, data, key
    )
    schedule_notification_flush(background_tasks)
    return JSONResponse(status_code=200, content=result, background=background_tasks)


# === Tasks ===


@router.post("/tasks/{task_id}/force-complete", response_model=ReleaseResponse)
async def force_complete(
    task_id: str, request: Request, background_tasks: BackgroundTasks
) -> ReleaseResponse:
    """Complete a submitted task on the poster's behalf and pay the doer."""
    caller = get_caller(request)
    data = await read_json_body(request)
    reason = data.get("reason")
    if not isinstance(reason, str):
        raise ServiceError("INVALID_PAYLOAD", "Reason is required", 400, {})
    key = get_idempotency_key(request)
    result = await run_in_threadpool(require_engine().force_complete, caller, task_id, reason, key)
    schedule_notification_flush(background_tasks)
    return ReleaseResponse.model_validate(result)


@router.post("/auto-release")
async def run_auto_release(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    """Release every submitted task past its auto-release time. Called by a scheduler."""
    require_admin(get_caller(request))
    result = await run_in_threadpool(require_engine().auto_release_due)
    schedule_notification_flush(background_tasks)
    return JSONResponse(status_code=200, content=result, background=background_tasks)


@router.get("/audit/tasks/{task_id}")
async def task_audit_trail(task_id: str, request: Request) -> dict[str, Any]:
    """Everything recorded about one task."""
    caller = get_caller(request)
    return await run_in_threadpool(require_engine().get_audit_trail, caller, task_id)


@router.get("/reconciliation")
async def reconciliation(request: Request) -> dict[str, Any]:
    """Check every wallet chain and every settled escrow against the ledger."""
    require_admin(get_caller(request))
    return await run_in_threadpool(require_reconciler().run)


# === Users and wallets ===


@router.get("/users/frozen")
async def list_frozen_users(request: Request) -> dict[str, Any]:
    caller = get_caller(request)
    return await run_in_threadpool(require_account_admin().list_frozen, caller)


@router.post("/users/{user_id}/freeze")
async def freeze_user(user_id: str, request: Request) -> JSONResponse:
    """Freeze an account; the user can make no further changes until unfrozen."""
    caller = get_caller(request)
    data = await read_json_body(request)
    result = await run_in_threadpool(require_account_admin().freeze, caller, user_id, data)
    return JSONResponse(status_code=200, content=result)


@router.post("/users/{user_id}/unfreeze")
async def unfreeze_user(user_id: str, request: Request) -> JSONResponse:
    caller = get_caller(request)
    result = await run_in_threadpool(require_account_admin().unfreeze, caller, user_id)
    return JSONResponse(status_code=200, content=result)


@router.get("/wallets/{user_id}", response_model=WalletResponse)
async def get_user_wallet(user_id: str, request: Request) -> WalletResponse:
    caller = get_caller(request)
    require_admin(caller)
    result = await run_in_threadpool(require_wallet_service().get_wallet, caller, user_id)
    return WalletResponse.model_validate(result)


@router.post("/wallets/{user_id}/credit")
async def credit_wallet(user_id: str, request: Request) -> JSONResponse:
    """Credit a user's wallet with a recorded reason."""
    caller = get_caller(request)
    data = await read_json_body(request)
    key = get_idempotency_key(request)
    result = await run_in_threadpool(
        require_wallet_service().admin_credit, caller, user_id, data, key
    )
    return JSONResponse(status_code=200, content=result)


@router.get("/config")
async def service_config(request: Request) -> dict[str, Any]:
    """Effective configuration with secrets redacted."""
    require_admin(get_caller(request))
    return get_safe_config()
