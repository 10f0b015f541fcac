"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from settlement_service.routers.helpers import (
    require_dispute_resolver,
    require_engine,
    schedule_notification_flush,
)
from settlement_service.routers.validation import (
    get_caller,
    get_idempotency_key,
    parse_pagination,
    read_json_body,
)
from settlement_service.schemas import ErrorResponse, ReleaseResponse

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /tasks: create task (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post(
    "/tasks",
    status_code=201,
    responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
async def create_task(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    """Create a task together with its escrow."""
    caller = get_caller(request)
    data = await read_json_body(request)
    key = get_idempotency_key(request)

    result = await run_in_threadpool(require_engine().create_task, caller, data, key)
    schedule_notification_flush(background_tasks)
    return JSONResponse(status_code=201, content=result, background=background_tasks)


# ---------------------------------------------------------------------------
# GET /tasks: list tasks (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional filters."""
    caller = get_caller(request)
    limit, offset = parse_pagination(request)
    return await run_in_threadpool(
        lambda: require_engine().list_tasks(
            caller,
            status=request.query_params.get("status"),
            category=request.query_params.get("category"),
            role=request.query_params.get("role"),
            limit=limit,
            offset=offset,
        )
    )


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, request: Request) -> dict[str, Any]:
    """Task detail; participants and admins also see escrow and history."""
    caller = get_caller(request)
    return await run_in_threadpool(require_engine().get_task, caller, task_id)


# ---------------------------------------------------------------------------
# Lifecycle actions
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/accept")
async def accept_task(
    task_id: str, request: Request, background_tasks: BackgroundTasks
) -> JSONResponse:
    """Accept an open task as its doer."""
    caller = get_caller(request)
    key = get_idempotency_key(request)
    result = await run_in_threadpool(require_engine().accept_task, caller, task_id, key)
    schedule_notification_flush(background_tasks)
    return JSONResponse(status_code=200, content=result, background=background_tasks)


@router.post("/tasks/{task_id}/start")
async def start_task(task_id: str, request: Request) -> JSONResponse:
    """Begin work on an accepted task."""
    caller = get_caller(request)
    key = get_idempotency_key(request)
    result = await run_in_threadpool(require_engine().start_task, caller, task_id, key)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/submit")
async def submit_task(
    task_id: str, request: Request, background_tasks: BackgroundTasks
) -> JSONResponse:
    """Submit work for the poster's review."""
    caller = get_caller(request)
    data = await read_json_body(request)
    key = get_idempotency_key(request)
    result = await run_in_threadpool(require_engine().submit_task, caller, task_id, data, key)
    schedule_notification_flush(background_tasks)
    return JSONResponse(status_code=200, content=result, background=background_tasks)


@router.post("/tasks/{task_id}/approve", response_model=ReleaseResponse)
async def approve_task(
    task_id: str, request: Request, background_tasks: BackgroundTasks
) -> ReleaseResponse:
    """Approve submitted work and release payment to the doer."""
    caller = get_caller(request)
    key = get_idempotency_key(request)
    result = await run_in_threadpool(require_engine().approve_task, caller, task_id, key)
    schedule_notification_flush(background_tasks)
    return ReleaseResponse.model_validate(result)


@router.post("/tasks/{task_id}/dispute")
async def dispute_task(
    task_id: str, request: Request, background_tasks: BackgroundTasks
) -> JSONResponse:
    """Open a dispute on submitted work."""
    caller = get_caller(request)
    data = await read_json_body(request)
    key = get_idempotency_key(request)
    result = await run_in_threadpool(require_engine().dispute_task, caller, task_id, data, key)
    schedule_notification_flush(background_tasks)
    return JSONResponse(status_code=200, content=result, background=background_tasks)


@router.get("/disputes/{dispute_id}")
async def get_dispute(dispute_id: str, request: Request) -> dict[str, Any]:
    """Dispute detail for the task's participants and admins."""
    caller = get_caller(request)
    return await run_in_threadpool(require_dispute_resolver().get_dispute, caller, dispute_id)
