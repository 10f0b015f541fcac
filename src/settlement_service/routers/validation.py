"""Shared request validation helpers for settlement routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from settlement_service.core.caller import Caller
from settlement_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from fastapi import Request

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"
IDEMPOTENCY_HEADER = "X-Idempotency-Key"

MAX_IDEMPOTENCY_KEY_LENGTH = 255
MAX_PAGE_SIZE = 200


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


async def read_json_body(request: Request) -> dict[str, Any]:
    """Parsed JSON object from the request; an empty body reads as {}."""
    body = await request.body()
    return {} if body == b"" else parse_json_body(body)


def get_caller(request: Request) -> Caller:
    """
    Build the caller from the identity headers set by the upstream gateway.

    Raises:
        ServiceError: UNAUTHORIZED (401) when X-User-Id is missing,
            INVALID_ROLE (400) for anything other than user or admin.
    """
    user_id = request.headers.get(USER_ID_HEADER, "").strip()
    if not user_id:
        raise ServiceError("UNAUTHORIZED", f"Missing {USER_ID_HEADER} header", 401, {})
    if len(user_id) > 128:
        raise ServiceError("UNAUTHORIZED", f"{USER_ID_HEADER} header is too long", 401, {})

    role = request.headers.get(USER_ROLE_HEADER, "user").strip().lower() or "user"
    # "system" is reserved for in-process sweeps and never accepted from a client
    if role not in ("user", "admin"):
        raise ServiceError(
            "INVALID_ROLE", f"{USER_ROLE_HEADER} must be 'user' or 'admin'", 400, {}
        )
    return Caller(user_id=user_id, role=role)


def get_idempotency_key(request: Request) -> str | None:
    key = request.headers.get(IDEMPOTENCY_HEADER)
    if key is None:
        return None
    key = key.strip()
    if not key:
        return None
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{IDEMPOTENCY_HEADER} must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
            400,
            {},
        )
    return key


def parse_pagination(request: Request, default_limit: int = 50) -> tuple[int, int]:
    """Read limit and offset query parameters. Returns (limit, offset)."""
    limit_raw = request.query_params.get("limit")
    offset_raw = request.query_params.get("offset")

    limit = default_limit
    offset = 0

    if limit_raw is not None:
        try:
            limit = int(limit_raw)
        except ValueError as exc:
            raise ServiceError("INVALID_PAYLOAD", "limit must be an integer", 400, {}) from exc
        if limit <= 0:
            raise ServiceError("INVALID_PAYLOAD", "limit must be >= 1", 400, {})
        limit = min(limit, MAX_PAGE_SIZE)

    if offset_raw is not None:
        try:
            offset = int(offset_raw)
        except ValueError as exc:
            raise ServiceError("INVALID_PAYLOAD", "offset must be an integer", 400, {}) from exc
        if offset < 0:
            raise ServiceError("INVALID_PAYLOAD", "offset must be >= 0", 400, {})

    return limit, offset


def require_admin(caller: Caller) -> None:
    """Check that the caller holds the admin role."""
    if not caller.is_admin:
        raise ServiceError("FORBIDDEN", "Admin access required", 403, {})
