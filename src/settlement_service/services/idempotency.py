"""Deduplication of retried financial mutations by caller-supplied idempotency key."""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING, Any

from settlement_service.core.clock import now_iso
from settlement_service.core.exceptions import IdempotencyConflictError
from settlement_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from settlement_service.core.database import Database


def canonical_json(body: Any) -> str:
    """Serialize with sorted keys and no whitespace so equal payloads hash equally."""
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def request_hash(body: Any) -> str:
    return hashlib.sha256(canonical_json(body).encode("utf-8")).hexdigest()


class IdempotencyGuard:
    """
    Runs a mutation at most once per (key, user).

    The lookup, the mutation and the record insert share one database
    transaction. A failed mutation therefore leaves no record behind, and a
    crash after the mutation commits can never lose the record.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._logger = get_logger(__name__)
        self._init_schema()

    def _init_schema(self) -> None:
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
                idempotency_key TEXT NOT NULL,
                user_id TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                request_hash TEXT NOT NULL,
                response TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (idempotency_key, user_id)
            );
            """
        )

    def guard(
        self,
        key: str | None,
        user_id: str,
        endpoint: str,
        request_body: Any,
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        """
        Execute `execute` unless this (key, user) was already served.

        Returns the stored response on an identical replay. Raises
        IdempotencyConflictError when the key was used with a different body.
        """
        if not key:
            return execute()

        body_hash = request_hash({"endpoint": endpoint, "body": request_body})

        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT endpoint, request_hash, response FROM idempotency_keys "
                "WHERE idempotency_key = ? AND user_id = ?",
                (key, user_id),
            ).fetchone()

            if row is not None:
                if row["request_hash"] != body_hash:
                    self._logger.warning(
                        "Idempotency key reused with a different request",
                        extra={
                            "user_id": user_id,
                            "endpoint": endpoint,
                            "stored_endpoint": row["endpoint"],
                        },
                    )
                    raise IdempotencyConflictError(key, endpoint)
                self._logger.info(
                    "Idempotent replay",
                    extra={"user_id": user_id, "endpoint": endpoint},
                )
                return json.loads(row["response"])

            result = execute()
            conn.execute(
                "INSERT INTO idempotency_keys "
                "(idempotency_key, user_id, endpoint, request_hash, response, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    key,
                    user_id,
                    endpoint,
                    body_hash,
                    json.dumps(result, default=str),
                    now_iso(),
                ),
            )
            return result
