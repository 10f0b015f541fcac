"""Timestamp and identifier helpers shared by the stores."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(moment: datetime) -> str:
    """ISO 8601 with microseconds and a Z suffix; sorts lexicographically."""
    return moment.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def now_iso() -> str:
    return to_iso(utc_now())


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def new_id(prefix: str) -> str:
    """Generate `<prefix>-<uuid4>`."""
    return f"{prefix}-{uuid.uuid4()}"


def new_task_code() -> str:
    """Short human-readable task reference, e.g. TSK-3F9A1C2B."""
    return f"TSK-{uuid.uuid4().hex[:8].upper()}"
