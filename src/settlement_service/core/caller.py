"""Authenticated caller identity passed into every engine operation."""

from __future__ import annotations

from dataclasses import dataclass

VALID_ROLES: frozenset[str] = frozenset({"user", "admin", "system"})

SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True)
class Caller:
    """Who is calling. Authentication happens upstream; the engine trusts this value."""

    user_id: str
    role: str = "user"

    def __post_init__(self) -> None:
        if not self.user_id:
            msg = "Caller user_id must not be empty"
            raise ValueError(msg)
        if self.role not in VALID_ROLES:
            msg = f"Unknown caller role: {self.role}"
            raise ValueError(msg)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_system(self) -> bool:
        return self.role == "system"

    @classmethod
    def system(cls) -> Caller:
        return cls(user_id=SYSTEM_ACTOR_ID, role="system")
