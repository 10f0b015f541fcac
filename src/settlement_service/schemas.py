"""Pydantic request/response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class ReleaseResponse(BaseModel):
    """Response model for every path that releases escrow to the doer."""

    model_config = ConfigDict(extra="forbid")
    success: bool
    task_id: str
    escrow_id: str
    released_amount: int
    platform_fee: int
    new_balance: int


class WalletResponse(BaseModel):
    """Response model for GET /wallet."""

    model_config = ConfigDict(extra="forbid")
    user_id: str
    balance: int
    tasks_completed: int
    total_earnings: int
