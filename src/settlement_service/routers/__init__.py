"""API routers."""

from settlement_service.routers import admin, escrow, health, tasks, wallet

__all__ = ["admin", "escrow", "health", "tasks", "wallet"]
