"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from settlement_service.clients.notification_client import NotificationClient
    from settlement_service.core.database import Database
    from settlement_service.services.account_admin import AccountAdmin
    from settlement_service.services.dispute_resolver import DisputeResolver
    from settlement_service.services.notifications import NotificationDispatcher
    from settlement_service.services.rate_limiter import RateLimiter
    from settlement_service.services.reconciliation import Reconciler
    from settlement_service.services.settlement_engine import SettlementEngine
    from settlement_service.services.wallet_service import WalletService


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    database: Database | None = None
    engine: SettlementEngine | None = None
    dispute_resolver: DisputeResolver | None = None
    wallet_service: WalletService | None = None
    account_admin: AccountAdmin | None = None
    reconciler: Reconciler | None = None
    rate_limiter: RateLimiter | None = None
    notification_client: NotificationClient | None = None
    dispatcher: NotificationDispatcher | None = None

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
