"""Shared router helper functions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from settlement_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import BackgroundTasks

    from settlement_service.services.account_admin import AccountAdmin
    from settlement_service.services.dispute_resolver import DisputeResolver
    from settlement_service.services.reconciliation import Reconciler
    from settlement_service.services.settlement_engine import SettlementEngine
    from settlement_service.services.wallet_service import WalletService


def require_engine() -> SettlementEngine:
    state = get_app_state()
    if state.engine is None:
        msg = "SettlementEngine not initialized"
        raise RuntimeError(msg)
    return state.engine


def require_dispute_resolver() -> DisputeResolver:
    state = get_app_state()
    if state.dispute_resolver is None:
        msg = "DisputeResolver not initialized"
        raise RuntimeError(msg)
    return state.dispute_resolver


def require_wallet_service() -> WalletService:
    state = get_app_state()
    if state.wallet_service is None:
        msg = "WalletService not initialized"
        raise RuntimeError(msg)
    return state.wallet_service


def require_account_admin() -> AccountAdmin:
    state = get_app_state()
    if state.account_admin is None:
        msg = "AccountAdmin not initialized"
        raise RuntimeError(msg)
    return state.account_admin


def require_reconciler() -> Reconciler:
    state = get_app_state()
    if state.reconciler is None:
        msg = "Reconciler not initialized"
        raise RuntimeError(msg)
    return state.reconciler


def schedule_notification_flush(background_tasks: BackgroundTasks) -> None:
    """Deliver pending notifications after the response has been sent."""
    state = get_app_state()
    if state.dispatcher is not None:
        background_tasks.add_task(state.dispatcher.flush)
