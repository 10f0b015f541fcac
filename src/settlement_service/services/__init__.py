"""Service layer components."""

from settlement_service.services.account_admin import AccountAdmin
from settlement_service.services.account_freezes import AccountFreezeRegistry
from settlement_service.services.dispute_resolver import DisputeResolver
from settlement_service.services.idempotency import IdempotencyGuard
from settlement_service.services.notifications import NotificationDispatcher, NotificationOutbox
from settlement_service.services.rate_limiter import RateLimiter
from settlement_service.services.reconciliation import Reconciler
from settlement_service.services.settlement_engine import SettlementEngine
from settlement_service.services.wallet_ledger import WalletLedger
from settlement_service.services.wallet_service import WalletService

__all__ = [
    "AccountAdmin",
    "AccountFreezeRegistry",
    "DisputeResolver",
    "IdempotencyGuard",
    "NotificationDispatcher",
    "NotificationOutbox",
    "RateLimiter",
    "Reconciler",
    "SettlementEngine",
    "WalletLedger",
    "WalletService",
]
