"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from settlement_service.clients.notification_client import NotificationClient
from settlement_service.config import get_settings
from settlement_service.core.database import Database
from settlement_service.core.state import init_app_state
from settlement_service.logging import get_logger, setup_logging
from settlement_service.services.account_admin import AccountAdmin
from settlement_service.services.account_freezes import AccountFreezeRegistry
from settlement_service.services.audit_log import AuditLog
from settlement_service.services.dispute_resolver import DisputeResolver
from settlement_service.services.dispute_store import DisputeStore
from settlement_service.services.escrow_store import EscrowStore
from settlement_service.services.idempotency import IdempotencyGuard
from settlement_service.services.notifications import NotificationDispatcher, NotificationOutbox
from settlement_service.services.profile_store import ProfileStore
from settlement_service.services.rate_limiter import RateLimiter
from settlement_service.services.reconciliation import Reconciler
from settlement_service.services.settlement_engine import SettlementEngine
from settlement_service.services.task_store import TaskStore
from settlement_service.services.wallet_ledger import WalletLedger
from settlement_service.services.wallet_service import WalletService

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    db = Database(settings.database.path)
    state.database = db

    tasks = TaskStore(db)
    escrows = EscrowStore(db)
    disputes = DisputeStore(db)
    profiles = ProfileStore(db)
    ledger = WalletLedger(db, profiles)
    audit = AuditLog(db)
    outbox = NotificationOutbox(db)
    freezes = AccountFreezeRegistry(db)
    rate_limiter = RateLimiter(db, settings.rate_limits)
    idempotency = IdempotencyGuard(db)

    pruned = rate_limiter.prune()
    state.rate_limiter = rate_limiter

    state.engine = SettlementEngine(
        db=db,
        tasks=tasks,
        escrows=escrows,
        disputes=disputes,
        profiles=profiles,
        ledger=ledger,
        audit=audit,
        outbox=outbox,
        freezes=freezes,
        rate_limiter=rate_limiter,
        idempotency=idempotency,
        config=settings.settlement,
    )
    state.dispute_resolver = DisputeResolver(
        db=db,
        tasks=tasks,
        escrows=escrows,
        disputes=disputes,
        profiles=profiles,
        ledger=ledger,
        audit=audit,
        outbox=outbox,
        freezes=freezes,
        idempotency=idempotency,
    )
    state.wallet_service = WalletService(
        db=db,
        profiles=profiles,
        ledger=ledger,
        audit=audit,
        freezes=freezes,
        rate_limiter=rate_limiter,
        idempotency=idempotency,
        config=settings.wallet,
    )
    state.account_admin = AccountAdmin(db, freezes, audit)
    state.reconciler = Reconciler(profiles, ledger, escrows, disputes)

    # Without a webhook the outbox keeps every notification pending
    if settings.notifications.webhook_url:
        state.notification_client = NotificationClient(
            webhook_url=settings.notifications.webhook_url,
            timeout_seconds=settings.notifications.timeout_seconds,
        )
    state.dispatcher = NotificationDispatcher(outbox, state.notification_client)

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "notifications_enabled": state.notification_client is not None,
            "rate_limit_hits_pruned": pruned,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    if state.notification_client is not None:
        await state.notification_client.close()
    db.close()
