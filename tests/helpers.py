"""Shared test helpers: wiring the settlement components onto a temp database."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from settlement_service.config import RateLimitsConfig, SettlementConfig, WalletConfig
from settlement_service.core.caller import Caller
from settlement_service.core.database import Database
from settlement_service.services.account_admin import AccountAdmin
from settlement_service.services.account_freezes import AccountFreezeRegistry
from settlement_service.services.audit_log import AuditLog
from settlement_service.services.dispute_resolver import DisputeResolver
from settlement_service.services.dispute_store import DisputeStore
from settlement_service.services.escrow_store import EscrowStore
from settlement_service.services.idempotency import IdempotencyGuard
from settlement_service.services.notifications import NotificationOutbox
from settlement_service.services.profile_store import ProfileStore
from settlement_service.services.rate_limiter import RateLimiter
from settlement_service.services.reconciliation import Reconciler
from settlement_service.services.settlement_engine import SettlementEngine
from settlement_service.services.task_store import TaskStore
from settlement_service.services.wallet_ledger import WalletLedger
from settlement_service.services.wallet_service import WalletService

GENEROUS_LIMITS = RateLimitsConfig(
    window_seconds=3600,
    task_create=1000,
    task_accept=1000,
    wallet_deposit=1000,
    wallet_withdraw=1000,
)


@dataclass
class Components:
    """Every settlement component, sharing one Database."""

    db: Database
    tasks: TaskStore
    escrows: EscrowStore
    disputes: DisputeStore
    profiles: ProfileStore
    ledger: WalletLedger
    audit: AuditLog
    outbox: NotificationOutbox
    freezes: AccountFreezeRegistry
    rate_limiter: RateLimiter
    idempotency: IdempotencyGuard
    engine: SettlementEngine
    resolver: DisputeResolver
    wallets: WalletService
    account_admin: AccountAdmin
    reconciler: Reconciler

    def close(self) -> None:
        self.db.close()


def build_components(
    db_path: str,
    *,
    rate_limits: RateLimitsConfig = GENEROUS_LIMITS,
    auto_release_hours: int = 24,
) -> Components:
    db = Database(db_path)
    tasks = TaskStore(db)
    escrows = EscrowStore(db)
    disputes = DisputeStore(db)
    profiles = ProfileStore(db)
    ledger = WalletLedger(db, profiles)
    audit = AuditLog(db)
    outbox = NotificationOutbox(db)
    freezes = AccountFreezeRegistry(db)
    rate_limiter = RateLimiter(db, rate_limits)
    idempotency = IdempotencyGuard(db)
    engine = SettlementEngine(
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
        config=SettlementConfig(
            auto_release_hours=auto_release_hours, min_reward=100, max_reward=10_000_000
        ),
    )
    resolver = DisputeResolver(
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
    wallets = WalletService(
        db=db,
        profiles=profiles,
        ledger=ledger,
        audit=audit,
        freezes=freezes,
        rate_limiter=rate_limiter,
        idempotency=idempotency,
        config=WalletConfig(max_deposit=1_000_000),
    )
    return Components(
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
        engine=engine,
        resolver=resolver,
        wallets=wallets,
        account_admin=AccountAdmin(db, freezes, audit),
        reconciler=Reconciler(profiles, ledger, escrows, disputes),
    )


def make_user_id() -> str:
    """Generate a unique user ID."""
    return f"u-{uuid.uuid4()}"


def future_deadline(days: int = 7) -> str:
    return (datetime.now(UTC) + timedelta(days=days)).isoformat().replace("+00:00", "Z")


def task_payload(**overrides: Any) -> dict[str, Any]:
    """A valid create-task body; override any field."""
    payload: dict[str, Any] = {
        "title": "Assemble a bookshelf",
        "description": "Flat-pack bookshelf, tools provided.",
        "category": "handyman",
        "reward_amount": 10_000,
        "deadline": future_deadline(),
    }
    payload.update(overrides)
    return payload


def bump_tasks_completed(components: Components, user_id: str, count: int) -> None:
    for _ in range(count):
        components.profiles.increment_tasks_completed(user_id)


def submitted_task(
    components: Components,
    poster: Caller,
    doer: Caller,
    **overrides: Any,
) -> dict[str, Any]:
    """Drive a new task through create, accept, start and submit. Returns the task row."""
    created = components.engine.create_task(poster, task_payload(**overrides))
    task_id = created["task"]["task_id"]
    components.engine.accept_task(doer, task_id)
    components.engine.start_task(doer, task_id)
    result = components.engine.submit_task(doer, task_id, {"message": "Done"})
    return result["task"]


def disputed_task(
    components: Components,
    poster: Caller,
    doer: Caller,
    **overrides: Any,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """A submitted task disputed by its poster. Returns (task, dispute)."""
    task = submitted_task(components, poster, doer, **overrides)
    result = components.engine.dispute_task(
        poster, task["task_id"], {"reason": "Shelf is wobbly"}
    )
    return result["task"], result["dispute"]
