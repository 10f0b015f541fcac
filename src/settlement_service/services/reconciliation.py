"""Consistency checks between cached balances, the wallet ledger and settled escrows."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from settlement_service.logging import get_logger

if TYPE_CHECKING:
    from settlement_service.services.dispute_store import DisputeStore
    from settlement_service.services.escrow_store import EscrowStore
    from settlement_service.services.profile_store import ProfileStore
    from settlement_service.services.wallet_ledger import WalletLedger


class Reconciler:
    """
    Read-only auditor. Reports problems; never repairs them.

    Two checks:
      * per user, replaying wallet events from zero must reproduce every
        balance_before/balance_after and end at the cached wallet_balance
      * every released or refunded escrow must have produced the wallet
        events its settlement implies
    """

    def __init__(
        self,
        profiles: ProfileStore,
        ledger: WalletLedger,
        escrows: EscrowStore,
        disputes: DisputeStore,
    ) -> None:
        self._profiles = profiles
        self._ledger = ledger
        self._escrows = escrows
        self._disputes = disputes
        self._logger = get_logger(__name__)

    def check_user(self, user_id: str) -> dict[str, Any] | None:
        """Return a problem report for one user, or None when the chain is sound."""
        running = 0
        for event in self._ledger.events_in_order(user_id):
            if event["balance_before"] != running:
                return {
                    "user_id": user_id,
                    "problem": "chain_break",
                    "event_id": event["event_id"],
                    "expected_before": running,
                    "recorded_before": event["balance_before"],
                }
            running += event["amount"]
            if event["balance_after"] != running:
                return {
                    "user_id": user_id,
                    "problem": "bad_event_arithmetic",
                    "event_id": event["event_id"],
                }

        cached = self._ledger.get_balance(user_id)
        if cached != running:
            return {
                "user_id": user_id,
                "problem": "cached_balance_mismatch",
                "cached_balance": cached,
                "ledger_balance": running,
            }
        return None

    def check_escrow(self, escrow: dict[str, Any]) -> dict[str, Any] | None:
        events = self._ledger.events_for_escrow(escrow["escrow_id"])
        paid = sum(event["amount"] for event in events)

        expected = escrow["net_payout"]
        disputes = [
            dispute
            for dispute in self._disputes.list_for_task(escrow["task_id"])
            if dispute["status"] == "resolved"
        ]
        if disputes:
            resolved = disputes[-1]
            expected = (resolved["poster_refund_amount"] or 0) + (
                resolved["doer_payout_amount"] or 0
            )

        if expected > 0 and not events:
            return {
                "escrow_id": escrow["escrow_id"],
                "task_id": escrow["task_id"],
                "problem": "settled_without_wallet_event",
                "status": escrow["status"],
            }
        if paid != expected:
            return {
                "escrow_id": escrow["escrow_id"],
                "task_id": escrow["task_id"],
                "problem": "payout_mismatch",
                "expected": expected,
                "paid": paid,
            }
        return None

    def run(self) -> dict[str, Any]:
        user_ids = self._profiles.list_user_ids()
        user_problems = [
            report for report in (self.check_user(user_id) for user_id in user_ids) if report
        ]
        settled = self._escrows.list_settled()
        escrow_problems = [
            report for report in (self.check_escrow(escrow) for escrow in settled) if report
        ]

        if user_problems or escrow_problems:
            self._logger.error(
                "Reconciliation found inconsistencies",
                extra={
                    "user_problems": len(user_problems),
                    "escrow_problems": len(escrow_problems),
                },
            )
        else:
            self._logger.info(
                "Reconciliation clean",
                extra={"users_checked": len(user_ids), "escrows_checked": len(settled)},
            )
        return {
            "consistent": not user_problems and not escrow_problems,
            "users_checked": len(user_ids),
            "escrows_checked": len(settled),
            "user_problems": user_problems,
            "escrow_problems": escrow_problems,
        }
