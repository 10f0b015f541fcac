"""
Platform fee calculation.

Two independent axes decide the fee. The requester's completed-task count
picks a tier, and a large enough gross amount picks a value discount tier.
The lower of the two applies. The fee is computed once, at task creation,
and locked into the escrow row.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal

# (minimum completed tasks, fee percent), highest threshold first
TASK_COUNT_TIERS: tuple[tuple[int, Decimal], ...] = (
    (200, Decimal("12")),
    (50, Decimal("12.5")),
    (12, Decimal("15")),
    (0, Decimal("20")),
)

# (minimum gross amount, fee percent), highest threshold first
VALUE_TIERS: tuple[tuple[int, Decimal], ...] = (
    (500_000, Decimal("4")),
    (123_000, Decimal("6.5")),
    (47_000, Decimal("8")),
    (20_000, Decimal("10")),
)


@dataclass(frozen=True)
class FeeBreakdown:
    """Result of a fee calculation. Percentages are plain floats for JSON output."""

    gross_amount: int
    task_based_fee_percent: float
    value_based_fee_percent: float | None
    applied_fee_percent: float
    platform_fee: int
    net_payout: int

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def round_half_up(value: Decimal) -> int:
    """Round to the nearest integer, halves away from zero for positive values."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(amount: int, percent: Decimal | int | float) -> int:
    """`round_half_up(amount * percent / 100)` without float error."""
    return round_half_up(Decimal(amount) * Decimal(str(percent)) / Decimal(100))


def task_based_fee_percent(tasks_completed: int) -> Decimal:
    for threshold, percent in TASK_COUNT_TIERS:
        if tasks_completed >= threshold:
            return percent
    return TASK_COUNT_TIERS[-1][1]


def value_based_fee_percent(gross_amount: int) -> Decimal | None:
    for threshold, percent in VALUE_TIERS:
        if gross_amount >= threshold:
            return percent
    return None


def calculate_fee(gross_amount: int, tasks_completed: int) -> FeeBreakdown:
    """
    Compute the platform fee and net payout for a task.

    Args:
        gross_amount: Task reward in whole currency units (positive integer).
        tasks_completed: Requester's completed-task count before this task.

    Returns:
        FeeBreakdown where platform_fee + net_payout == gross_amount.

    Raises:
        ValueError: On a non-positive amount or negative task count.
    """
    if isinstance(gross_amount, bool) or not isinstance(gross_amount, int) or gross_amount <= 0:
        msg = "gross_amount must be a positive integer"
        raise ValueError(msg)
    if isinstance(tasks_completed, bool) or not isinstance(tasks_completed, int) or tasks_completed < 0:
        msg = "tasks_completed must be a non-negative integer"
        raise ValueError(msg)

    task_percent = task_based_fee_percent(tasks_completed)
    value_percent = value_based_fee_percent(gross_amount)
    applied = task_percent if value_percent is None else min(task_percent, value_percent)

    platform_fee = percent_of(gross_amount, applied)
    return FeeBreakdown(
        gross_amount=gross_amount,
        task_based_fee_percent=float(task_percent),
        value_based_fee_percent=None if value_percent is None else float(value_percent),
        applied_fee_percent=float(applied),
        platform_fee=platform_fee,
        net_payout=gross_amount - platform_fee,
    )
