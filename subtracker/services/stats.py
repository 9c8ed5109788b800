"""
Cost aggregation across billing cycles.

Amounts are normalized per cycle with Decimal arithmetic and rounded to cents
only once, on the totals. The annual figure uses its own per-cycle factors
instead of monthly x 12 so rounding error does not compound.
"""
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from subtracker.models import BillingCycle, Category, Subscription, SubscriptionStatus

CENTS = Decimal("0.01")

MONTHS_PER_YEAR = Decimal("12")
# Kept at an even 3; a calendar-weighted 3.04 would disagree with the x4 annual factor
MONTHS_PER_QUARTER = Decimal("3")
QUARTERS_PER_YEAR = Decimal("4")
WEEKS_PER_MONTH = Decimal("4.33")
WEEKS_PER_YEAR = Decimal("52")


@dataclass
class Stats:
    total_subscriptions: int = 0
    total_monthly_cost: Decimal = Decimal("0.00")
    total_annual_cost: Decimal = Decimal("0.00")
    by_category: dict[str, int] = field(default_factory=dict)
    by_status: dict[str, int] = field(default_factory=dict)


def monthly_equivalent(amount: Decimal, cycle: BillingCycle) -> Decimal:
    if cycle == BillingCycle.MONTHLY:
        return amount
    if cycle == BillingCycle.ANNUAL:
        return amount / MONTHS_PER_YEAR
    if cycle == BillingCycle.QUARTERLY:
        return amount / MONTHS_PER_QUARTER
    if cycle == BillingCycle.WEEKLY:
        return amount * WEEKS_PER_MONTH
    raise ValueError(f"Unknown billing cycle: {cycle}")


def annual_equivalent(amount: Decimal, cycle: BillingCycle) -> Decimal:
    if cycle == BillingCycle.MONTHLY:
        return amount * MONTHS_PER_YEAR
    if cycle == BillingCycle.ANNUAL:
        return amount
    if cycle == BillingCycle.QUARTERLY:
        return amount * QUARTERS_PER_YEAR
    if cycle == BillingCycle.WEEKLY:
        return amount * WEEKS_PER_YEAR
    raise ValueError(f"Unknown billing cycle: {cycle}")


def summarize(subscriptions: Iterable[Subscription]) -> Stats:
    """Aggregate already-loaded subscriptions; costs count active rows only."""
    monthly = Decimal("0")
    annual = Decimal("0")
    active = 0
    by_category: Counter[str] = Counter()
    by_status: Counter[str] = Counter()

    for sub in subscriptions:
        by_category[str(sub.category or Category.OTHER)] += 1
        by_status[str(sub.status)] += 1
        if sub.status != SubscriptionStatus.ACTIVE:
            continue
        active += 1
        amount = Decimal(sub.amount)
        monthly += monthly_equivalent(amount, sub.billing_cycle)
        annual += annual_equivalent(amount, sub.billing_cycle)

    return Stats(
        total_subscriptions=active,
        total_monthly_cost=monthly.quantize(CENTS, rounding=ROUND_HALF_UP),
        total_annual_cost=annual.quantize(CENTS, rounding=ROUND_HALF_UP),
        by_category=dict(by_category),
        by_status=dict(by_status),
    )


def compute_stats(db: Session, user_id: str) -> Stats:
    subscriptions = db.scalars(
        select(Subscription).where(Subscription.user_id == user_id)
    ).all()
    return summarize(subscriptions)
