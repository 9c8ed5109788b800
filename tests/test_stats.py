"""Tests for cost statistics."""

from decimal import Decimal

from conftest import OTHER_USER_ID, USER_ID
from subtracker.models import BillingCycle, Category, Subscription, SubscriptionStatus
from subtracker.services.stats import (
    annual_equivalent,
    compute_stats,
    monthly_equivalent,
    summarize,
)


def _sub(amount, cycle, status=SubscriptionStatus.ACTIVE, category=None, user_id=USER_ID) -> Subscription:
    return Subscription(
        user_id=user_id,
        merchant_name="Acme",
        amount=Decimal(amount),
        billing_cycle=cycle,
        status=status,
        category=category,
    )


def test_single_monthly_subscription():
    stats = summarize([_sub("19.99", BillingCycle.MONTHLY)])
    assert stats.total_subscriptions == 1
    assert stats.total_monthly_cost == Decimal("19.99")
    assert stats.total_annual_cost == Decimal("239.88")


def test_monthly_and_annual_subscriptions_combine():
    stats = summarize([
        _sub("9.99", BillingCycle.MONTHLY),
        _sub("120.00", BillingCycle.ANNUAL),
    ])
    assert stats.total_subscriptions == 2
    assert stats.total_monthly_cost == Decimal("19.99")
    assert stats.total_annual_cost == Decimal("239.88")


def test_weekly_normalization():
    assert monthly_equivalent(Decimal("10"), BillingCycle.WEEKLY) == Decimal("43.30")
    assert annual_equivalent(Decimal("10"), BillingCycle.WEEKLY) == Decimal("520")


def test_quarterly_normalization():
    stats = summarize([_sub("30.00", BillingCycle.QUARTERLY)])
    assert stats.total_monthly_cost == Decimal("10.00")
    assert stats.total_annual_cost == Decimal("120.00")


def test_annual_rounds_once_on_the_total():
    """Three 10.00/yr subscriptions are 2.50/mo together, not 3 x 0.83."""
    stats = summarize([_sub("10.00", BillingCycle.ANNUAL) for _ in range(3)])
    assert stats.total_monthly_cost == Decimal("2.50")
    assert stats.total_annual_cost == Decimal("30.00")


def test_only_active_subscriptions_count_toward_cost():
    stats = summarize([
        _sub("10.00", BillingCycle.MONTHLY),
        _sub("50.00", BillingCycle.MONTHLY, status=SubscriptionStatus.CANCELLED),
        _sub("5.00", BillingCycle.MONTHLY, status=SubscriptionStatus.TRIAL),
    ])
    assert stats.total_subscriptions == 1
    assert stats.total_monthly_cost == Decimal("10.00")


def test_breakdowns_count_every_row():
    stats = summarize([
        _sub("10.00", BillingCycle.MONTHLY, category=Category.DESIGN),
        _sub("20.00", BillingCycle.MONTHLY, category=Category.DESIGN),
        _sub("5.00", BillingCycle.MONTHLY, status=SubscriptionStatus.PAUSED),
    ])
    assert stats.by_category == {"design": 2, "other": 1}
    assert stats.by_status == {"active": 2, "paused": 1}


def test_empty_stats():
    stats = summarize([])
    assert stats.total_subscriptions == 0
    assert stats.total_monthly_cost == Decimal("0.00")
    assert stats.by_category == {}


def test_compute_stats_is_scoped_to_user(db_session):
    db_session.add_all([
        _sub("19.99", BillingCycle.MONTHLY),
        _sub("99.00", BillingCycle.MONTHLY, user_id=OTHER_USER_ID),
    ])
    db_session.commit()

    stats = compute_stats(db_session, USER_ID)

    assert stats.total_subscriptions == 1
    assert stats.total_monthly_cost == Decimal("19.99")
