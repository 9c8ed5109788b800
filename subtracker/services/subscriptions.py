"""
Subscription persistence: CRUD for the UI and the detected-row writer used by ingestion.

Every query is scoped by user_id; a subscription owned by someone else is
reported as not found.
"""
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from subtracker.errors import NotFoundError
from subtracker.models import (
    Confidence,
    ProcessedMessage,
    Subscription,
    SubscriptionStatus,
)
from subtracker.services.parser import SubscriptionDraft

# Fields a user may set on create/update
EDITABLE_FIELDS = (
    "merchant_name",
    "plan_name",
    "amount",
    "currency",
    "billing_cycle",
    "category",
    "first_billing_date",
    "next_billing_date",
    "trial_end_date",
    "status",
    "cancelled_date",
    "access_ends_date",
    "cancellation_url",
    "notes",
)


def list_subscriptions(
    db: Session,
    user_id: str,
    status: SubscriptionStatus | None = None,
    category: str | None = None,
) -> list[Subscription]:
    query = select(Subscription).where(Subscription.user_id == user_id)
    if status:
        query = query.where(Subscription.status == status)
    if category:
        query = query.where(Subscription.category == category)
    query = query.order_by(Subscription.created_at.desc(), Subscription.id.desc())
    return list(db.scalars(query).all())


def get_subscription(db: Session, user_id: str, subscription_id: int) -> Subscription:
    sub = db.scalars(
        select(Subscription).where(
            Subscription.id == subscription_id,
            Subscription.user_id == user_id,
        )
    ).first()
    if sub is None:
        raise NotFoundError("Subscription not found")
    return sub


def create_subscription(db: Session, user_id: str, **fields) -> Subscription:
    """Manual entry: always high confidence."""
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown subscription fields: {', '.join(sorted(unknown))}")
    sub = Subscription(
        user_id=user_id,
        is_manual_entry=True,
        confidence=Confidence.HIGH,
        **fields,
    )
    db.add(sub)
    db.commit()
    db.refresh(sub)
    return sub


def add_detected_subscription(db: Session, user_id: str, draft: SubscriptionDraft) -> Subscription:
    """Stage a parser-detected subscription; the caller owns the commit."""
    sub = Subscription(
        user_id=user_id,
        merchant_name=draft.merchant_name,
        plan_name=draft.plan_name,
        amount=draft.amount,
        currency=draft.currency,
        billing_cycle=draft.billing_cycle,
        category=draft.category,
        first_billing_date=draft.first_billing_date,
        next_billing_date=draft.next_billing_date,
        trial_end_date=draft.trial_end_date,
        status=draft.status,
        confidence=draft.confidence,
        is_manual_entry=False,
    )
    db.add(sub)
    db.flush()
    return sub


def update_subscription(db: Session, user_id: str, subscription_id: int, changes: dict) -> Subscription:
    """Apply only the provided fields."""
    sub = get_subscription(db, user_id, subscription_id)
    for key, value in changes.items():
        if key not in EDITABLE_FIELDS:
            raise ValueError(f"Field {key} cannot be updated")
        setattr(sub, key, value)
    db.commit()
    db.refresh(sub)
    return sub


def cancel_subscription(
    db: Session,
    user_id: str,
    subscription_id: int,
    access_ends_date: date | None = None,
    today: date | None = None,
) -> Subscription:
    sub = get_subscription(db, user_id, subscription_id)
    sub.status = SubscriptionStatus.CANCELLED
    sub.cancelled_date = today or date.today()
    sub.access_ends_date = access_ends_date
    db.commit()
    db.refresh(sub)
    return sub


def delete_subscription(db: Session, user_id: str, subscription_id: int) -> None:
    """Delete the row and detach any processed-message records that point at it."""
    sub = get_subscription(db, user_id, subscription_id)
    db.execute(
        update(ProcessedMessage)
        .where(ProcessedMessage.subscription_id == sub.id)
        .values(subscription_id=None)
    )
    db.delete(sub)
    db.commit()
