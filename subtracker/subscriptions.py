"""
Subscriptions router: CRUD, cancellation and cost statistics for the UI.

Delegates business logic to services.subscriptions and services.stats. Every
route is scoped to the session user; other users' rows answer 404.
"""
from datetime import date, datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator
from sqlalchemy.orm import Session

from subtracker.auth import get_current_user_id
from subtracker.database import get_db
from subtracker.models import BillingCycle, Category, Confidence, SubscriptionStatus
from subtracker.services import subscriptions as service
from subtracker.services.stats import compute_stats

router = APIRouter(prefix="/subscriptions")


# --- Request models ---


class SubscriptionCreate(BaseModel):
    """Request body for a manually entered subscription."""
    merchant_name: str = Field(..., min_length=1, max_length=255)
    plan_name: str | None = Field(None, max_length=255)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    currency: str = Field("USD", min_length=3, max_length=3)
    billing_cycle: BillingCycle
    category: Category | None = None
    first_billing_date: date | None = None
    next_billing_date: date | None = None
    trial_end_date: date | None = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    cancellation_url: HttpUrl | None = None
    notes: str | None = None


class SubscriptionUpdate(BaseModel):
    """Request body for a partial update; only fields sent are changed."""
    merchant_name: str | None = Field(None, min_length=1, max_length=255)
    plan_name: str | None = Field(None, max_length=255)
    amount: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    currency: str | None = Field(None, min_length=3, max_length=3)
    billing_cycle: BillingCycle | None = None
    category: Category | None = None
    next_billing_date: date | None = None
    trial_end_date: date | None = None
    status: SubscriptionStatus | None = None
    cancelled_date: date | None = None
    access_ends_date: date | None = None
    cancellation_url: HttpUrl | None = None
    notes: str | None = None

    @field_validator("merchant_name", "amount", "currency", "billing_cycle", "status")
    @classmethod
    def not_null(cls, v):
        # May be omitted, but not cleared
        if v is None:
            raise ValueError("cannot be null")
        return v


class CancelBody(BaseModel):
    access_ends_date: date | None = None


# --- Response models ---


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    merchant_name: str
    plan_name: str | None
    amount: Decimal
    currency: str
    billing_cycle: BillingCycle
    category: Category | None
    first_billing_date: date | None
    next_billing_date: date | None
    trial_end_date: date | None
    status: SubscriptionStatus
    cancelled_date: date | None
    access_ends_date: date | None
    confidence: Confidence
    is_manual_entry: bool
    notes: str | None
    cancellation_url: str | None
    created_at: datetime
    updated_at: datetime


class StatsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_subscriptions: int
    total_monthly_cost: Decimal
    total_annual_cost: Decimal
    by_category: dict[str, int]
    by_status: dict[str, int]


def _fields(body: BaseModel, **dump_kwargs) -> dict:
    data = body.model_dump(**dump_kwargs)
    if data.get("cancellation_url") is not None:
        data["cancellation_url"] = str(data["cancellation_url"])
    return data


# --- Endpoints ---


@router.get("", response_model=list[SubscriptionOut])
def list_subscriptions(
    status: SubscriptionStatus | None = None,
    category: Category | None = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """List the user's subscriptions, newest first, optionally filtered."""
    return service.list_subscriptions(db, user_id, status=status, category=category)


@router.get("/stats", response_model=StatsOut)
def stats(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Monthly/annual cost of active subscriptions plus category and status counts."""
    return compute_stats(db, user_id)


@router.get("/{subscription_id}", response_model=SubscriptionOut)
def get_subscription(
    subscription_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return service.get_subscription(db, user_id, subscription_id)


@router.post("", response_model=SubscriptionOut, status_code=201)
def create_subscription(
    body: SubscriptionCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return service.create_subscription(db, user_id, **_fields(body))


@router.patch("/{subscription_id}", response_model=SubscriptionOut)
def update_subscription(
    subscription_id: int,
    body: SubscriptionUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return service.update_subscription(db, user_id, subscription_id, _fields(body, exclude_unset=True))


@router.delete("/{subscription_id}")
def delete_subscription(
    subscription_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    service.delete_subscription(db, user_id, subscription_id)
    return {"ok": True}


@router.post("/{subscription_id}/cancel", response_model=SubscriptionOut)
def cancel_subscription(
    subscription_id: int,
    body: CancelBody | None = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Mark as cancelled today; access_ends_date records when paid access runs out."""
    access_ends = body.access_ends_date if body else None
    return service.cancel_subscription(db, user_id, subscription_id, access_ends_date=access_ends)
