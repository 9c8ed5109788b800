"""
Data models for the subscription tracker.

Users live in the external auth layer; every table here is keyed by its
string user id (the session JWT subject).
"""
import enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from subtracker.database import Base, UTCDateTime, utcnow


class BillingCycle(enum.StrEnum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


class SubscriptionStatus(enum.StrEnum):
    ACTIVE = "active"
    TRIAL = "trial"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class Confidence(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ParsingStatus(enum.StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


class Category(enum.StrEnum):
    AI_TOOLS = "ai_tools"
    DESIGN = "design"
    VIDEO_EDITING = "video_editing"
    PRODUCTIVITY = "productivity"
    ANALYTICS = "analytics"
    MARKETING = "marketing"
    DEVELOPMENT = "development"
    FINANCE = "finance"
    ENTERTAINMENT = "entertainment"
    EDUCATION = "education"
    OTHER = "other"


def _enum(cls) -> Enum:
    # Store the lowercase values, not the member names
    return Enum(
        cls,
        native_enum=False,
        length=20,
        values_callable=lambda e: [m.value for m in e],
    )


class MailboxCredential(Base):
    """
    Mailbox OAuth state for one user.

    - encrypted_refresh_token / encrypted_access_token: Fernet-encrypted;
      decrypted only when calling the mailbox provider. A connected row always
      has a refresh token.
    - access_token_expires_at: UTC time when the access token expires; used to
      decide when to refresh without calling the provider first.
    - last_scan_at: scan watermark; null until the first completed scan.
    """
    __tablename__ = "mailbox_credentials"

    user_id = Column(String(255), primary_key=True, index=True)
    provider = Column(String(32), nullable=False, default="gmail")

    # OAuth tokens encrypted at rest (crypto.encrypt / crypto.decrypt)
    encrypted_refresh_token = Column(String(2048), nullable=True)
    encrypted_access_token = Column(String(2048), nullable=True)
    access_token_expires_at = Column(UTCDateTime, nullable=True)

    connected = Column(Boolean, nullable=False, default=False)
    last_scan_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Subscription(Base):
    """A tracked recurring charge, detected from mail or entered by the user."""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)

    merchant_name = Column(String(255), nullable=False)
    plan_name = Column(String(255), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    billing_cycle = Column(_enum(BillingCycle), nullable=False, default=BillingCycle.MONTHLY)
    category = Column(_enum(Category), nullable=True)

    first_billing_date = Column(Date, nullable=True)
    next_billing_date = Column(Date, nullable=True)
    trial_end_date = Column(Date, nullable=True)

    status = Column(_enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE)
    cancelled_date = Column(Date, nullable=True)
    access_ends_date = Column(Date, nullable=True)

    confidence = Column(_enum(Confidence), nullable=False, default=Confidence.HIGH)
    is_manual_entry = Column(Boolean, nullable=False, default=True)
    notes = Column(Text, nullable=True)
    cancellation_url = Column(String(2048), nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ProcessedMessage(Base):
    """
    One row per mailbox message examined by a scan, success or failure.

    (user_id, message_id) is the dedup key. Rows are written once and deleted
    by the retention sweep after retention_expires_at; the linked subscription
    outlives them.
    """
    __tablename__ = "processed_messages"
    __table_args__ = (
        UniqueConstraint("user_id", "message_id", name="uq_processed_user_message"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    message_id = Column(String(255), nullable=False)

    sender = Column(String(512), nullable=False, default="")
    subject = Column(Text, nullable=False, default="")
    received_at = Column(UTCDateTime, nullable=True)
    snippet = Column(String(500), nullable=False, default="")

    parsing_status = Column(_enum(ParsingStatus), nullable=False)
    extracted_data = Column(JSON, nullable=True)
    subscription_id = Column(
        Integer,
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
    )
    error_message = Column(Text, nullable=True)

    retention_expires_at = Column(UTCDateTime, nullable=False, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
