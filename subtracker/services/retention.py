"""
Retention of raw message content.

Every ProcessedMessage gets a fixed expiry when it is written; the sweep deletes
expired rows only. Subscriptions produced from those messages are never touched.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.orm import Session

from subtracker.config import RETENTION_DAYS
from subtracker.database import utcnow
from subtracker.models import ProcessedMessage

logger = logging.getLogger(__name__)

RETENTION_PERIOD = timedelta(days=RETENTION_DAYS)


def retention_expiry(created_at: datetime) -> datetime:
    return created_at + RETENTION_PERIOD


def purge_expired(db: Session, now: datetime | None = None) -> int:
    """Delete processed-message records whose expiry is at or before now; returns the count."""
    now = now or utcnow()
    result = db.execute(
        delete(ProcessedMessage).where(ProcessedMessage.retention_expires_at <= now)
    )
    db.commit()
    if result.rowcount:
        logger.info("Purged %d expired processed-message records", result.rowcount)
    return result.rowcount
