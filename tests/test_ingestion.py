"""Tests for the ingestion coordinator."""

import logging
import threading
from datetime import datetime, timedelta, UTC
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from conftest import USER_ID, make_message
from subtracker.errors import (
    AuthExpiredError,
    MailboxError,
    PersistenceError,
    ProviderUnavailableError,
)
from subtracker.models import (
    BillingCycle,
    Confidence,
    ParsingStatus,
    ProcessedMessage,
    Subscription,
)
from subtracker.services.ingestion import IngestionCoordinator, ScanState
from subtracker.services.mailbox import MailMessage

SCAN_TIME = datetime(2025, 2, 1, 12, 0, tzinfo=UTC)


def _coordinator(db_session, vault, provider, now=SCAN_TIME, **kwargs):
    return IngestionCoordinator(db_session, vault, provider, clock=lambda: now, **kwargs)


def _count(db_session, model) -> int:
    return db_session.scalar(select(func.count()).select_from(model))


async def test_scan_records_every_message_and_creates_subscriptions(db_session, connected_vault, provider):
    coordinator = _coordinator(db_session, connected_vault, provider)

    summary = await coordinator.run_scan(USER_ID)

    assert summary.total_candidates == 3
    assert summary.processed == 3
    assert summary.new_subscriptions == 2
    assert summary.skipped == 0
    assert coordinator.state is ScanState.DONE

    netflix = db_session.scalars(
        select(Subscription).where(Subscription.merchant_name == "Netflix")
    ).one()
    assert netflix.amount == Decimal("15.49")
    assert netflix.billing_cycle == BillingCycle.MONTHLY
    assert netflix.confidence == Confidence.MEDIUM
    assert netflix.is_manual_entry is False

    promo = db_session.scalars(
        select(ProcessedMessage).where(ProcessedMessage.message_id == "msg_promo")
    ).one()
    assert promo.parsing_status == ParsingStatus.FAILED
    assert promo.error_message == "Promotional message"
    assert promo.subscription_id is None

    figma = db_session.scalars(
        select(ProcessedMessage).where(ProcessedMessage.message_id == "msg_figma")
    ).one()
    assert figma.parsing_status == ParsingStatus.SUCCESS
    assert figma.extracted_data["amount"] == "20.00"
    assert figma.subscription_id is not None
    assert figma.retention_expires_at == SCAN_TIME + timedelta(days=30)


async def test_first_scan_uses_lookback_window(db_session, connected_vault, provider):
    coordinator = _coordinator(db_session, connected_vault, provider, lookback=timedelta(days=10))
    await coordinator.run_scan(USER_ID)
    assert provider.since_seen == [SCAN_TIME - timedelta(days=10)]


async def test_rescan_is_idempotent(db_session, connected_vault, provider):
    await _coordinator(db_session, connected_vault, provider).run_scan(USER_ID)

    later = SCAN_TIME + timedelta(hours=1)
    summary = await _coordinator(db_session, connected_vault, provider, now=later).run_scan(USER_ID)

    assert summary.processed == 0
    assert summary.new_subscriptions == 0
    assert summary.skipped == 3
    assert _count(db_session, Subscription) == 2
    assert _count(db_session, ProcessedMessage) == 3
    # Second scan starts from the first scan's watermark
    assert provider.since_seen[-1] == SCAN_TIME


async def test_duplicate_ids_in_listing_are_processed_once(db_session, connected_vault, provider):
    provider.listed_ids = ["msg_figma", "msg_figma", "msg_promo"]

    summary = await _coordinator(db_session, connected_vault, provider).run_scan(USER_ID)

    assert summary.total_candidates == 3
    assert summary.processed == 2
    assert summary.skipped == 1
    assert _count(db_session, ProcessedMessage) == 2


async def test_small_batches_cover_all_messages(db_session, connected_vault, provider):
    summary = await _coordinator(db_session, connected_vault, provider, batch_size=1).run_scan(USER_ID)
    assert summary.processed == 3
    assert _count(db_session, ProcessedMessage) == 3


async def test_watermark_advances_to_scan_start(db_session, connected_vault, provider):
    await _coordinator(db_session, connected_vault, provider).run_scan(USER_ID)
    assert connected_vault.get_credential(USER_ID).last_scan_at == SCAN_TIME


async def test_watermark_never_moves_backwards(db_session, connected_vault, provider):
    await _coordinator(db_session, connected_vault, provider).run_scan(USER_ID)

    earlier = SCAN_TIME - timedelta(days=1)
    await _coordinator(db_session, connected_vault, provider, now=earlier).run_scan(USER_ID)

    assert connected_vault.get_credential(USER_ID).last_scan_at == SCAN_TIME


async def test_listing_cap_keeps_watermark(db_session, connected_vault, provider, caplog):
    provider.max_messages = 2

    with caplog.at_level(logging.WARNING, logger="subtracker.services.ingestion"):
        summary = await _coordinator(db_session, connected_vault, provider).run_scan(USER_ID)

    assert summary.total_candidates == 2
    assert summary.processed == 2
    assert connected_vault.get_credential(USER_ID).last_scan_at is None
    assert "listing cap" in caplog.text


async def test_listing_below_cap_advances_watermark(db_session, connected_vault, provider):
    provider.max_messages = 10
    await _coordinator(db_session, connected_vault, provider).run_scan(USER_ID)
    assert connected_vault.get_credential(USER_ID).last_scan_at == SCAN_TIME


async def test_database_work_runs_off_the_event_loop(db_session, connected_vault, provider, monkeypatch):
    loop_thread = threading.get_ident()
    commit_threads = []
    real_commit = db_session.commit

    def commit():
        commit_threads.append(threading.get_ident())
        real_commit()

    monkeypatch.setattr(db_session, "commit", commit)
    await _coordinator(db_session, connected_vault, provider).run_scan(USER_ID)

    assert commit_threads
    assert loop_thread not in commit_threads


async def test_oversized_fields_do_not_block_the_scan(db_session, connected_vault, provider):
    provider.messages["msg_huge"] = make_message(
        "msg_huge",
        f'"{"A" * 400}" <billing@example.com>',
        "Your receipt",
        "Total charged: $123456789012345.99 per month",
    )

    summary = await _coordinator(db_session, connected_vault, provider).run_scan(USER_ID)

    assert summary.processed == 4
    record = db_session.scalars(
        select(ProcessedMessage).where(ProcessedMessage.message_id == "msg_huge")
    ).one()
    assert record.parsing_status == ParsingStatus.FAILED
    assert record.error_message == "Implausible amount"
    assert connected_vault.get_credential(USER_ID).last_scan_at == SCAN_TIME


async def test_auth_failure_aborts_without_moving_watermark(db_session, vault, provider):
    vault.store_credential(USER_ID, "refresh-1")
    provider.refresh_error = AuthExpiredError("invalid_grant")
    coordinator = _coordinator(db_session, vault, provider)

    with pytest.raises(AuthExpiredError):
        await coordinator.run_scan(USER_ID)

    assert coordinator.state is ScanState.FAILED
    assert vault.get_credential(USER_ID).last_scan_at is None
    assert _count(db_session, ProcessedMessage) == 0


async def test_vanished_message_is_skipped(db_session, connected_vault, provider):
    provider.listed_ids = ["msg_figma", "msg_gone"]

    summary = await _coordinator(db_session, connected_vault, provider).run_scan(USER_ID)

    assert summary.total_candidates == 2
    assert summary.processed == 1
    ids = db_session.scalars(select(ProcessedMessage.message_id)).all()
    assert ids == ["msg_figma"]
    assert connected_vault.get_credential(USER_ID).last_scan_at == SCAN_TIME


async def test_unusable_message_is_recorded_as_failed(db_session, connected_vault, provider):
    provider.fetch_errors["msg_netflix"] = MailboxError("Message body is not valid base64url")

    summary = await _coordinator(db_session, connected_vault, provider).run_scan(USER_ID)

    assert summary.processed == 3
    record = db_session.scalars(
        select(ProcessedMessage).where(ProcessedMessage.message_id == "msg_netflix")
    ).one()
    assert record.parsing_status == ParsingStatus.FAILED
    assert record.error_message.startswith("Fetch failed")


async def test_provider_outage_aborts_scan(db_session, connected_vault, provider):
    provider.fetch_errors["msg_figma"] = ProviderUnavailableError("503")
    coordinator = _coordinator(db_session, connected_vault, provider)

    with pytest.raises(ProviderUnavailableError):
        await coordinator.run_scan(USER_ID)

    assert coordinator.state is ScanState.FAILED
    assert connected_vault.get_credential(USER_ID).last_scan_at is None


async def test_listing_outage_aborts_scan(db_session, connected_vault, provider):
    provider.list_error = ProviderUnavailableError("list failed")

    with pytest.raises(ProviderUnavailableError):
        await _coordinator(db_session, connected_vault, provider).run_scan(USER_ID)

    assert connected_vault.get_credential(USER_ID).last_scan_at is None


async def test_database_failure_aborts_scan(db_session, connected_vault, provider, monkeypatch):
    def broken_commit():
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(db_session, "commit", broken_commit)
    coordinator = _coordinator(db_session, connected_vault, provider)

    with pytest.raises(PersistenceError):
        await coordinator.run_scan(USER_ID)

    monkeypatch.undo()
    assert coordinator.state is ScanState.FAILED
    assert connected_vault.get_credential(USER_ID).last_scan_at is None
    assert _count(db_session, Subscription) == 0


async def test_body_falls_back_to_snippet(db_session, connected_vault, provider):
    message = MailMessage(
        message_id="msg_snippet",
        sender="Spotify <no-reply@spotify.com>",
        subject="Your Spotify receipt",
        received_at=SCAN_TIME,
        body="",
        snippet="Total: $10.99 per month",
    )
    provider.messages = {"msg_snippet": message}

    summary = await _coordinator(db_session, connected_vault, provider).run_scan(USER_ID)

    assert summary.new_subscriptions == 1
    sub = db_session.scalars(select(Subscription)).one()
    assert sub.amount == Decimal("10.99")
