"""Shared fixtures for tests."""

import asyncio
import os
from datetime import datetime, timedelta, UTC

from cryptography.fernet import Fernet

# Settings are read at import time; set them before any subtracker import
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SKIP_DB_INIT"] = "true"
os.environ["ENV"] = "test"
os.environ["RETENTION_SWEEP_INTERVAL_SECONDS"] = "0"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from subtracker.database import Base
from subtracker import models  # noqa: F401  (registers tables)
from subtracker.errors import MailboxError, NotFoundError
from subtracker.services.mailbox import MailboxProvider, MailMessage, TokenGrant
from subtracker.services.token_vault import RefreshGuard, TokenVault

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
RECEIVED_AT = datetime(2025, 1, 10, 9, 30, tzinfo=UTC)


class FakeMailboxProvider(MailboxProvider):
    """In-memory mailbox: a dict of MailMessage by id, with switchable failures."""

    name = "gmail"

    def __init__(self, messages=None):
        self.messages: dict[str, MailMessage] = {m.message_id: m for m in (messages or [])}
        self.listed_ids: list[str] | None = None
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.refresh_error: Exception | None = None
        self.revoke_error: Exception | None = None
        self.revoked: list[str] = []
        self.fetch_errors: dict[str, Exception] = {}
        self.list_error: Exception | None = None
        self.since_seen: list[datetime | None] = []
        self.grant = TokenGrant(
            access_token="access-new",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
            refresh_token="refresh-from-code",
        )

    def authorization_url(self, state: str) -> str:
        return f"https://auth.example.test/authorize?state={state}"

    async def exchange_code(self, code: str) -> TokenGrant:
        if code == "bad-code":
            raise MailboxError("code rejected")
        return self.grant

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error:
            raise self.refresh_error
        return TokenGrant(
            access_token=f"refreshed-{self.refresh_calls}",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
        )

    async def revoke_token(self, refresh_token: str) -> None:
        self.revoked.append(refresh_token)
        if self.revoke_error:
            raise self.revoke_error

    async def list_candidates(self, access_token, since=None):
        self.since_seen.append(since)
        if self.list_error:
            raise self.list_error
        ids = self.listed_ids if self.listed_ids is not None else list(self.messages)
        if self.max_messages is not None:
            ids = ids[: self.max_messages]
        for mid in ids:
            yield mid

    async def fetch_message(self, access_token: str, message_id: str) -> MailMessage:
        if message_id in self.fetch_errors:
            raise self.fetch_errors[message_id]
        if message_id not in self.messages:
            raise NotFoundError(f"Message {message_id} not found")
        return self.messages[message_id]


def make_message(message_id, sender, subject, body, received_at=RECEIVED_AT) -> MailMessage:
    return MailMessage(
        message_id=message_id,
        sender=sender,
        subject=subject,
        received_at=received_at,
        body=body,
        snippet=body[:100],
    )


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def netflix_message() -> MailMessage:
    # No cadence word anywhere: the cycle has to be inferred
    return make_message(
        "msg_netflix",
        "Netflix <info@account.netflix.com>",
        "Your Netflix receipt",
        "Thanks for your payment. Total: $15.49. Your membership renews on March 5, 2025.",
    )


@pytest.fixture
def figma_message() -> MailMessage:
    return make_message(
        "msg_figma",
        "Figma <billing@figma.com>",
        "Your receipt from Figma",
        "Referral credit applied: $5.00\nTotal charged: $20.00 per month",
    )


@pytest.fixture
def promo_message() -> MailMessage:
    return make_message(
        "msg_promo",
        "Deals <deals@shop.example.com>",
        "50% off your next upgrade - limited time",
        "Upgrade now and save. Only $4.99!",
    )


@pytest.fixture
def provider(netflix_message, figma_message, promo_message) -> FakeMailboxProvider:
    return FakeMailboxProvider([netflix_message, figma_message, promo_message])


@pytest.fixture
def vault(db_session, provider) -> TokenVault:
    # Own guard per test so locks never cross event loops
    return TokenVault(db_session, provider, guard=RefreshGuard())


@pytest.fixture
def connected_vault(vault) -> TokenVault:
    vault.store_credential(
        USER_ID,
        "refresh-1",
        "access-1",
        datetime.now(UTC) + timedelta(hours=1),
    )
    return vault
