"""
Ingestion coordinator: one incremental mailbox scan for one user.

The scan is a saga whose single commit point is the watermark. Per-message
problems (vanished messages, unparseable mail) are recorded as data and never
stop the scan; token and provider outages abort it before the watermark moves,
so the next attempt re-covers the same window and dedup makes that safe.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subtracker.config import SCAN_BATCH_SIZE, SCAN_LOOKBACK_DAYS, SNIPPET_MAX_LENGTH
from subtracker.database import utcnow
from subtracker.errors import MailboxError, NotFoundError, PersistenceError
from subtracker.models import MailboxCredential, ParsingStatus, ProcessedMessage
from subtracker.services.mailbox import MailboxProvider, MailMessage
from subtracker.services.parser import ParseFailure, ParseResult, ParseSuccess, parse_message
from subtracker.services.retention import retention_expiry
from subtracker.services.subscriptions import add_detected_subscription
from subtracker.services.token_vault import TokenVault

logger = logging.getLogger(__name__)


class ScanState(enum.Enum):
    IDLE = "idle"
    LISTING = "listing"
    FETCHING = "fetching"
    PARSING = "parsing"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ScanSummary:
    total_candidates: int = 0
    processed: int = 0
    new_subscriptions: int = 0
    skipped: int = 0


@dataclass
class _Outcome:
    message_id: str
    message: MailMessage | None
    result: ParseResult


class IngestionCoordinator:
    def __init__(
        self,
        db: Session,
        vault: TokenVault,
        provider: MailboxProvider,
        *,
        batch_size: int = SCAN_BATCH_SIZE,
        lookback: timedelta = timedelta(days=SCAN_LOOKBACK_DAYS),
        clock=utcnow,
    ):
        self.db = db
        self.vault = vault
        self.provider = provider
        self.batch_size = max(1, batch_size)
        self.lookback = lookback
        self.clock = clock
        self.state = ScanState.IDLE

    def _transition(self, state: ScanState, user_id: str) -> None:
        logger.debug("Scan for user %s: %s -> %s", user_id, self.state.value, state.value)
        self.state = state

    async def run_scan(self, user_id: str) -> ScanSummary:
        """
        Scan the user's mailbox since the watermark and persist what was found.
        Raises AuthExpiredError / MailboxNotConnectedError (reconnect),
        ProviderUnavailableError or PersistenceError (retry later); the watermark
        only advances when the scan completes below the provider listing cap.
        Database work runs in worker threads so the event loop stays free.
        """
        try:
            summary = await self._scan(user_id)
        except Exception:
            self._transition(ScanState.FAILED, user_id)
            raise
        self._transition(ScanState.DONE, user_id)
        logger.info(
            "Scan for user %s done: %d candidates, %d processed, %d new subscriptions",
            user_id,
            summary.total_candidates,
            summary.processed,
            summary.new_subscriptions,
        )
        return summary

    async def _scan(self, user_id: str) -> ScanSummary:
        access_token = await self.vault.get_valid_access_token(user_id)
        credential = await asyncio.to_thread(self.vault.get_credential, user_id)
        started_at = self.clock()
        since = credential.last_scan_at or (started_at - self.lookback)

        summary = ScanSummary()
        seen: set[str] = set()
        batch: list[str] = []

        self._transition(ScanState.LISTING, user_id)
        async for message_id in self.provider.list_candidates(access_token, since):
            summary.total_candidates += 1
            if message_id in seen:
                summary.skipped += 1
                continue
            seen.add(message_id)
            batch.append(message_id)
            if len(batch) >= self.batch_size:
                await self._process_batch(user_id, access_token, batch, summary)
                batch = []
                self._transition(ScanState.LISTING, user_id)
        if batch:
            await self._process_batch(user_id, access_token, batch, summary)

        self._transition(ScanState.PERSISTING, user_id)
        cap = self.provider.max_messages
        if cap is not None and summary.total_candidates >= cap:
            # Older candidates were cut off; keep the window open for the next scan
            logger.warning(
                "Scan for user %s stopped at the %d message listing cap; watermark not advanced",
                user_id,
                cap,
            )
            return summary
        await asyncio.to_thread(self._advance_watermark, credential, started_at)
        return summary

    def _already_processed(self, user_id: str, message_ids: list[str]) -> set[str]:
        try:
            rows = self.db.scalars(
                select(ProcessedMessage.message_id).where(
                    ProcessedMessage.user_id == user_id,
                    ProcessedMessage.message_id.in_(message_ids),
                )
            ).all()
        except SQLAlchemyError as e:
            raise PersistenceError("Could not read processed-message records") from e
        return set(rows)

    async def _process_batch(
        self,
        user_id: str,
        access_token: str,
        message_ids: list[str],
        summary: ScanSummary,
    ) -> None:
        done = await asyncio.to_thread(self._already_processed, user_id, message_ids)
        pending = [mid for mid in message_ids if mid not in done]
        summary.skipped += len(done)
        if not pending:
            return

        self._transition(ScanState.FETCHING, user_id)
        outcomes = await asyncio.gather(
            *(self._fetch_and_parse(user_id, access_token, mid) for mid in pending)
        )

        self._transition(ScanState.PERSISTING, user_id)
        await asyncio.to_thread(self._persist, user_id, [o for o in outcomes if o is not None], summary)

    async def _fetch_and_parse(self, user_id: str, access_token: str, message_id: str) -> _Outcome | None:
        try:
            message = await self.provider.fetch_message(access_token, message_id)
        except NotFoundError:
            logger.debug("Message %s vanished before fetch; skipping", message_id)
            return None
        except MailboxError as e:
            logger.warning("Could not fetch message %s: %s", message_id, e)
            return _Outcome(message_id, None, ParseFailure(f"Fetch failed: {e.msg}"))

        self._transition(ScanState.PARSING, user_id)
        try:
            result = parse_message(
                message.subject,
                message.sender,
                message.body,
                message.snippet,
                received_at=message.received_at,
            )
        except Exception as e:
            logger.exception("Parser crashed on message %s", message_id)
            result = ParseFailure(f"Parser error: {type(e).__name__}")
        return _Outcome(message_id, message, result)

    def _persist(self, user_id: str, outcomes: list[_Outcome], summary: ScanSummary) -> None:
        """Write one batch in one transaction; any DB error aborts the scan."""
        now = self.clock()
        new_subscriptions = 0
        try:
            for outcome in outcomes:
                msg = outcome.message
                record = ProcessedMessage(
                    user_id=user_id,
                    message_id=outcome.message_id,
                    sender=msg.sender[:512] if msg else "",
                    subject=msg.subject if msg else "",
                    received_at=msg.received_at if msg else None,
                    snippet=(msg.snippet or "")[:SNIPPET_MAX_LENGTH] if msg else "",
                    retention_expires_at=retention_expiry(now),
                    created_at=now,
                )
                if isinstance(outcome.result, ParseSuccess):
                    sub = add_detected_subscription(self.db, user_id, outcome.result.data)
                    record.parsing_status = ParsingStatus.SUCCESS
                    record.extracted_data = outcome.result.data.to_dict()
                    record.subscription_id = sub.id
                    new_subscriptions += 1
                else:
                    record.parsing_status = ParsingStatus.FAILED
                    record.error_message = outcome.result.reason
                    logger.debug(
                        "Message %s not a subscription: %s", outcome.message_id, outcome.result.reason
                    )
                self.db.add(record)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Could not persist scan results") from e
        summary.processed += len(outcomes)
        summary.new_subscriptions += new_subscriptions

    def _advance_watermark(self, credential: MailboxCredential, started_at: datetime) -> None:
        previous = credential.last_scan_at
        credential.last_scan_at = max(previous, started_at) if previous else started_at
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Could not advance scan watermark") from e
