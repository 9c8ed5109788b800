"""
Token vault: encrypted mailbox credentials and single-flight access-token refresh.

All token fields are Fernet-encrypted before they reach the database. Refreshes
for one user are serialized by a per-user asyncio.Lock; a caller that waited on
the lock re-reads the row and reuses the token the first caller just stored, so
concurrent requests trigger exactly one remote refresh.
"""
import asyncio
import logging
import weakref
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from subtracker.config import TOKEN_EXPIRY_MARGIN_SECONDS
from subtracker.crypto import InvalidToken, decrypt, encrypt
from subtracker.database import utcnow
from subtracker.errors import AuthExpiredError, MailboxNotConnectedError
from subtracker.models import MailboxCredential
from subtracker.services.mailbox import MailboxProvider

logger = logging.getLogger(__name__)


class RefreshGuard:
    """Hands out one lock per user; locks are dropped once nobody holds them."""

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock


# Process-wide: every vault instance must share the same locks
refresh_guard = RefreshGuard()


def _clear_tokens(credential: MailboxCredential) -> None:
    credential.encrypted_refresh_token = None
    credential.encrypted_access_token = None
    credential.access_token_expires_at = None
    credential.connected = False


class TokenVault:
    def __init__(
        self,
        session: Session,
        provider: MailboxProvider,
        *,
        guard: RefreshGuard = refresh_guard,
        clock=utcnow,
        expiry_margin: timedelta = timedelta(seconds=TOKEN_EXPIRY_MARGIN_SECONDS),
    ):
        self.session = session
        self.provider = provider
        self.guard = guard
        self.clock = clock
        self.expiry_margin = expiry_margin

    def get_credential(self, user_id: str) -> MailboxCredential | None:
        return self.session.get(MailboxCredential, user_id)

    def store_credential(
        self,
        user_id: str,
        refresh_token: str,
        access_token: str | None = None,
        expires_at: datetime | None = None,
    ) -> MailboxCredential:
        """
        Encrypt and upsert the user's credential and mark it connected.
        Encryption happens first, so a missing key leaves the row untouched.
        """
        if not refresh_token:
            raise ValueError("A connected credential needs a refresh token")
        encrypted_refresh = encrypt(refresh_token)
        encrypted_access = encrypt(access_token) if access_token else None

        credential = self.get_credential(user_id)
        if credential is None:
            credential = MailboxCredential(user_id=user_id, provider=self.provider.name)
            self.session.add(credential)
        credential.encrypted_refresh_token = encrypted_refresh
        credential.encrypted_access_token = encrypted_access
        credential.access_token_expires_at = expires_at if access_token else None
        credential.connected = True
        self.session.commit()
        logger.info("Stored mailbox credential for user %s", user_id)
        return credential

    def _cached_token(self, credential: MailboxCredential) -> str | None:
        expires_at = credential.access_token_expires_at
        if not credential.encrypted_access_token or not expires_at:
            return None
        if self.clock() >= expires_at - self.expiry_margin:
            return None
        return decrypt(credential.encrypted_access_token)

    async def get_valid_access_token(self, user_id: str) -> str:
        """
        Return a usable access token, refreshing it if it is missing or expires
        within the safety margin. Raises MailboxNotConnectedError when there is
        no connected credential and AuthExpiredError when the provider rejects
        the refresh token (the credential is then marked disconnected).
        """
        async with self.guard.lock_for(user_id):
            credential = await asyncio.to_thread(
                self.session.get, MailboxCredential, user_id, populate_existing=True
            )
            if credential is None or not credential.connected or not credential.encrypted_refresh_token:
                raise MailboxNotConnectedError("Mailbox is not connected")

            try:
                token = self._cached_token(credential)
                if token:
                    return token
                refresh_token = decrypt(credential.encrypted_refresh_token)
            except InvalidToken as e:
                await asyncio.to_thread(self._disconnect, credential)
                raise AuthExpiredError("Stored mailbox credential cannot be decrypted; reconnect") from e

            try:
                grant = await self.provider.refresh_access_token(refresh_token)
            except AuthExpiredError:
                logger.warning("Refresh token rejected for user %s; marking disconnected", user_id)
                await asyncio.to_thread(self._disconnect, credential)
                raise

            credential.encrypted_access_token = encrypt(grant.access_token)
            credential.access_token_expires_at = grant.expires_at
            if grant.refresh_token:
                credential.encrypted_refresh_token = encrypt(grant.refresh_token)
            await asyncio.to_thread(self.session.commit)
            logger.debug("Refreshed access token for user %s", user_id)
            return grant.access_token

    def _disconnect(self, credential: MailboxCredential) -> None:
        _clear_tokens(credential)
        self.session.commit()

    async def revoke(self, user_id: str) -> None:
        """
        Best-effort remote revocation, then clear every local token field, the
        watermark and the connection flag regardless of the remote outcome.
        """
        async with self.guard.lock_for(user_id):
            credential = await asyncio.to_thread(
                self.session.get, MailboxCredential, user_id, populate_existing=True
            )
            if credential is None:
                return
            try:
                if credential.encrypted_refresh_token:
                    await self.provider.revoke_token(decrypt(credential.encrypted_refresh_token))
            except Exception as e:
                # Local state is cleared whatever the remote side says
                logger.warning("Remote revocation skipped for user %s: %s", user_id, e)
            _clear_tokens(credential)
            credential.last_scan_at = None
            await asyncio.to_thread(self.session.commit)
            logger.info("Disconnected mailbox for user %s", user_id)
