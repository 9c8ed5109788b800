"""
Gmail router: connect/callback/disconnect/status and the scan trigger.

The OAuth state parameter is a signed short-lived JWT carrying the user id, so
the callback (a plain browser redirect from Google) can be attributed without
trusting anything else in the query string. Domain errors raised here are
mapped to HTTP responses by the handlers registered in main.
"""
import logging
from functools import lru_cache
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from jose import JWTError
from sqlalchemy.orm import Session

from subtracker.auth import get_current_user_id
from subtracker.config import FRONTEND_URL
from subtracker.database import get_db
from subtracker.errors import SubtrackerError
from subtracker.models import MailboxCredential
from subtracker.security import create_state_token, decode_state_token
from subtracker.services.ingestion import IngestionCoordinator, ScanSummary
from subtracker.services.mailbox import GmailProvider, MailboxProvider
from subtracker.services.token_vault import TokenVault

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/gmail")


@lru_cache
def get_mailbox_provider() -> MailboxProvider:
    """Single GmailProvider per process; raises ConfigurationError if OAuth env is incomplete."""
    return GmailProvider()


def get_token_vault(
    db: Session = Depends(get_db),
    provider: MailboxProvider = Depends(get_mailbox_provider),
) -> TokenVault:
    return TokenVault(db, provider)


def _dashboard_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(url=f"{FRONTEND_URL}/dashboard?{urlencode(params)}")


@router.get("/connect")
def connect(
    user_id: str = Depends(get_current_user_id),
    provider: MailboxProvider = Depends(get_mailbox_provider),
):
    """Return the provider consent URL; the frontend navigates the user there."""
    return {"auth_url": provider.authorization_url(create_state_token(user_id))}


@router.get("/callback")
async def callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    provider: MailboxProvider = Depends(get_mailbox_provider),
    vault: TokenVault = Depends(get_token_vault),
):
    """
    Handle the redirect from Google: verify state, exchange the code, store the
    encrypted credential and send the user back to the dashboard.
    """
    if error:
        return _dashboard_redirect(gmail_error=error)
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")
    try:
        user_id = decode_state_token(state)
    except JWTError:
        user_id = None
    if not user_id:
        raise HTTPException(status_code=400, detail="Invalid or expired state; please connect again")

    try:
        grant = await provider.exchange_code(code)
    except SubtrackerError as e:
        logger.warning("Code exchange failed for user %s: %s", user_id, e.msg)
        return _dashboard_redirect(gmail_error="callback_failed")
    if not grant.refresh_token:
        return _dashboard_redirect(gmail_error="no_refresh_token")

    vault.store_credential(user_id, grant.refresh_token, grant.access_token, grant.expires_at)
    return _dashboard_redirect(gmail_connected="true")


@router.post("/disconnect")
async def disconnect(
    user_id: str = Depends(get_current_user_id),
    vault: TokenVault = Depends(get_token_vault),
):
    await vault.revoke(user_id)
    return {"ok": True}


@router.get("/status")
def status(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    credential = db.get(MailboxCredential, user_id)
    if credential is None:
        return {"connected": False, "last_scan": None}
    return {"connected": bool(credential.connected), "last_scan": credential.last_scan_at}


@router.post("/scan", response_model=None)
async def scan(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: MailboxProvider = Depends(get_mailbox_provider),
    vault: TokenVault = Depends(get_token_vault),
) -> ScanSummary:
    """Run an incremental scan now and return its counts."""
    coordinator = IngestionCoordinator(db, vault, provider)
    return await coordinator.run_scan(user_id)
