"""
Mailbox client: the MailboxProvider capability and its Gmail implementation.

The pipeline only talks to MailboxProvider. GmailProvider calls the Gmail REST
API and Google's OAuth endpoints with requests; every blocking call runs in a
worker thread so a scan never stalls the event loop. Transient failures are
retried with backoff and then surface as ProviderUnavailableError.
"""
import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterator
from urllib.parse import urlencode

import requests
from bs4 import BeautifulSoup
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from subtracker.config import (
    GMAIL_REQUEST_TIMEOUT,
    GMAIL_SCOPES,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REDIRECT_URI,
    MAX_SCAN_MESSAGES,
    SCAN_LOOKBACK_DAYS,
)
from subtracker.errors import (
    AuthExpiredError,
    ConfigurationError,
    MailboxError,
    NotFoundError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GMAIL_API = "https://gmail.googleapis.com/gmail/v1/users/me"

RETRYABLE_STATUS = (429, 500, 502, 503, 504)
LIST_PAGE_SIZE = 100

# Subscription-likely filter in Gmail search syntax; {a b} is an OR group
CANDIDATE_QUERY = (
    "{"
    'subject:(subscription OR receipt OR invoice OR "payment confirmation" '
    "OR trial OR billing OR membership OR renewal) "
    "from:(stripe.com OR paypal.com OR apple.com OR google.com) "
    '"your subscription" "monthly charge" "annual renewal" "free trial"'
    "}"
)


@dataclass(frozen=True)
class TokenGrant:
    """Result of an authorization-code exchange or refresh."""

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


@dataclass(frozen=True)
class MailMessage:
    """A fetched message, reduced to what the parser and the audit record need."""

    message_id: str
    sender: str
    subject: str
    received_at: datetime
    body: str
    snippet: str


class MailboxProvider:
    """
    Capability the ingestion pipeline consumes. Implementations must raise
    AuthExpiredError for rejected credentials, NotFoundError for messages that
    disappeared, and ProviderUnavailableError for transient outages.
    """

    name = "mailbox"
    # Listing stops after this many ids; None means unbounded
    max_messages: int | None = None

    def authorization_url(self, state: str) -> str:
        raise NotImplementedError

    async def exchange_code(self, code: str) -> TokenGrant:
        raise NotImplementedError

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        raise NotImplementedError

    async def revoke_token(self, refresh_token: str) -> None:
        raise NotImplementedError

    def list_candidates(
        self,
        access_token: str,
        since: datetime | None = None,
    ) -> AsyncIterator[str]:
        raise NotImplementedError

    async def fetch_message(self, access_token: str, message_id: str) -> MailMessage:
        raise NotImplementedError


# --- Gmail REST helpers ---


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    return (
        isinstance(exc, requests.HTTPError)
        and exc.response is not None
        and exc.response.status_code in RETRYABLE_STATUS
    )


@retry(
    retry=retry_if_exception(_is_retryable),
    wait=wait_exponential(multiplier=1, min=1, max=30),
    stop=stop_after_attempt(4),
    reraise=True,
)
def _gmail_request(
    method: str,
    url: str,
    access_token: str,
    **kwargs: Any,
) -> dict:
    """Call Gmail API with timeout; returns JSON. Raises on HTTP errors."""
    headers = {"Authorization": f"Bearer {access_token}"}
    if "headers" in kwargs:
        headers.update(kwargs.pop("headers"))
    kwargs.setdefault("timeout", GMAIL_REQUEST_TIMEOUT)
    resp = requests.request(method, url, headers=headers, **kwargs)
    resp.raise_for_status()
    if resp.content:
        return resp.json()
    return {}


def _translate(exc: requests.RequestException, what: str) -> Exception:
    """Map a requests failure onto the pipeline's error taxonomy."""
    status = None
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
    if status in (401, 403):
        return AuthExpiredError(f"Mailbox rejected the access token while {what}")
    if status == 404:
        return NotFoundError(f"Not found while {what}")
    if status is None or status in RETRYABLE_STATUS:
        return ProviderUnavailableError(f"Mailbox provider unavailable while {what}")
    return MailboxError(f"Mailbox request failed ({status}) while {what}")


def build_query(since: datetime) -> str:
    """Gmail search query for subscription-likely mail received after `since`."""
    return f"{CANDIDATE_QUERY} after:{int(since.timestamp())}"


def _header(headers: list[dict], name: str) -> str:
    for h in headers:
        if h.get("name", "").lower() == name.lower():
            return h.get("value", "")
    return ""


def _decode_part(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError) as e:
        raise MailboxError("Message body is not valid base64url") from e


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    return soup.get_text(" ", strip=True)


def extract_body(payload: dict) -> str:
    """
    Return the message text: first text/plain part found depth-first, else the
    first text/html part flattened to text, else the top-level body.
    """
    plain: str | None = None
    html: str | None = None
    stack = [payload]
    while stack and plain is None:
        part = stack.pop(0)
        mime = part.get("mimeType", "")
        data = (part.get("body") or {}).get("data")
        if data and mime == "text/plain":
            plain = _decode_part(data)
        elif data and mime == "text/html" and html is None:
            html = _decode_part(data)
        stack.extend(part.get("parts") or [])
    if plain is not None:
        return plain
    if html is not None:
        return html_to_text(html)
    data = (payload.get("body") or {}).get("data")
    return _decode_part(data) if data else ""


def _received_at(message: dict, date_header: str) -> datetime:
    internal = message.get("internalDate")
    if internal:
        try:
            return datetime.fromtimestamp(int(internal) / 1000, UTC)
        except (TypeError, ValueError):
            pass
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.now(UTC)


def message_from_payload(message: dict) -> MailMessage:
    """Build a MailMessage from a users.messages.get(format=full) response."""
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []
    return MailMessage(
        message_id=message.get("id", ""),
        sender=_header(headers, "From"),
        subject=_header(headers, "Subject"),
        received_at=_received_at(message, _header(headers, "Date")),
        body=extract_body(payload),
        snippet=message.get("snippet", ""),
    )


def _grant_from_response(data: dict, now: datetime) -> TokenGrant:
    return TokenGrant(
        access_token=data["access_token"],
        expires_at=now + timedelta(seconds=int(data.get("expires_in", 3600))),
        refresh_token=data.get("refresh_token"),
    )


class GmailProvider(MailboxProvider):
    """Gmail via REST. Client credentials are validated on construction."""

    name = "gmail"

    def __init__(
        self,
        client_id: str | None = GOOGLE_CLIENT_ID,
        client_secret: str | None = GOOGLE_CLIENT_SECRET,
        redirect_uri: str | None = GOOGLE_REDIRECT_URI,
        *,
        max_messages: int = MAX_SCAN_MESSAGES,
    ):
        for name, val in [
            ("GOOGLE_CLIENT_ID", client_id),
            ("GOOGLE_CLIENT_SECRET", client_secret),
            ("GOOGLE_REDIRECT_URI", redirect_uri),
        ]:
            if not val or not str(val).strip():
                raise ConfigurationError(f"Required env var {name} is missing or empty")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.max_messages = max_messages

    # --- OAuth ---

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(GMAIL_SCOPES),
            "access_type": "offline",
            # Always show consent so Google issues a refresh token
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def _token_request(self, data: dict) -> dict:
        try:
            resp = requests.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    **data,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=GMAIL_REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise ProviderUnavailableError("Token endpoint unreachable") from e
        if resp.status_code >= 500:
            raise ProviderUnavailableError(f"Token endpoint returned {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise ProviderUnavailableError("Token endpoint returned a non-JSON body") from e
        error = body.get("error")
        if error == "invalid_client":
            raise ConfigurationError("Google rejected the OAuth client credentials")
        if error:
            raise AuthExpiredError(
                f"Token request rejected: {body.get('error_description', error)}"
            )
        if not body.get("access_token"):
            raise MailboxError("Token response did not include access_token")
        return body

    async def exchange_code(self, code: str) -> TokenGrant:
        body = await asyncio.to_thread(
            self._token_request,
            {
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
            },
        )
        return _grant_from_response(body, datetime.now(UTC))

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        body = await asyncio.to_thread(
            self._token_request,
            {"refresh_token": refresh_token, "grant_type": "refresh_token"},
        )
        return _grant_from_response(body, datetime.now(UTC))

    def _revoke(self, refresh_token: str) -> None:
        try:
            resp = requests.post(
                GOOGLE_REVOKE_URL,
                params={"token": refresh_token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=GMAIL_REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            logger.warning("Token revocation request failed: %s", e)
            return
        if resp.status_code >= 400:
            logger.warning("Token revocation returned %s", resp.status_code)

    async def revoke_token(self, refresh_token: str) -> None:
        await asyncio.to_thread(self._revoke, refresh_token)

    # --- Messages ---

    def _list_page(self, access_token: str, query: str, page_token: str | None) -> dict:
        params = {"q": query, "maxResults": LIST_PAGE_SIZE}
        if page_token:
            params["pageToken"] = page_token
        try:
            return _gmail_request("GET", f"{GMAIL_API}/messages", access_token, params=params)
        except requests.RequestException as e:
            raise _translate(e, "listing messages") from e

    async def list_candidates(
        self,
        access_token: str,
        since: datetime | None = None,
    ) -> AsyncIterator[str]:
        if since is None:
            since = datetime.now(UTC) - timedelta(days=SCAN_LOOKBACK_DAYS)
        query = build_query(since)
        yielded = 0
        page_token = None
        while True:
            page = await asyncio.to_thread(self._list_page, access_token, query, page_token)
            for msg in page.get("messages", []):
                mid = msg.get("id")
                if not mid:
                    continue
                yield mid
                yielded += 1
                if yielded >= self.max_messages:
                    return
            page_token = page.get("nextPageToken")
            if not page_token:
                return

    def _get_message(self, access_token: str, message_id: str) -> dict:
        try:
            return _gmail_request(
                "GET",
                f"{GMAIL_API}/messages/{message_id}",
                access_token,
                params={"format": "full"},
            )
        except requests.RequestException as e:
            raise _translate(e, f"fetching message {message_id}") from e

    async def fetch_message(self, access_token: str, message_id: str) -> MailMessage:
        data = await asyncio.to_thread(self._get_message, access_token, message_id)
        if not data:
            raise NotFoundError(f"Message {message_id} returned no content")
        return message_from_payload(data)
