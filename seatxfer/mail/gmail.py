from __future__ import annotations

import asyncio
import base64
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from .source import InboundEmail, MailSource, MailSourceError, NotAuthenticated

logger = logging.getLogger(__name__)

# Read-only Gmail scope
SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]

TOKEN_URI = "https://oauth2.googleapis.com/token"


def _b64url_decode(data: str) -> str:
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _walk_parts(payload: dict) -> Iterable[dict]:
    yield payload
    for part in payload.get("parts", []) or []:
        yield from _walk_parts(part)


def extract_bodies(payload: dict) -> Tuple[str, str]:
    """
    Return ``(text, html)`` for a Gmail message payload.

    Single-part messages carry their body on the payload itself; multipart
    ones are walked depth-first and the first part of each type wins.
    """
    text, html = "", ""
    for part in _walk_parts(payload):
        if part.get("filename"):
            continue
        data = (part.get("body") or {}).get("data")
        if not data:
            continue
        mime = (part.get("mimeType") or "").lower()
        if mime == "text/html" and not html:
            html = _b64url_decode(data)
        elif mime == "text/plain" and not text:
            text = _b64url_decode(data)
    return text, html


def normalize_message(msg: dict) -> InboundEmail:
    """
    Convert a Gmail message resource (format=full) into an InboundEmail.
    """
    payload = msg.get("payload", {}) or {}
    headers = [
        (h.get("name", ""), h.get("value", ""))
        for h in payload.get("headers", []) or []
    ]
    internal_date_ms = int(msg.get("internalDate", "0") or 0)
    received_at = datetime.fromtimestamp(
        internal_date_ms / 1000.0, tz=timezone.utc
    )
    text, html = extract_bodies(payload)

    email = InboundEmail(
        source="gmail",
        message_id=f"gmail:{msg.get('id', '')}",
        date=received_at,
        headers=headers,
        text=text,
        html=html,
    )
    email.subject = email.header("Subject")
    email.from_address = email.header("From")
    email.to_address = email.header("To")
    return email


def credentials_from_info(
    info: dict, client_id: str, client_secret: str
) -> Credentials:
    """Accept both google-auth ``to_json()`` output and the bare token dict
    returned by other OAuth clients (``access_token``/``refresh_token``)."""
    if "access_token" in info and "token" not in info:
        expiry = None
        if info.get("expiry_date"):
            # google-auth compares against naive UTC
            expiry = datetime.fromtimestamp(
                int(info["expiry_date"]) / 1000.0, tz=timezone.utc
            ).replace(tzinfo=None)
        return Credentials(
            token=info.get("access_token"),
            refresh_token=info.get("refresh_token"),
            token_uri=TOKEN_URI,
            client_id=client_id,
            client_secret=client_secret,
            scopes=SCOPES,
            expiry=expiry,
        )
    info = dict(info)
    info.setdefault("client_id", client_id)
    info.setdefault("client_secret", client_secret)
    return Credentials.from_authorized_user_info(info, SCOPES)


class GmailSource(MailSource):
    name = "gmail"

    def __init__(
        self, *, client_id: str, client_secret: str, redirect_uri: str,
        token_json: str = "", token_file: str = "gmail_token.json",
        query: str = "", max_results: int = 20,
    ) -> None:
        if not client_id or not client_secret:
            raise MailSourceError("Google OAuth credentials are required")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.token_path = Path(token_file)
        self.query = query
        self.max_results = max_results
        self.creds: Optional[Credentials] = self._load_credentials(token_json)

    # ---- credentials
    def _load_credentials(self, token_json: str) -> Optional[Credentials]:
        raw = token_json
        if not raw and self.token_path.exists():
            raw = self.token_path.read_text()
        if not raw:
            logger.info("no stored Gmail token; authorization required")
            return None
        try:
            return credentials_from_info(
                json.loads(raw), self.client_id, self.client_secret
            )
        except (ValueError, KeyError) as e:
            logger.error("stored Gmail token is unusable: %s", e)
            return None

    def _save_credentials(self) -> None:
        try:
            self.token_path.write_text(self.creds.to_json())
        except OSError as e:
            logger.warning("could not persist Gmail token to %s: %s",
                           self.token_path, e)

    def _flow(self) -> Flow:
        client_config = {"web": {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": TOKEN_URI,
            "redirect_uris": [self.redirect_uri],
        }}
        # code exchange happens on a fresh Flow in the callback, so no PKCE
        return Flow.from_client_config(
            client_config, scopes=SCOPES, redirect_uri=self.redirect_uri,
            autogenerate_code_verifier=False,
        )

    def is_authenticated(self) -> bool:
        if self.creds is None:
            return False
        return bool(self.creds.valid or self.creds.refresh_token)

    def auth_url(self, state: str) -> Optional[str]:
        url, _ = self._flow().authorization_url(
            access_type="offline", prompt="consent", state=state,
        )
        return url

    async def handle_callback(self, code: str) -> None:
        def _exchange() -> Credentials:
            flow = self._flow()
            flow.fetch_token(code=code)
            return flow.credentials

        try:
            self.creds = await asyncio.to_thread(_exchange)
        except Exception as e:
            raise MailSourceError(f"Gmail code exchange failed: {e}") from e
        self._save_credentials()
        logger.info("Gmail authorization stored")

    def _ensure_fresh(self) -> Credentials:
        creds = self.creds
        if creds is None:
            raise NotAuthenticated(None)
        if not creds.valid and creds.refresh_token:
            logger.info("Refreshing Gmail token")
            try:
                creds.refresh(Request())
            except RefreshError as e:
                raise MailSourceError(f"Gmail token refresh failed: {e}") from e
            self._save_credentials()
        if not creds.valid:
            raise NotAuthenticated(None)
        return creds

    # ---- reading
    def _fetch_sync(self) -> List[InboundEmail]:
        creds = self._ensure_fresh()
        service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        list_kwargs = {"userId": "me", "maxResults": self.max_results}
        if self.query:
            list_kwargs["q"] = self.query

        logger.info("polling Gmail query=%r max=%d", self.query,
                    self.max_results)
        try:
            resp = service.users().messages().list(**list_kwargs).execute()
            emails: List[InboundEmail] = []
            for meta in resp.get("messages", []) or []:
                msg = service.users().messages().get(
                    userId="me", id=meta["id"], format="full"
                ).execute()
                emails.append(normalize_message(msg))
        except HttpError as e:
            raise MailSourceError(f"Gmail API error: {e}") from e
        return emails

    async def fetch_recent(self) -> List[InboundEmail]:
        return await asyncio.to_thread(self._fetch_sync)
