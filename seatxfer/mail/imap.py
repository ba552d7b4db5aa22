from __future__ import annotations

import asyncio
import email
import imaplib
import logging
from datetime import date, timedelta
from email import policy
from email.message import EmailMessage
from email.utils import parsedate_to_datetime
from typing import List, Optional

from .source import InboundEmail, MailSource, MailSourceError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30.0


def imap_since(day: date) -> str:
    # IMAP wants 19-Oct-2026, month names in English regardless of locale
    months = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
              "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
    return f"{day.day:02d}-{months[day.month - 1]}-{day.year}"


def _body(msg: EmailMessage, subtype: str) -> str:
    part = msg.get_body(preferencelist=(subtype,))
    if part is None:
        return ""
    try:
        return part.get_content()
    except (LookupError, UnicodeDecodeError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def parse_rfc822(raw: bytes, fallback_id: str) -> InboundEmail:
    msg = email.message_from_bytes(raw, policy=policy.default)
    headers = [(name, str(value)) for name, value in msg.items()]

    received = None
    if msg.get("Date"):
        try:
            received = parsedate_to_datetime(str(msg["Date"]))
        except (TypeError, ValueError):
            received = None

    message_id = str(msg.get("Message-ID") or "").strip() or fallback_id
    return InboundEmail(
        source="imap",
        message_id=f"imap:{message_id}",
        subject=str(msg.get("Subject") or ""),
        from_address=str(msg.get("From") or ""),
        to_address=str(msg.get("To") or ""),
        date=received,
        headers=headers,
        text=_body(msg, "plain"),
        html=_body(msg, "html"),
    )


def _uid_validity(conn: imaplib.IMAP4) -> str:
    typ, data = conn.response("UIDVALIDITY")
    if typ == "UIDVALIDITY" and data and data[0]:
        return data[0].decode()
    return "0"


class ImapSource(MailSource):
    name = "imap"

    def __init__(self, *, host: str, port: int, user: str, password: str,
                 tls: bool = True, mailbox: str = "INBOX") -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.tls = tls
        self.mailbox = mailbox

    def is_authenticated(self) -> bool:
        return bool(self.host and self.user and self.password)

    def auth_url(self, state: str) -> Optional[str]:
        return None

    async def handle_callback(self, code: str) -> None:
        raise MailSourceError("IMAP mailboxes use password authentication")

    def _connect(self) -> imaplib.IMAP4:
        logger.info("connecting to IMAP %s:%d as %s", self.host, self.port,
                    self.user)
        if self.tls:
            conn = imaplib.IMAP4_SSL(self.host, self.port,
                                     timeout=CONNECT_TIMEOUT)
        else:
            conn = imaplib.IMAP4(self.host, self.port,
                                 timeout=CONNECT_TIMEOUT)
        conn.login(self.user, self.password)
        return conn

    def _fetch_sync(self) -> List[InboundEmail]:
        try:
            conn = self._connect()
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailSourceError(f"IMAP connect failed: {e}") from e

        emails: List[InboundEmail] = []
        try:
            typ, _ = conn.select(self.mailbox)
            if typ != "OK":
                raise MailSourceError(f"cannot open mailbox {self.mailbox}")
            validity = _uid_validity(conn)

            since = imap_since(date.today() - timedelta(days=1))
            # UIDs, unlike sequence numbers, survive expunges between polls
            typ, data = conn.uid("SEARCH", "UNSEEN", "SINCE", since)
            if typ != "OK":
                raise MailSourceError("IMAP search failed")

            for uid in (data[0] or b"").split():
                # PEEK leaves \Seen alone; dedupe is the processed store's job
                typ, parts = conn.uid("FETCH", uid, "(BODY.PEEK[])")
                if typ != "OK" or not parts or not isinstance(parts[0], tuple):
                    logger.warning("IMAP fetch failed for uid %s", uid)
                    continue
                emails.append(parse_rfc822(
                    parts[0][1],
                    f"{self.user}/{self.mailbox}/{validity}/{uid.decode()}",
                ))
        except imaplib.IMAP4.error as e:
            raise MailSourceError(f"IMAP error: {e}") from e
        finally:
            try:
                conn.logout()
            except (imaplib.IMAP4.error, OSError):
                pass
        return emails

    async def fetch_recent(self) -> List[InboundEmail]:
        return await asyncio.to_thread(self._fetch_sync)
