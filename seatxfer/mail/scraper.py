from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from ..helpers import now_utc, find_aliases, parse_iso
from ..infra.timings import timeit
from ..model import PendingTicket, Storage, User
from .parser import ExtractedTicket, parse_event_date, parse_ticket_email
from .recipient import recipient_for
from .source import InboundEmail, MailSource, NotAuthenticated

logger = logging.getLogger(__name__)

# raw mail kept on the pending row is capped
RAW_EMAIL_LIMIT = 100_000

# async context managers yielding a Storage / a processed store
StorageFactory = Callable[[], AsyncIterator[Storage]]
StoreFactory = Callable[[], Any]


@dataclass
class ScrapeResult:
    seen: int = 0
    skipped: int = 0
    created: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {
            "seen": self.seen, "skipped": self.skipped,
            "created": self.created, "errors": self.errors,
        }


def pending_fields(email: InboundEmail, recipient: str,
                   ticket: ExtractedTicket) -> Dict[str, Any]:
    return {
        "recipient_email": recipient,
        "message_id": email.message_id,
        "event_name": ticket.event_name,
        "event_date": ticket.event_date,
        "event_time": ticket.event_time,
        "venue": ticket.venue,
        "city": ticket.city,
        "state": ticket.state,
        "section": ticket.section,
        "row": ticket.row,
        "seat": ticket.seat,
        "email_subject": email.subject,
        "email_from": email.from_address,
        "raw_email_data": email.raw()[:RAW_EMAIL_LIMIT],
        "extracted_data": ticket.to_dict(),
    }


class EmailScraper:
    """
    Polls a MailSource and stages what it finds as pending tickets.

    Each message is claimed in the processed store before anything is
    written, so overlapping polls (or a webhook delivering the same mail)
    never stage a message twice.
    """

    def __init__(self, source: Optional[MailSource],
                 storage_factory: StorageFactory,
                 store_factory: StoreFactory) -> None:
        self.source = source
        self.storage_factory = storage_factory
        self.store_factory = store_factory
        self.last_checked: Optional[datetime] = None
        self.last_result: Optional[ScrapeResult] = None
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    # ---- monitoring loop
    @property
    def is_monitoring(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval: float) -> None:
        if self.source is None:
            raise RuntimeError("no mail source configured")
        if not self.source.is_authenticated():
            raise NotAuthenticated()
        if self.is_monitoring:
            return
        logger.info("starting %s monitor every %.0fs", self.source.name,
                    interval)
        self._task = asyncio.create_task(self._run(interval))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("mail monitor stopped")

    async def _run(self, interval: float) -> None:
        while True:
            try:
                await self.scrape_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                # keep polling; the next cycle may succeed
                logger.exception("mail poll cycle failed")
            await asyncio.sleep(interval)

    # ---- one cycle
    async def scrape_once(self) -> ScrapeResult:
        if self.source is None:
            raise RuntimeError("no mail source configured")
        async with self._lock:
            self.last_checked = now_utc()
            async with timeit("mail.fetch"):
                emails = await self.source.fetch_recent()

            result = ScrapeResult()
            async with timeit("mail.ingest"):
                for email in emails:
                    result.seen += 1
                    try:
                        created = await self.ingest(email)
                    except Exception:
                        result.errors += 1
                        logger.exception("failed to ingest message %s",
                                         email.message_id)
                        continue
                    if created is None:
                        result.skipped += 1
                    else:
                        result.created += len(created)
            self.last_result = result
        logger.info("mail poll: %s", result.to_dict())
        return result

    async def ingest(
        self, email: InboundEmail,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> Optional[List[PendingTicket]]:
        """Stage one message. None when it was skipped (already processed,
        no alias, unknown alias)."""
        async with self.store_factory() as store:
            if not await store.claim(email.message_id):
                logger.debug("skip %s: already processed", email.message_id)
                return None
            try:
                return await self._stage(email, overrides)
            except Exception:
                # let the next cycle retry it
                await store.release(email.message_id)
                raise

    async def _stage(
        self, email: InboundEmail, overrides: Optional[Dict[str, Any]]
    ) -> Optional[List[PendingTicket]]:
        recipient = recipient_for(email)
        if recipient is None:
            logger.info("skip %s: no alias recipient (to=%r)",
                        email.message_id, email.to_address)
            return None

        async with self.storage_factory() as storage:
            user = await storage.get_user_by_alias(recipient)
            if user is None:
                logger.info("skip %s: no user for alias %s",
                            email.message_id, recipient)
                return None

            tickets = parse_ticket_email(
                html=email.html, text=email.text, subject=email.subject,
                recipient_email=recipient,
            )
            if overrides:
                tickets = [_apply_overrides(t, overrides) for t in tickets]

            rows = await storage.create_pending_tickets(
                user.id, [pending_fields(email, recipient, t) for t in tickets]
            )
        logger.info("staged %d ticket(s) from %s for %s", len(rows),
                    email.message_id, user.username)
        return rows

    # ---- webhook
    async def ingest_webhook(
        self, payload: Dict[str, Any]
    ) -> List[PendingTicket]:
        to = payload.get("to") or ""
        aliases = find_aliases(to)
        if not aliases:
            raise LookupError(f"no alias address in {to!r}")

        async with self.storage_factory() as storage:
            user = await storage.get_user_by_alias(aliases[0])
        if user is None:
            raise LookupError(f"no user for alias {aliases[0]}")

        email = webhook_email(payload)
        rows = await self.ingest(email, overrides=payload.get("parsed"))
        return rows or []

    # ---- preview for the admin monitor
    async def recent_emails(self, limit: int = 20) -> List[Dict[str, Any]]:
        if self.source is None or not self.source.is_authenticated():
            return []
        emails = await self.source.fetch_recent()
        out = []
        async with self.storage_factory() as storage:
            for email in emails:
                recipient = recipient_for(email)
                if recipient is None:
                    continue
                user: Optional[User] = await storage.get_user_by_alias(
                    recipient
                )
                tickets = parse_ticket_email(
                    html=email.html, text=email.text, subject=email.subject,
                    recipient_email=recipient,
                )
                out.append({
                    "messageId": email.message_id,
                    "subject": email.subject,
                    "from": email.from_address,
                    "date": email.date.isoformat() if email.date else None,
                    "recipientEmail": recipient,
                    "userName": user.username if user else "Unknown User",
                    "ticketInfo": tickets[0].to_dict() if tickets else None,
                })
                if len(out) >= limit:
                    break
        return out


def webhook_email(payload: Dict[str, Any]) -> InboundEmail:
    """Inbound-parse webhook body -> InboundEmail."""
    headers = []
    for name in ("to", "from", "subject"):
        if payload.get(name):
            headers.append((name.capitalize(), str(payload[name])))
    for name, value in (payload.get("headers") or {}).items():
        headers.append((name, str(value)))
    message_id = (payload.get("messageId")
                  or f"webhook:{uuid.uuid4().hex}")
    date = None
    if payload.get("date"):
        try:
            date = parse_iso(payload["date"])
        except ValueError:
            date = None
    return InboundEmail(
        source="webhook",
        message_id=message_id,
        subject=payload.get("subject") or "",
        from_address=payload.get("from") or "",
        to_address=payload.get("to") or "",
        date=date,
        headers=headers,
        text=payload.get("text") or "",
        html=payload.get("html") or "",
    )


_OVERRIDE_KEYS = {
    "eventName": "event_name",
    "venue": "venue",
    "city": "city",
    "state": "state",
    "section": "section",
    "row": "row",
    "seat": "seat",
    "eventTime": "event_time",
}


def _apply_overrides(ticket: ExtractedTicket,
                     parsed: Dict[str, Any]) -> ExtractedTicket:
    # fields already parsed by the mail provider win over our heuristics
    for key, attr in _OVERRIDE_KEYS.items():
        if parsed.get(key):
            setattr(ticket, attr, str(parsed[key]))
    if parsed.get("date"):
        ticket.event_date_text = str(parsed["date"])
        ticket.event_date = (parse_event_date(ticket.event_date_text)
                             or ticket.event_date)
    if parsed.get("price") is not None:
        try:
            ticket.price = float(parsed["price"])
        except (TypeError, ValueError):
            pass
    return ticket
