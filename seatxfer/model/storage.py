from __future__ import annotations
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_utc, as_utc, to_iso
from .orm import (
    User, Ticket, PendingTicket, Payment, PasswordResetToken,
    PENDING, PROCESSED,
)

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

PENDING_FIELDS = (
    "recipient_email", "message_id", "event_name", "event_date",
    "event_time", "venue", "city", "state", "section", "row", "seat",
    "email_subject", "email_from", "raw_email_data", "extracted_data",
)

TICKET_FIELDS = (
    "event_name", "event_date", "venue", "section", "row", "seat",
    "asking_price",
)


class TicketError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@asynccontextmanager
async def _ungated():
    yield


class Storage:
    """All reads and writes of the web app and the mail pipeline.

    Every method runs in its own transaction, behind the DB gate, so a
    single ``AsyncSession`` can be shared by the dependencies of a request.
    """

    def __init__(self, db: AsyncSession, gated: Optional[Gated] = None):
        self.db = db
        self.gated = gated or _ungated

    @asynccontextmanager
    async def _tx(self):
        async with self.gated():
            async with self.db.begin():
                yield self.db

    # ---- users
    async def get_user(self, user_id: int) -> Optional[User]:
        async with self._tx() as db:
            return await db.get(User, user_id)

    async def _one_user(self, *where) -> Optional[User]:
        async with self._tx() as db:
            result = await db.execute(select(User).where(*where))
            return result.scalars().first()

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return await self._one_user(User.email == email.strip().lower())

    async def get_user_by_username(self, username: str) -> Optional[User]:
        return await self._one_user(User.username == username)

    async def get_user_by_alias(self, alias: str) -> Optional[User]:
        return await self._one_user(User.unique_email == alias.strip().lower())

    async def create_user(
        self, *, username: str, password: str, email: str,
        unique_email: str, is_admin: bool = False,
    ) -> User:
        user = User(
            username=username,
            password=password,
            email=email.strip().lower(),
            unique_email=unique_email.lower(),
            is_admin=is_admin,
            created_at=now_utc(),
        )
        async with self._tx() as db:
            db.add(user)
            await db.flush()
        logger.info("created user id=%s username=%s", user.id, username)
        return user

    async def set_password(self, user_id: int, password: str) -> None:
        async with self._tx() as db:
            await db.execute(
                update(User).where(User.id == user_id)
                .values(password=password)
            )

    async def touch_last_login(self, user: User) -> None:
        async with self._tx() as db:
            user.last_login = now_utc()
            db.add(user)

    # ---- tickets
    async def get_tickets(self, user_id: int) -> List[Ticket]:
        async with self._tx() as db:
            result = await db.execute(
                select(Ticket).where(Ticket.user_id == user_id)
                .order_by(Ticket.created_at.desc(), Ticket.id.desc())
            )
            return list(result.scalars().all())

    async def create_ticket(self, user_id: int, fields: Dict[str, Any]) -> Ticket:
        ticket = Ticket(
            user_id=user_id,
            status=PENDING,
            created_at=now_utc(),
            **{k: fields.get(k) for k in TICKET_FIELDS if k in fields},
        )
        if ticket.asking_price is None:
            ticket.asking_price = 0
        async with self._tx() as db:
            db.add(ticket)
            await db.flush()
        return ticket

    async def get_payments(self, user_id: int) -> List[Payment]:
        async with self._tx() as db:
            result = await db.execute(
                select(Payment).where(Payment.user_id == user_id)
                .order_by(Payment.created_at.desc(), Payment.id.desc())
            )
            return list(result.scalars().all())

    async def create_payment(
        self, *, user_id: int, amount: int,
        ticket_id: Optional[int] = None, buyer_email: Optional[str] = None,
    ) -> Payment:
        payment = Payment(
            user_id=user_id, amount=amount, ticket_id=ticket_id,
            buyer_email=buyer_email, created_at=now_utc(),
        )
        async with self._tx() as db:
            db.add(payment)
            await db.flush()
        return payment

    # ---- pending tickets
    async def get_pending_tickets(
        self, user_id: int, status: Optional[str] = None
    ) -> List[PendingTicket]:
        where = [PendingTicket.user_id == user_id]
        if status:
            where.append(PendingTicket.status == status)
        async with self._tx() as db:
            result = await db.execute(
                select(PendingTicket).where(*where)
                .order_by(PendingTicket.created_at.desc(),
                          PendingTicket.id.desc())
            )
            return list(result.scalars().all())

    async def create_pending_tickets(
        self, user_id: int, items: List[Dict[str, Any]]
    ) -> List[PendingTicket]:
        rows = [
            PendingTicket(
                user_id=user_id,
                status=PENDING,
                created_at=now_utc(),
                **{k: item.get(k) for k in PENDING_FIELDS if k in item},
            )
            for item in items
        ]
        async with self._tx() as db:
            db.add_all(rows)
            await db.flush()
        logger.info("created %d pending ticket(s) for user id=%s",
                    len(rows), user_id)
        return rows

    async def confirm_pending_ticket(
        self, pending_id: int, user_id: int, asking_price: int = 0
    ) -> Ticket:
        async with self._tx() as db:
            pending = await db.get(PendingTicket, pending_id)
            if pending is None or pending.user_id != user_id:
                raise TicketError(404, "Pending ticket not found")
            # conditional flip: a concurrent confirm loses here
            result = await db.execute(
                update(PendingTicket)
                .where(PendingTicket.id == pending_id,
                       PendingTicket.status == PENDING)
                .values(status=PROCESSED)
            )
            if result.rowcount != 1:
                raise TicketError(400, "Pending ticket already confirmed")
            ticket = Ticket(
                user_id=user_id,
                event_name=pending.event_name,
                event_date=pending.event_date,
                venue=pending.venue,
                section=pending.section,
                row=pending.row,
                seat=pending.seat,
                asking_price=asking_price,
                status=PENDING,
                created_at=now_utc(),
            )
            db.add(ticket)
            await db.flush()
        logger.info("confirmed pending ticket id=%s -> ticket id=%s",
                    pending_id, ticket.id)
        return ticket

    # ---- admin reporting
    async def get_all_tickets(self) -> List[Dict[str, Any]]:
        async with self._tx() as db:
            result = await db.execute(
                select(Ticket, User.username)
                .join(User, User.id == Ticket.user_id)
                .order_by(Ticket.id)
            )
            rows = result.all()
        items = []
        for ticket, username in rows:
            item = ticket.to_dict()
            item["userName"] = username
            items.append(item)
        return items

    async def get_all_users(self) -> List[Dict[str, Any]]:
        ticket_counts = (
            select(Ticket.user_id, func.count(Ticket.id).label("n"))
            .group_by(Ticket.user_id).subquery()
        )
        revenue = (
            select(Payment.user_id, func.sum(Payment.amount).label("total"))
            .group_by(Payment.user_id).subquery()
        )
        async with self._tx() as db:
            result = await db.execute(
                select(User, ticket_counts.c.n, revenue.c.total)
                .outerjoin(ticket_counts, ticket_counts.c.user_id == User.id)
                .outerjoin(revenue, revenue.c.user_id == User.id)
                .order_by(User.id)
            )
            rows = result.all()
        return [
            {
                "id": user.id,
                "username": user.username,
                "email": user.email,
                "ticketCount": int(n or 0),
                "totalRevenue": int(total or 0),
                "createdAt": to_iso(user.created_at),
                "lastLogin": to_iso(user.last_login),
            }
            for user, n, total in rows
        ]

    async def get_all_sales(self) -> List[Dict[str, Any]]:
        async with self._tx() as db:
            result = await db.execute(
                select(Payment, Ticket.event_name, User.username)
                .join(User, User.id == Payment.user_id)
                .outerjoin(Ticket, Ticket.id == Payment.ticket_id)
                .order_by(Payment.id)
            )
            rows = result.all()
        return [
            {
                "id": payment.id,
                "ticketId": payment.ticket_id,
                "eventName": event_name,
                "salePrice": payment.amount,
                "saleDate": to_iso(payment.created_at),
                "buyerEmail": payment.buyer_email,
                "sellerUsername": username,
            }
            for payment, event_name, username in rows
        ]

    # ---- password reset
    async def create_reset_token(
        self, user_id: int, ttl_hours: int
    ) -> PasswordResetToken:
        row = PasswordResetToken(
            user_id=user_id,
            token=secrets.token_hex(32),
            expires_at=now_utc() + timedelta(hours=ttl_hours),
            created_at=now_utc(),
        )
        async with self._tx() as db:
            db.add(row)
            await db.flush()
        return row

    async def consume_reset_token(self, token: str, password: str) -> bool:
        """Set ``password`` for the token's user. False if the token is
        unknown, used or expired."""
        async with self._tx() as db:
            result = await db.execute(
                select(PasswordResetToken)
                .where(PasswordResetToken.token == token)
            )
            row = result.scalars().first()
            if row is None or row.used_at is not None:
                return False
            if as_utc(row.expires_at) <= now_utc():
                return False
            used = await db.execute(
                update(PasswordResetToken)
                .where(PasswordResetToken.id == row.id,
                       PasswordResetToken.used_at.is_(None))
                .values(used_at=now_utc())
            )
            if used.rowcount != 1:
                return False
            await db.execute(
                update(User).where(User.id == row.user_id)
                .values(password=password)
            )
        logger.info("password reset for user id=%s", row.user_id)
        return True
