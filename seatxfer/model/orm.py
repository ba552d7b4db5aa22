from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    JSON,
)

from ..helpers import now_utc, to_iso


Base = declarative_base()

PENDING = "pending"
PROCESSED = "processed"


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, nullable=False, unique=True)
    password = Column(String, nullable=False)  # <hex scrypt>.<salt>
    email = Column(String(255), nullable=False, unique=True)
    # forwarding alias: <slug>.<12 hex>@ALIAS_DOMAIN
    unique_email = Column(String(255), nullable=False, unique=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False,
                        default=now_utc)
    last_login = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "uniqueEmail": self.unique_email,
            "isAdmin": bool(self.is_admin),
            "createdAt": to_iso(self.created_at),
            "lastLogin": to_iso(self.last_login),
        }


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    token = Column(String, nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False,
                        default=now_utc)
    used_at = Column(DateTime(timezone=True), nullable=True)


class PendingTicket(Base):
    __tablename__ = "pending_tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    recipient_email = Column(String(255), nullable=False)
    message_id = Column(String, nullable=True)
    event_name = Column(Text, nullable=True)
    event_date = Column(DateTime(timezone=True), nullable=True)
    event_time = Column(String, nullable=True)
    venue = Column(Text, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    section = Column(String, nullable=True)
    row = Column(String, nullable=True)
    seat = Column(String, nullable=True)
    email_subject = Column(Text, nullable=True)
    email_from = Column(Text, nullable=True)
    raw_email_data = Column(Text, nullable=True)
    extracted_data = Column(JSON, nullable=True)

    # pending | processed
    status = Column(String(50), nullable=False, default=PENDING)
    created_at = Column(DateTime(timezone=True), nullable=False,
                        default=now_utc)

    __table_args__ = (
        Index("pending_tickets_user_id_idx", "user_id"),
        Index("pending_tickets_status_idx", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "recipientEmail": self.recipient_email,
            "messageId": self.message_id,
            "eventName": self.event_name,
            "eventDate": to_iso(self.event_date),
            "eventTime": self.event_time,
            "venue": self.venue,
            "city": self.city,
            "state": self.state,
            "section": self.section,
            "row": self.row,
            "seat": self.seat,
            "emailSubject": self.email_subject,
            "emailFrom": self.email_from,
            "extractedData": self.extracted_data,
            "status": self.status,
            "createdAt": to_iso(self.created_at),
        }


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    event_name = Column(Text, nullable=True)
    event_date = Column(DateTime(timezone=True), nullable=True)
    venue = Column(Text, nullable=True)
    section = Column(String, nullable=True)
    row = Column(String, nullable=True)
    seat = Column(String, nullable=True)
    asking_price = Column(Integer, nullable=False, default=0)
    # pending | listed | sold
    status = Column(String(50), nullable=False, default=PENDING)
    created_at = Column(DateTime(timezone=True), nullable=False,
                        default=now_utc)

    __table_args__ = (
        Index("tickets_user_id_idx", "user_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "eventName": self.event_name,
            "eventDate": to_iso(self.event_date),
            "venue": self.venue,
            "section": self.section,
            "row": self.row,
            "seat": self.seat,
            "askingPrice": self.asking_price,
            "status": self.status,
            "createdAt": to_iso(self.created_at),
        }


class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    ticket_id = Column(Integer, ForeignKey("tickets.id"), nullable=True)
    amount = Column(Integer, nullable=False)
    buyer_email = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False,
                        default=now_utc)

    __table_args__ = (
        Index("payments_user_id_idx", "user_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "ticketId": self.ticket_id,
            "amount": self.amount,
            "buyerEmail": self.buyer_email,
            "createdAt": to_iso(self.created_at),
        }


class ProcessedMessage(Base):
    __tablename__ = "processed_messages"
    message_id = Column(String, primary_key=True)
    processed_at = Column(DateTime(timezone=True), nullable=False,
                          default=now_utc)
