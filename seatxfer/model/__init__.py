from .orm import (  # noqa: F401
    Base, User, PasswordResetToken, PendingTicket, Ticket, Payment,
    ProcessedMessage, PENDING, PROCESSED,
)
from .storage import Storage, TicketError  # noqa: F401
