from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from .. import config

logger = logging.getLogger(__name__)


class MailSourceError(Exception):
    """Raised when a mailbox cannot be reached or read."""


class NotAuthenticated(MailSourceError):
    def __init__(self, auth_url: Optional[str] = None) -> None:
        super().__init__("mail source needs authorization")
        self.auth_url = auth_url


@dataclass
class InboundEmail:
    """
    Normalized representation of one mailbox message, whatever it came from.

    This is what the scraper resolves to a user and parses into tickets.
    """

    source: str           # 'gmail' | 'imap' | 'webhook'
    message_id: str
    subject: str = ""
    from_address: str = ""
    to_address: str = ""
    date: Optional[datetime] = None
    headers: List[Tuple[str, str]] = field(default_factory=list)
    text: str = ""
    html: str = ""

    def header(self, name: str) -> str:
        for h_name, value in self.headers:
            if h_name.lower() == name.lower():
                return value
        return ""

    def raw(self) -> str:
        """Compact text form kept on the pending ticket for reference."""
        lines = [f"{name}: {value}" for name, value in self.headers]
        lines.append("")
        lines.append(self.text or self.html)
        return "\n".join(lines)


# ----------------------------
# Mail Source Interface
# ----------------------------
class MailSource(ABC):
    name: str = ""

    @abstractmethod
    def is_authenticated(self) -> bool: ...

    # consent URL for OAuth sources, None when no browser step is needed
    @abstractmethod
    def auth_url(self, state: str) -> Optional[str]: ...

    @abstractmethod
    async def handle_callback(self, code: str) -> None: ...

    @abstractmethod
    async def fetch_recent(self) -> List[InboundEmail]: ...


def build_source() -> Optional[MailSource]:
    kind = config.MAIL_SOURCE
    if not kind:
        if config.GOOGLE_CLIENT_ID and config.GOOGLE_CLIENT_SECRET:
            kind = "gmail"
        elif config.EMAIL_HOST and config.EMAIL_USER:
            kind = "imap"

    if kind == "gmail":
        from .gmail import GmailSource
        return GmailSource(
            client_id=config.GOOGLE_CLIENT_ID,
            client_secret=config.GOOGLE_CLIENT_SECRET,
            redirect_uri=config.GOOGLE_REDIRECT_URI,
            token_json=config.GOOGLE_TOKEN,
            token_file=config.GMAIL_TOKEN_FILE,
            query=config.GMAIL_QUERY,
            max_results=config.GMAIL_MAX_RESULTS,
        )
    if kind == "imap":
        from .imap import ImapSource
        return ImapSource(
            host=config.EMAIL_HOST,
            port=config.EMAIL_PORT,
            user=config.EMAIL_USER,
            password=config.EMAIL_PASSWORD,
            tls=config.EMAIL_TLS,
        )
    if kind:
        raise ValueError(f"Unknown MAIL_SOURCE: {kind!r}")
    logger.info("mail ingestion disabled: no Gmail or IMAP configuration")
    return None
