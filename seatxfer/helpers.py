import hmac
import re
from datetime import datetime, timezone
from typing import Optional

from .config import ALIAS_DOMAIN


# ----------------------------
# Helpers
# ----------------------------
def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we store is UTC
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime | None) -> Optional[str]:
    if dt is None:
        return None
    return as_utc(dt).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed). Raises ValueError."""
    if not value:
        return None
    value = str(value).strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


# per-user forwarding aliases: <slug>.<12 hex>@ALIAS_DOMAIN
ALIAS_RE = re.compile(
    r"[a-zA-Z0-9._%+-]+@" + re.escape(ALIAS_DOMAIN)
    + r"(?![a-zA-Z0-9-]|\.[a-zA-Z0-9])",
    re.IGNORECASE,
)


def find_aliases(text: Optional[str]) -> list[str]:
    if not text:
        return []
    return [m.group(0).lower() for m in ALIAS_RE.finditer(text)]
