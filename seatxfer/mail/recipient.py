"""Work out which forwarding alias a message was meant for.

Forwarded mail rarely keeps the alias in ``To``: providers rewrite headers,
users forward from their own address, and relays stack ``Received`` lines.
We look in the places an alias survives, most trustworthy first.
"""
from __future__ import annotations

from typing import Iterable, Optional, Tuple

from ..helpers import find_aliases

# header precedence for the original envelope recipient
RECIPIENT_HEADERS = (
    "X-Original-To",
    "Delivered-To",
    "X-Forwarded-To",
    "To",
    "Original-To",
)


def extract_original_recipient(
    headers: Iterable[Tuple[str, str]],
    body: str = "",
    subject: str = "",
) -> Optional[str]:
    headers = list(headers)
    by_name: dict[str, list[str]] = {}
    for name, value in headers:
        by_name.setdefault(name.lower(), []).append(value or "")

    for name in RECIPIENT_HEADERS:
        for value in by_name.get(name.lower(), []):
            found = find_aliases(value)
            if found:
                return found[0]

    for value in by_name.get("received", []):
        found = find_aliases(value)
        if found:
            return found[0]

    found = find_aliases(body)
    if found:
        return found[0]

    found = find_aliases(subject)
    if found:
        return found[0]
    return None


def recipient_for(email) -> Optional[str]:
    """Resolve the alias of an InboundEmail (plain text body preferred)."""
    return extract_original_recipient(
        email.headers,
        body=email.text or email.html,
        subject=email.subject,
    )
