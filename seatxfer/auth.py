from __future__ import annotations
import hashlib
import logging
import re
import secrets
from typing import Optional

from . import config
from .helpers import ct_equal
from .model import Storage, User

logger = logging.getLogger(__name__)

# scrypt cost parameters; stored hashes are "<hex key>.<hex salt>"
SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_DKLEN = 64

ADMIN_USERNAME = "admin"

FORBIDDEN_RESTRICTED = "Forbidden - Admin access restricted"
FORBIDDEN_REQUIRED = "Forbidden - Admin access required"


def _scrypt(password: str, salt: str) -> bytes:
    return hashlib.scrypt(
        password.encode("utf-8"), salt=salt.encode("utf-8"),
        n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P, dklen=SCRYPT_DKLEN,
        maxmem=64 * 1024 * 1024,
    )


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    return f"{_scrypt(password, salt).hex()}.{salt}"


def verify_password(password: str, stored: Optional[str]) -> bool:
    if not stored or "." not in stored:
        return False
    hashed, salt = stored.rsplit(".", 1)
    if not hashed or not salt:
        return False
    return ct_equal(_scrypt(password, salt).hex(), hashed)


def _slug(username: str) -> str:
    slug = re.sub(r"[^a-z0-9._-]", "", (username or "").lower())
    return slug or "user"


def generate_unique_email(username: str) -> str:
    """Per-user forwarding alias, e.g. ``jane.3f9a0c1b2d4e@seatxfer.com``."""
    return f"{_slug(username)}.{secrets.token_hex(6)}@{config.ALIAS_DOMAIN}"


def is_admin_email(email: Optional[str]) -> bool:
    return (email or "").strip().lower() == config.ADMIN_EMAIL


def is_reserved_username(username: Optional[str]) -> bool:
    return (username or "").strip().lower() == ADMIN_USERNAME


async def ensure_admin(storage: Storage) -> User:
    """The admin account, created on first use."""
    user = await storage.get_user_by_email(config.ADMIN_EMAIL)
    if user is not None:
        return user
    username = ADMIN_USERNAME
    if await storage.get_user_by_username(username) is not None:
        # accounts created before the name was reserved keep theirs
        username = f"{ADMIN_USERNAME}-{secrets.token_hex(3)}"
    user = await storage.create_user(
        username=username,
        password=hash_password(config.ADMIN_PASSWORD),
        email=config.ADMIN_EMAIL,
        unique_email=generate_unique_email(username),
        is_admin=True,
    )
    logger.info("admin account created for %s", config.ADMIN_EMAIL)
    return user


async def authenticate(
    storage: Storage, email: str, password: str
) -> Optional[User]:
    """The user for ``email``/``password`` or None. Touches last_login."""
    email = (email or "").strip().lower()
    if is_admin_email(email) and ct_equal(password, config.ADMIN_PASSWORD):
        user = await ensure_admin(storage)
    else:
        user = await storage.get_user_by_email(email)
        if user is None or not verify_password(password, user.password):
            logger.info("failed login for %s", email)
            return None
    await storage.touch_last_login(user)
    return user


def admin_denial(user: User) -> Optional[str]:
    """Why ``user`` may not use admin endpoints, or None if they may.

    Admin rights are tied to the configured admin mailbox: an is_admin flag
    on any other account is not enough.
    """
    if not is_admin_email(user.email):
        return FORBIDDEN_RESTRICTED
    if not user.is_admin:
        return FORBIDDEN_REQUIRED
    return None
