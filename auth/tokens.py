"""
auth/tokens.py -- Password hashing and API key utilities.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). The _DUMMY_HASH
       constant enables timing equalization in authenticate_user() so response
       time does not reveal whether a username exists.

  API keys: secrets.token_hex(32) gives 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, raw_key) so lookup is O(1); bcrypt's
       intentional slowness is unnecessary for keys of that strength.

  SECRET_KEY: sourced from core.config.get_settings(), which validates it at
       startup (auto-generated in DEBUG mode, required and >= 32 chars
       otherwise).

Layer rule: no imports from api/ or credentials/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import TYPE_CHECKING

import bcrypt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import LocalUserStore

logger = logging.getLogger("vpnwarden.auth")

_settings = get_settings()

API_KEY_PREFIX = "vw_"


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input at 72 bytes; the API layer caps passwords at 255
    characters and the CLI reads them interactively.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the database.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("vpnwarden_timing_dummy")


def authenticate_user(store: LocalUserStore, username: str, password: str) -> User | None:
    """Authenticate a local username/password with timing equalization.

    bcrypt always runs, against _DUMMY_HASH when the user does not exist, so
    response time does not leak which usernames are valid.

    Returns the User on success, None on any failure.
    """
    user = store.get_by_username(username)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


def generate_api_key() -> str:
    """Generate a new API key in the format vw_<64 hex chars>."""
    return f"{API_KEY_PREFIX}{secrets.token_hex(32)}"


def hash_api_key(raw_key: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_key) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_key.encode(),
        hashlib.sha256,
    ).hexdigest()


def secrets_match(presented: str, expected: str) -> bool:
    """Constant-time comparison for shared secrets. An empty expected value never matches."""
    if not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
