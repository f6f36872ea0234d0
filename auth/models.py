"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Same approach as
credentials/models.py -- dataclasses own domain shape; stores and routes do
the work.

Layer rule: no imports from api/ or credentials/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """A local account that can sign in to the admin API.

    username is the same identifier the credential store uses as user_id,
    so an admin's own VPN configurations and their local account line up.
    """

    username: str
    role: str  # "admin" or "user"
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    is_active: bool = True


@dataclass
class ApiKey:
    """A long-lived credential for the admin API.

    key_hash is HMAC-SHA256(SECRET_KEY, raw_key); the raw key is returned once
    at creation and never stored. key_prefix (first 12 chars) is kept for
    display only.
    """

    user_id: int
    name: str
    key_hash: str
    key_prefix: str
    id: int | None = None
    created_at: str | None = None
    last_used: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class Identity:
    """The result of a successful credential validation, whatever the backend."""

    user_id: str
    is_admin: bool = False
