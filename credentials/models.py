"""
credentials/models.py -- Domain dataclasses for the VPNWarden credential store.

These are pure data containers with zero logic. Liveness rules live in
core/expiry.py, persistence in credentials/store.py.

Timestamps are timezone-aware UTC datetimes. The store serializes them as
ISO 8601 strings (core.config.to_iso) and parses them back in the row mappers.

id is None before the record is written to the database.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class Peer:
    """A WireGuard client key + address pair issued to a user.

    client_id / auth_key identify the OAuth client and the grant that
    requested the configuration. Both are None for configurations created
    through the portal itself.
    """

    user_id: str
    profile_id: str
    display_name: str
    public_key: str
    ip_four: str
    ip_six: str
    created_at: datetime
    client_id: Optional[str] = None
    auth_key: Optional[str] = None
    id: Optional[int] = None


@dataclass
class Certificate:
    """An OpenVPN client certificate, identified by its common name."""

    common_name: str
    user_id: str
    profile_id: str
    display_name: str
    valid_from: datetime
    valid_to: datetime
    client_id: Optional[str] = None
    auth_key: Optional[str] = None
    id: Optional[int] = None


@dataclass
class ConnectionLogEntry:
    """One VPN session as reported by a node.

    disconnected_at is None while the session is open. client_lost is set
    when the entry was force-closed because a new session claimed the same
    addresses before a disconnect was ever reported.
    """

    profile_id: str
    common_name: str
    ip_four: str
    ip_six: str
    connected_at: datetime
    user_id: Optional[str] = None
    disconnected_at: Optional[datetime] = None
    bytes_transferred: int = 0
    client_lost: bool = False
    id: Optional[int] = None


@dataclass
class Authorization:
    """A user's consent for one OAuth client application."""

    auth_key: str
    user_id: str
    client_id: str
    scope: str
    auth_time: datetime


@dataclass
class PortalUser:
    user_id: str
    created_at: datetime
    is_disabled: bool = False


@dataclass
class UserLogEntry:
    user_id: str
    level: str  # "info" | "notice" | "warning"
    message: str
    date_time: datetime
    id: Optional[int] = None
