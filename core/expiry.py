"""
core/expiry.py -- Liveness rules for certificates, peers and authorizations.

Certificates carry an explicit validity window written at issuance. Peers
and OAuth authorizations only carry a creation time; their expiry is derived
at evaluation time from the currently configured session expiry, so a policy
change takes effect on the next pass without rewriting any rows.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from core.config import now_utc


class ExpiryPolicy:
    def __init__(self, session_expiry: timedelta, clock: Callable[[], datetime] = now_utc) -> None:
        self.session_expiry = session_expiry
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def peer_cutoff(self, now: Optional[datetime] = None) -> datetime:
        """Peers created at or before this instant are expired."""
        return (now or self.now()) - self.session_expiry

    def peer_expires_at(self, created_at: datetime) -> datetime:
        return created_at + self.session_expiry

    def is_peer_live(self, created_at: datetime, now: Optional[datetime] = None) -> bool:
        return self.peer_expires_at(created_at) > (now or self.now())

    def is_cert_live(self, valid_from: datetime, valid_to: datetime, now: Optional[datetime] = None) -> bool:
        now = now or self.now()
        return valid_from <= now < valid_to

    def is_authorization_live(self, auth_time: datetime, now: Optional[datetime] = None) -> bool:
        return auth_time + self.session_expiry > (now or self.now())
