"""
auth/validator.py -- The single credential-validation capability.

Whatever backend authenticates users (local database, LDAP, RADIUS, SAML),
the rest of VPNWarden only needs validate_credentials(user, password) ->
Identity | None. DbCredentialValidator is the local-database backend; other
backends implement the same protocol.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.models import Identity
from auth.store import LocalUserStore
from auth.tokens import authenticate_user

logger = logging.getLogger("vpnwarden.auth")


class CredentialValidator(Protocol):
    def validate_credentials(self, username: str, password: str) -> Identity | None: ...


class DbCredentialValidator:
    def __init__(self, store: LocalUserStore) -> None:
        self.store = store

    def validate_credentials(self, username: str, password: str) -> Identity | None:
        user = authenticate_user(self.store, username, password)
        if user is None:
            logger.info("Rejected credentials for '%s'", username)
            return None
        return Identity(user_id=user.username, is_admin=user.role == "admin")
