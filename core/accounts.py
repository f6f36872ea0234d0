"""
core/accounts.py -- Account-level administrative actions.

Each action runs its cascading revocation to completion before returning,
so when the API or CLI reports success the affected sessions are already
gone from the nodes (or the failure is logged and the next reconciliation
pass finishes the job).

local_users is the optional local credential store (auth.store.LocalUserStore).
core/ never imports auth/; it is passed in by the entry point.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from core.connections import ConnectionManager
from core.errors import UnknownAccount
from core.models import RevocationResult
from credentials.store import CredentialStore

logger = logging.getLogger("vpnwarden.accounts")


class AccountService:
    def __init__(
        self,
        store: CredentialStore,
        connections: ConnectionManager,
        local_users=None,
        connection_log_retention: timedelta = timedelta(days=30),
        user_log_retention: timedelta = timedelta(days=30),
    ) -> None:
        self.store = store
        self.connections = connections
        self.local_users = local_users
        self.connection_log_retention = connection_log_retention
        self.user_log_retention = user_log_retention

    def _require_user(self, user_id: str) -> None:
        if not self.store.user_exists(user_id):
            raise UnknownAccount(user_id)

    def disable_account(self, user_id: str, actor: Optional[str] = None) -> RevocationResult:
        """Disable user_id and terminate all of its access.

        OAuth-issued configurations are deleted together with their
        authorization. The remaining configurations are kept but kicked;
        the disabled flag keeps them out of the desired set.
        """
        self._require_user(user_id)
        self.store.disable_user(user_id)
        result = RevocationResult()
        for authorization in self.store.list_authorizations(user_id):
            result.merge(self.connections.disconnect_by_auth_key(authorization.auth_key))
            self.store.delete_authorization(authorization.auth_key)
        result.merge(self.connections.kick_user(user_id))
        self.store.add_user_log(user_id, "notice", _by("account disabled", actor))
        logger.info("Disabled account '%s'", user_id)
        return result

    def enable_account(self, user_id: str, actor: Optional[str] = None) -> None:
        self._require_user(user_id)
        self.store.enable_user(user_id)
        self.store.add_user_log(user_id, "notice", _by("account enabled", actor))
        logger.info("Enabled account '%s'", user_id)

    def delete_account(self, user_id: str, actor: Optional[str] = None) -> RevocationResult:
        """Disconnect and delete everything user_id owns, then the account itself.

        The connection log is kept. The user log goes with the account, so
        the deletion is recorded in the application log only.
        """
        self._require_user(user_id)
        result = self.connections.disconnect_by_user(user_id, delete_certificates=True)
        self.store.delete_user(user_id)
        if self.local_users is not None:
            self.local_users.delete_user(user_id)
        logger.info("Deleted account '%s'%s", user_id, f" (by {actor})" if actor else "")
        return result

    def revoke_authorization(self, auth_key: str) -> RevocationResult:
        """Disconnect the configurations of one OAuth grant, then forget the grant."""
        authorization = self.store.get_authorization(auth_key)
        result = self.connections.disconnect_by_auth_key(auth_key)
        if authorization is not None:
            self.store.delete_authorization(auth_key)
            self.store.add_user_log(
                authorization.user_id,
                "info",
                f"authorization for client '{authorization.client_id}' revoked",
            )
        return result

    def housekeeping(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Run the expiry and retention sweeps. Returns rows affected per sweep.

        Expired authorizations are revoked, not just deleted, so their
        configurations go with them.
        """
        now = now or self.store.expiry.now()
        expired = self.store.list_expired_authorizations(now)
        for authorization in expired:
            self.connections.disconnect_by_auth_key(authorization.auth_key)
        counts = {
            "authorizations": self.store.clean_expired_authorizations(now),
            "certificates": self.store.clean_expired_certificates(now),
            "peers": self.store.clean_expired_peers(now),
            "connection_log": self.store.clean_connection_log(now - self.connection_log_retention),
            "user_log": self.store.clean_user_log(now - self.user_log_retention),
        }
        logger.info("Housekeeping: %s", ", ".join(f"{k}={v}" for k, v in counts.items()))
        return counts


def _by(message: str, actor: Optional[str]) -> str:
    return f"{message} by {actor}" if actor else message
