"""
core/connections.py -- Cascading revocation across gateway nodes.

When an account is disabled or deleted, or an OAuth authorization is
revoked, waiting for the next reconciliation pass is not good enough: the
affected sessions are terminated here, synchronously, before the caller
reports success.

Order per record: daemon first, store second. A daemon failure is logged
and recorded but never blocks the store deletion; once the record is gone
from the store it has left the desired set and the next pass removes
whatever the failed call left behind on the node.
"""

import logging
from typing import Optional

from core.daemon import DaemonClient
from core.errors import ConfigurationError, DaemonError, DaemonRejected
from core.models import DaemonConnection, RevocationResult
from core.nodes import NodeDirectory
from credentials.models import Certificate, Peer
from credentials.store import CredentialStore

logger = logging.getLogger("vpnwarden.connections")


class ConnectionManager:
    def __init__(self, store: CredentialStore, nodes: NodeDirectory, daemon: DaemonClient) -> None:
        self.store = store
        self.nodes = nodes
        self.daemon = daemon

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def disconnect_by_user(self, user_id: str, delete_certificates: bool = True) -> RevocationResult:
        """Remove every peer of user_id and disconnect every certificate.

        Peers are always deleted from the store. Certificates are deleted
        only when delete_certificates is True (account deletion).
        """
        result = self._revoke(
            self.store.list_peers_by_user(user_id),
            self.store.list_certs_by_user(user_id),
            delete_peers=True,
            delete_certificates=delete_certificates,
        )
        self._log_result(f"user '{user_id}'", result)
        return result

    def kick_user(self, user_id: str) -> RevocationResult:
        """Terminate every live session of user_id now, keeping the records."""
        result = self._revoke(
            self.store.list_peers_by_user(user_id),
            self.store.list_certs_by_user(user_id),
            delete_peers=False,
            delete_certificates=False,
        )
        self._log_result(f"user '{user_id}' (kick)", result)
        return result

    def disconnect_by_auth_key(self, auth_key: str) -> RevocationResult:
        """Remove and delete only the configurations issued under one OAuth grant."""
        peers, certs = self.store.list_by_auth_key(auth_key)
        result = self._revoke(peers, certs, delete_peers=True, delete_certificates=True)
        self._log_result("authorization", result)
        return result

    def _revoke(
        self,
        peers: list[Peer],
        certs: list[Certificate],
        delete_peers: bool,
        delete_certificates: bool,
    ) -> RevocationResult:
        result = RevocationResult()
        for peer in peers:
            self._remove_peer(peer, result)
            if delete_peers:
                self.store.delete_peer(peer.user_id, peer.public_key)

        # One connection listing per node, however many certificates it serves.
        connected: dict[str, Optional[dict[str, DaemonConnection]]] = {}
        for cert in certs:
            self._disconnect_certificate(cert, connected, result)
            if delete_certificates and self.store.delete_certificate(cert.common_name):
                result.certificates_deleted.append(cert.common_name)
        return result

    def _node_urls_for(self, profile_id: str, result: RevocationResult) -> list[str]:
        try:
            return self.nodes.serving_nodes(profile_id)
        except ConfigurationError as e:
            # Profile removed from the configuration; no node to talk to.
            logger.warning("Skipping daemon call: %s", e)
            result.failures.append(str(e))
            return []

    def _remove_peer(self, peer: Peer, result: RevocationResult) -> None:
        removed = False
        for node_url in self._node_urls_for(peer.profile_id, result):
            try:
                self.daemon.remove_peer(node_url, peer.public_key)
            except DaemonRejected as e:
                logger.debug("Peer already absent: %s", e)
                removed = True
            except DaemonError as e:
                logger.warning("Could not remove peer from %s: %s", node_url, e)
                result.failures.append(str(e))
            else:
                removed = True
        if removed:
            result.peers_removed.append(peer.public_key)

    def _disconnect_certificate(
        self,
        cert: Certificate,
        connected: dict[str, Optional[dict[str, DaemonConnection]]],
        result: RevocationResult,
    ) -> None:
        for node_url in self._node_urls_for(cert.profile_id, result):
            if node_url not in connected:
                try:
                    connected[node_url] = self.daemon.list_connections(node_url)
                except DaemonError as e:
                    logger.warning("Cannot list connections on %s: %s", node_url, e)
                    result.failures.append(str(e))
                    connected[node_url] = None

            sessions = connected[node_url]
            # If the listing failed, disconnect blindly rather than risk
            # leaving a revoked session up.
            if sessions is not None and cert.common_name not in sessions:
                continue
            try:
                self.daemon.disconnect_client(node_url, cert.common_name)
            except DaemonRejected as e:
                logger.debug("Client not connected: %s", e)
            except DaemonError as e:
                logger.warning("Could not disconnect %s on %s: %s", cert.common_name, node_url, e)
                result.failures.append(str(e))
            else:
                result.certificates_disconnected.append(cert.common_name)

    @staticmethod
    def _log_result(subject: str, result: RevocationResult) -> None:
        if result.is_noop and not result.failures:
            logger.info("Revocation for %s: nothing to disconnect", subject)
            return
        logger.info(
            "Revocation for %s: %d peer(s) removed, %d client(s) disconnected, %d certificate(s) deleted, %d failure(s)",
            subject,
            len(result.peers_removed),
            len(result.certificates_disconnected),
            len(result.certificates_deleted),
            len(result.failures),
        )

    # ------------------------------------------------------------------
    # Admin view
    # ------------------------------------------------------------------

    def list_connections(self) -> dict[str, list[dict]]:
        """Return the sessions each node reports, grouped by profile.

        Entries are joined with the store so the admin view can show the
        owner. Entries the store does not know have user_id None and are listed
        once, under the first profile of their protocol on that node. A node
        that cannot be reached contributes an empty list.
        """
        peers_by_node: dict[str, Optional[dict]] = {}
        conns_by_node: dict[str, Optional[dict]] = {}
        unknown_seen: set[tuple[str, str]] = set()
        out: dict[str, list[dict]] = {}

        for profile_id in self.nodes.profile_ids():
            profile = self.nodes.profile(profile_id)
            entries: list[dict] = []
            for node_url in self.nodes.serving_nodes(profile_id):
                if profile.vpn_proto == "wireguard":
                    observed = self._cached(peers_by_node, node_url, self.daemon.list_peers)
                    for public_key, daemon_peer in (observed or {}).items():
                        peer = self.store.get_peer(public_key)
                        if peer is not None and peer.profile_id != profile_id:
                            continue
                        if peer is None and not _first_sighting(unknown_seen, node_url, public_key):
                            continue
                        entries.append({
                            "user_id": peer.user_id if peer else None,
                            "display_name": peer.display_name if peer else None,
                            "public_key": public_key,
                            "ip_four": daemon_peer.ip_four,
                            "ip_six": daemon_peer.ip_six,
                            "node_url": node_url,
                        })
                else:
                    observed = self._cached(conns_by_node, node_url, self.daemon.list_connections)
                    for common_name, conn in (observed or {}).items():
                        cert = self.store.get_certificate(common_name)
                        if cert is not None and cert.profile_id != profile_id:
                            continue
                        if cert is None and not _first_sighting(unknown_seen, node_url, common_name):
                            continue
                        entries.append({
                            "user_id": cert.user_id if cert else None,
                            "display_name": cert.display_name if cert else None,
                            "common_name": common_name,
                            "ip_four": conn.ip_four,
                            "ip_six": conn.ip_six,
                            "node_url": node_url,
                        })
            out[profile_id] = entries
        return out

    @staticmethod
    def _cached(cache: dict, node_url: str, fetch) -> Optional[dict]:
        if node_url not in cache:
            try:
                cache[node_url] = fetch(node_url)
            except DaemonError as e:
                logger.warning("Cannot query %s: %s", node_url, e)
                cache[node_url] = None
        return cache[node_url]


def _first_sighting(seen: set[tuple[str, str]], node_url: str, key: str) -> bool:
    if (node_url, key) in seen:
        return False
    seen.add((node_url, key))
    return True
