"""
core/reconcile.py -- Desired-vs-observed reconciliation of the gateway nodes.

One pass, per node:
  1. desired  = live peers / certificates of every profile the node serves
                (credential store, expired and disabled-user entries excluded)
  2. observed = what the node's daemon reports (peer table, connected clients)
  3. diff in memory, then issue add_peer / remove_peer / disconnect_client

run() reads the desired state of every node before the first daemon call, so
a store failure aborts the whole pass with nothing mutated. After that every
failure is soft: it is logged, recorded in the NodeReport and left for the
next pass. Every call is keyed by a stable identifier (public key, common
name), so a second pass with no state change issues zero calls and two
overlapping passes are harmless.

A disconnect only terminates the session. Certificate records are deleted
upstream (expiry sweep, revocation), which is what made them leave the
desired set in the first place.
"""

import concurrent.futures
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.daemon import DaemonClient
from core.errors import ConfigurationError, DaemonError, DaemonRejected, StoreError
from core.models import DaemonConnection, DaemonPeer, NodeReport, SyncReport
from core.nodes import NodeDirectory
from credentials.models import Peer
from credentials.store import CredentialStore

logger = logging.getLogger("vpnwarden.reconcile")


@dataclass
class DesiredNodeState:
    """The store's view of one node, read before any daemon is contacted."""

    node_url: str
    peers: dict[str, Peer] = field(default_factory=dict)
    common_names: set[str] = field(default_factory=set)
    serves_wireguard: bool = False
    serves_openvpn: bool = False


def diff_peers(desired: dict[str, Peer], observed: dict[str, DaemonPeer]) -> tuple[list[str], list[str]]:
    """Return (to_add, to_remove) public keys, each sorted.

    A key present on both sides gets no call, whatever its addresses.
    """
    to_add = sorted(set(desired) - set(observed))
    to_remove = sorted(set(observed) - set(desired))
    return to_add, to_remove


def diff_connections(desired: set[str], observed: dict[str, DaemonConnection]) -> list[str]:
    """Return the connected common names that have no live certificate."""
    return sorted(set(observed) - desired)


class ReconciliationEngine:
    def __init__(
        self,
        store: CredentialStore,
        nodes: NodeDirectory,
        daemon: DaemonClient,
        workers: int = 1,
    ) -> None:
        self.store = store
        self.nodes = nodes
        self.daemon = daemon
        self.workers = max(1, workers)

    # ------------------------------------------------------------------
    # Desired state
    # ------------------------------------------------------------------

    def desired_state(self, node_url: str, now: Optional[datetime] = None) -> DesiredNodeState:
        """Read the live credentials of every profile served by node_url.

        Raises StoreError if the database cannot be queried.
        """
        state = DesiredNodeState(node_url=node_url)
        wg_profiles = self.nodes.profiles_on_node(node_url, "wireguard")
        ovpn_profiles = self.nodes.profiles_on_node(node_url, "openvpn")
        state.serves_wireguard = bool(wg_profiles)
        state.serves_openvpn = bool(ovpn_profiles)
        try:
            for profile_id in wg_profiles:
                for peer in self.store.list_live_peers_by_profile(profile_id, now):
                    state.peers.setdefault(peer.public_key, peer)
            for profile_id in ovpn_profiles:
                for cert in self.store.list_live_certs_by_profile(profile_id, now):
                    state.common_names.add(cert.common_name)
        except SQLAlchemyError as e:
            raise StoreError(f"reading desired state for {node_url} failed: {e}") from e
        return state

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def reconcile(self, node_url: str, now: Optional[datetime] = None) -> NodeReport:
        """Run one pass over a single node. Raises StoreError before any call if the store fails."""
        self._check_known(node_url)
        return self._apply_guarded(self.desired_state(node_url, now))

    def run(self, node_urls: Optional[Iterable[str]] = None, now: Optional[datetime] = None) -> SyncReport:
        """Run one pass over every node (or the given subset).

        Raises ConfigurationError for a node no profile maps to and
        StoreError if the store fails; both happen before any daemon call.
        """
        targets = list(node_urls) if node_urls is not None else self.nodes.node_urls()
        for url in targets:
            self._check_known(url)
        states = [self.desired_state(url, now) for url in targets]

        report = SyncReport()
        if self.workers > 1 and len(states) > 1:
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.workers) as pool:
                futures = {pool.submit(self._apply_guarded, state): state.node_url for state in states}
                by_url = {}
                for future in concurrent.futures.as_completed(futures):
                    by_url[futures[future]] = future.result()
            report.nodes = [by_url[state.node_url] for state in states]
        else:
            report.nodes = [self._apply_guarded(state) for state in states]

        logger.info(
            "Sync pass finished: %d node(s), %d call(s), %d failure(s)",
            len(report.nodes),
            report.call_count,
            report.failure_count,
        )
        return report

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _check_known(self, node_url: str) -> None:
        if node_url not in self.nodes.node_urls():
            raise ConfigurationError(f"no profile is served by node '{node_url}'")

    def _apply_guarded(self, desired: DesiredNodeState) -> NodeReport:
        """Apply one node's diff; an unexpected error is confined to that node."""
        try:
            return self._apply(desired)
        except Exception as e:
            logger.exception("Reconciliation of %s failed unexpectedly", desired.node_url)
            return NodeReport(node_url=desired.node_url, failures=[f"{desired.node_url}: {e}"], observed_ok=False)

    def _apply(self, desired: DesiredNodeState) -> NodeReport:
        report = NodeReport(node_url=desired.node_url)
        if desired.serves_wireguard:
            self._sync_peers(desired, report)
        if desired.serves_openvpn:
            self._sync_connections(desired, report)
        logger.info(
            "%s: +%d peer(s), -%d peer(s), %d disconnect(s), %d failure(s)",
            desired.node_url,
            len(report.added),
            len(report.removed),
            len(report.disconnected),
            len(report.failures),
        )
        return report

    def _sync_peers(self, desired: DesiredNodeState, report: NodeReport) -> None:
        node_url = desired.node_url
        try:
            observed = self.daemon.list_peers(node_url)
        except DaemonError as e:
            logger.warning("Cannot list peers on %s: %s", node_url, e)
            report.failures.append(str(e))
            report.observed_ok = False
            return

        to_add, to_remove = diff_peers(desired.peers, observed)
        for public_key in to_add:
            peer = desired.peers[public_key]
            self._call(
                report,
                report.added,
                public_key,
                self.daemon.add_peer,
                node_url,
                public_key,
                peer.ip_four,
                peer.ip_six,
            )
        for public_key in to_remove:
            self._call(report, report.removed, public_key, self.daemon.remove_peer, node_url, public_key)

    def _sync_connections(self, desired: DesiredNodeState, report: NodeReport) -> None:
        node_url = desired.node_url
        try:
            observed = self.daemon.list_connections(node_url)
        except DaemonError as e:
            logger.warning("Cannot list connections on %s: %s", node_url, e)
            report.failures.append(str(e))
            report.observed_ok = False
            return

        for common_name in diff_connections(desired.common_names, observed):
            self._call(
                report,
                report.disconnected,
                common_name,
                self.daemon.disconnect_client,
                node_url,
                common_name,
            )

    @staticmethod
    def _call(report: NodeReport, done: list[str], key: str, func, *args) -> None:
        """Issue one mutating daemon call and record its outcome under key."""
        try:
            func(*args)
        except DaemonRejected as e:
            logger.debug("Treating rejected call as satisfied: %s", e)
            report.already_satisfied.append(key)
        except DaemonError as e:
            logger.warning("Daemon call failed, leaving for next pass: %s", e)
            report.failures.append(str(e))
        else:
            done.append(key)
