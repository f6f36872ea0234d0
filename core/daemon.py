"""
core/daemon.py -- HTTP client for the gateway daemons (one per node).

Every call is one round trip with a bounded timeout. Failures are raised as
DaemonUnreachable (timeout, transport error, 5xx, unparseable reply) or
DaemonRejected (4xx). The reconciliation engine and the connection manager
decide what a failure means; this module never retries.

Endpoints, relative to the node URL:
  GET  /w/peer_list           -> {"peer_list": [{"public_key", "ip_four", "ip_six", ...}]}
  POST /w/add_peer            form: public_key, ip_four, ip_six
  POST /w/remove_peer         form: public_key
  GET  /o/connection_list     -> {"connection_list": [{"common_name", "ip_four", "ip_six"}]}
  POST /o/disconnect_client   form: common_name
"""

import logging
from typing import Any, Optional

import requests

from core.errors import DaemonRejected, DaemonUnreachable
from core.models import DaemonConnection, DaemonPeer

logger = logging.getLogger("vpnwarden.daemon")

_DEFAULT_TIMEOUT = 10.0


class DaemonClient:
    """Talks to the daemon of any node; the node URL is passed per call.

    One requests.Session is shared across calls for connection pooling.
    max_redirects=3: the node URLs are operator-configured, a long redirect
    chain means something is wrong.
    """

    def __init__(
        self,
        timeout: float = _DEFAULT_TIMEOUT,
        verify: Any = True,
        cert: Optional[tuple[str, str]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.max_redirects = 3
        self._session.verify = verify
        if cert is not None:
            self._session.cert = cert

    @classmethod
    def from_settings(cls, settings) -> "DaemonClient":
        verify: Any = settings.daemon_verify_tls
        if verify and settings.daemon_ca_file:
            verify = settings.daemon_ca_file
        cert = None
        if settings.daemon_client_cert and settings.daemon_client_key:
            cert = (settings.daemon_client_cert, settings.daemon_client_key)
        return cls(timeout=settings.daemon_timeout, verify=verify, cert=cert)

    # ------------------------------------------------------------------
    # WireGuard
    # ------------------------------------------------------------------

    def list_peers(self, node_url: str) -> dict[str, DaemonPeer]:
        data = self._request("GET", node_url, "/w/peer_list", params={"show_all": "yes"})
        peers: dict[str, DaemonPeer] = {}
        for entry in data.get("peer_list", []):
            public_key = entry.get("public_key")
            if not public_key:
                continue
            peers[public_key] = DaemonPeer(
                public_key=public_key,
                ip_four=entry.get("ip_four", ""),
                ip_six=entry.get("ip_six", ""),
            )
        return peers

    def add_peer(self, node_url: str, public_key: str, ip_four: str, ip_six: str) -> None:
        self._request(
            "POST",
            node_url,
            "/w/add_peer",
            data={"public_key": public_key, "ip_four": ip_four, "ip_six": ip_six},
        )

    def remove_peer(self, node_url: str, public_key: str) -> None:
        self._request("POST", node_url, "/w/remove_peer", data={"public_key": public_key})

    # ------------------------------------------------------------------
    # OpenVPN
    # ------------------------------------------------------------------

    def list_connections(self, node_url: str) -> dict[str, DaemonConnection]:
        data = self._request("GET", node_url, "/o/connection_list")
        connections: dict[str, DaemonConnection] = {}
        for entry in data.get("connection_list", []):
            common_name = entry.get("common_name")
            if not common_name:
                continue
            connections[common_name] = DaemonConnection(
                common_name=common_name,
                ip_four=entry.get("ip_four", ""),
                ip_six=entry.get("ip_six", ""),
            )
        return connections

    def disconnect_client(self, node_url: str, common_name: str) -> None:
        self._request("POST", node_url, "/o/disconnect_client", data={"common_name": common_name})

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, node_url: str, path: str, **kwargs) -> dict[str, Any]:
        url = node_url.rstrip("/") + path
        try:
            resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise DaemonUnreachable(node_url, f"{method} {path} failed: {e}") from e

        if 400 <= resp.status_code < 500:
            raise DaemonRejected(node_url, f"{method} {path} rejected with HTTP {resp.status_code}: {resp.text[:200]}")
        if resp.status_code >= 500:
            raise DaemonUnreachable(node_url, f"{method} {path} returned HTTP {resp.status_code}")

        if not resp.content:
            return {}
        try:
            payload = resp.json()
        except ValueError as e:
            raise DaemonUnreachable(node_url, f"{method} {path} returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise DaemonUnreachable(node_url, f"{method} {path} returned unexpected payload")
        return payload

    def close(self) -> None:
        self._session.close()
