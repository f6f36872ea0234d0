"""
tests/conftest.py -- Shared fixtures for the VPNWarden test suite.

This module provides:
  - FakeDaemon: an in-memory stand-in for the gateway daemons that records
    every call, with switches for unreachable nodes and rejected keys
  - store / nodes / engine / connections / accounts: the core object graph on
    an isolated in-memory database with a frozen clock
  - add_peer / add_cert: factories for issued configurations
  - api_client: TestClient with a patched lifespan and an admin API key

Design: named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Each fixture gets a unique name so tests never share state.

DEBUG and NODE_API_SECRET must be set before any core/auth import so
get_settings() auto-generates SECRET_KEY and enables the node API.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# CRITICAL: set before any core/auth import (get_settings() is cached).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("NODE_API_SECRET", "test-node-secret")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services
from auth.models import ApiKey, User
from auth.store import LocalUserStore
from auth.tokens import generate_api_key, hash_api_key, hash_password
from core.accounts import AccountService
from core.config import ProfileConfig, get_settings
from core.connections import ConnectionManager
from core.errors import DaemonRejected, DaemonUnreachable
from core.expiry import ExpiryPolicy
from core.models import DaemonConnection, DaemonPeer
from core.nodes import NodeDirectory
from core.reconcile import ReconciliationEngine
from credentials.models import Certificate, Peer
from credentials.store import CredentialStore

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
SESSION_EXPIRY = timedelta(days=90)

GW1 = "https://gw1.example.org"
GW2 = "https://gw2.example.org"

PROFILES = [
    ProfileConfig(profile_id="office", vpn_proto="wireguard", node_urls=[GW1]),
    ProfileConfig(profile_id="legacy", vpn_proto="openvpn", node_urls=[GW1]),
    ProfileConfig(profile_id="lab", vpn_proto="wireguard", node_urls=[GW2]),
]


def memory_db_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Fake daemon
# ---------------------------------------------------------------------------


class FakeDaemon:
    """In-memory daemons for every node, keyed by node URL.

    peers[node][public_key] and connections[node][common_name] are the node's
    live state. calls records every mutating call as (op, node, key).
    Nodes in `down` raise DaemonUnreachable; keys in `reject` make the
    mutating call raise DaemonRejected; keys in `fail` raise DaemonUnreachable
    for that call only.
    """

    def __init__(self) -> None:
        self.peers: dict[str, dict[str, DaemonPeer]] = {}
        self.connections: dict[str, dict[str, DaemonConnection]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.down: set[str] = set()
        self.reject: set[str] = set()
        self.fail: set[str] = set()

    def _check(self, node_url: str, key: str = "") -> None:
        if node_url in self.down or key in self.fail:
            raise DaemonUnreachable(node_url, "connection refused")
        if key in self.reject:
            raise DaemonRejected(node_url, f"rejected {key}")

    def seed_peer(self, node_url: str, public_key: str, ip_four: str, ip_six: str = "") -> None:
        self.peers.setdefault(node_url, {})[public_key] = DaemonPeer(public_key, ip_four, ip_six)

    def seed_connection(self, node_url: str, common_name: str, ip_four: str = "10.8.0.2") -> None:
        self.connections.setdefault(node_url, {})[common_name] = DaemonConnection(common_name, ip_four, "")

    def list_peers(self, node_url: str) -> dict[str, DaemonPeer]:
        self._check(node_url)
        return dict(self.peers.get(node_url, {}))

    def add_peer(self, node_url: str, public_key: str, ip_four: str, ip_six: str) -> None:
        self.calls.append(("add_peer", node_url, public_key))
        self._check(node_url, public_key)
        self.peers.setdefault(node_url, {})[public_key] = DaemonPeer(public_key, ip_four, ip_six)

    def remove_peer(self, node_url: str, public_key: str) -> None:
        self.calls.append(("remove_peer", node_url, public_key))
        self._check(node_url, public_key)
        self.peers.get(node_url, {}).pop(public_key, None)

    def list_connections(self, node_url: str) -> dict[str, DaemonConnection]:
        self._check(node_url)
        return dict(self.connections.get(node_url, {}))

    def disconnect_client(self, node_url: str, common_name: str) -> None:
        self.calls.append(("disconnect_client", node_url, common_name))
        self._check(node_url, common_name)
        self.connections.get(node_url, {}).pop(common_name, None)

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def expiry() -> ExpiryPolicy:
    return ExpiryPolicy(SESSION_EXPIRY, clock=lambda: NOW)


@pytest.fixture
def store(expiry) -> Generator[CredentialStore, None, None]:
    s = CredentialStore(memory_db_url("creds"), expiry)
    yield s
    s.close()


@pytest.fixture
def nodes() -> NodeDirectory:
    return NodeDirectory(PROFILES)


@pytest.fixture
def daemon() -> FakeDaemon:
    return FakeDaemon()


@pytest.fixture
def engine(store, nodes, daemon) -> ReconciliationEngine:
    return ReconciliationEngine(store, nodes, daemon)


@pytest.fixture
def connections(store, nodes, daemon) -> ConnectionManager:
    return ConnectionManager(store, nodes, daemon)


@pytest.fixture
def accounts(store, connections) -> AccountService:
    return AccountService(store, connections)


@pytest.fixture
def add_peer(store):
    """Factory: record a WireGuard peer issued one day before NOW unless told otherwise."""

    def _add(
        public_key: str,
        ip_four: str,
        user_id: str = "alice",
        profile_id: str = "office",
        created_at: datetime = NOW - timedelta(days=1),
        auth_key: str | None = None,
        client_id: str | None = None,
    ) -> Peer:
        peer = Peer(
            user_id=user_id,
            profile_id=profile_id,
            display_name=f"{user_id} laptop",
            public_key=public_key,
            ip_four=ip_four,
            ip_six=f"fd00::{ip_four.rsplit('.', 1)[-1]}",
            created_at=created_at,
            client_id=client_id,
            auth_key=auth_key,
        )
        store.add_peer(peer)
        return peer

    return _add


@pytest.fixture
def add_cert(store):
    """Factory: record an OpenVPN certificate valid from a day before NOW for a year."""

    def _add(
        common_name: str,
        user_id: str = "alice",
        profile_id: str = "legacy",
        valid_from: datetime = NOW - timedelta(days=1),
        valid_to: datetime = NOW + timedelta(days=365),
        auth_key: str | None = None,
        client_id: str | None = None,
    ) -> Certificate:
        cert = Certificate(
            common_name=common_name,
            user_id=user_id,
            profile_id=profile_id,
            display_name=f"{user_id} phone",
            valid_from=valid_from,
            valid_to=valid_to,
            client_id=client_id,
            auth_key=auth_key,
        )
        store.add_certificate(cert)
        return cert

    return _add


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore, user_store: LocalUserStore, nodes: NodeDirectory, daemon: FakeDaemon):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores and the fake daemon into app.state so TestClient
    routes never touch a real database or network.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, store, user_store, nodes, daemon)
        yield

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, str, SimpleNamespace], None, None]:
    """Yield (client, api_key, ctx) for API integration tests.

    The admin account is "testadmin" / "testpass123". ctx exposes store,
    user_store and daemon so tests can arrange state and inspect calls.
    The credential store uses the real clock, since requests carry real times.
    """
    db_url = memory_db_url("api")
    store = CredentialStore(db_url, ExpiryPolicy(SESSION_EXPIRY))
    user_store = LocalUserStore(db_url)
    daemon = FakeDaemon()

    uid = user_store.create_user(User(username="testadmin", role="admin", hashed_password=hash_password("testpass123")))
    store.ensure_user("testadmin")
    raw_key = generate_api_key()
    user_store.create_api_key(ApiKey(user_id=uid, name="tests", key_hash=hash_api_key(raw_key), key_prefix=raw_key[:12]))

    app.router.lifespan_context = _patch_lifespan(store, user_store, NodeDirectory(PROFILES), daemon)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, raw_key, SimpleNamespace(store=store, user_store=user_store, daemon=daemon)

    store.close()
    user_store.close()


@pytest.fixture
def node_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {get_settings().node_api_secret}"}
