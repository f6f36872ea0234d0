"""
tests/test_api_routes.py -- Integration tests for the admin and API key routes.

These tests exercise the full stack: FastAPI routing -> auth dependency
injection -> AccountService / ConnectionManager / CredentialStore -> response
model serialization, against the FakeDaemon wired in by the api_client fixture.

Coverage:
  - Auth failures: 401 without a key, 403 for a non-admin key
  - Users: list, detail, 404
  - Account actions: disable / enable / delete, own-account guard, unknown account
  - Authorization revocation
  - Connections, point-in-time log query, stats, on-demand sync
  - API key issuance: happy path, bad credentials, non-admin, rate limit
  - API key revocation: own key only, revoked key stops authenticating
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from auth.models import ApiKey, User
from auth.tokens import generate_api_key, hash_api_key, hash_password
from conftest import GW1, GW2
from core.config import now_utc
from credentials.models import Authorization, Certificate, Peer


@pytest.fixture(autouse=True)
def _reset_limiter():
    limiter.reset()
    yield
    limiter.reset()


def _headers(key: str) -> dict[str, str]:
    return {"X-API-Key": key}


def _seed_user(store, user_id="alice", public_key="A", common_name="cn-1", auth_key=None):
    now = now_utc()
    store.add_peer(
        Peer(
            user_id=user_id,
            profile_id="office",
            display_name="laptop",
            public_key=public_key,
            ip_four="10.0.0.1",
            ip_six="fd00::1",
            created_at=now - timedelta(days=1),
            auth_key=auth_key,
            client_id="org.example.app" if auth_key else None,
        )
    )
    store.add_certificate(
        Certificate(
            common_name=common_name,
            user_id=user_id,
            profile_id="legacy",
            display_name="phone",
            valid_from=now - timedelta(days=1),
            valid_to=now + timedelta(days=365),
        )
    )


class TestAuthFailure:
    """Protected routes reject missing, unknown and non-admin keys."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/api/v1/users"),
            ("get", "/api/v1/users/alice"),
            ("get", "/api/v1/connections"),
            ("get", "/api/v1/stats"),
            ("post", "/api/v1/sync"),
            ("delete", "/api/v1/authorizations/k1"),
            ("delete", "/api/v1/api-keys/1"),
        ],
    )
    def test_missing_key_is_401(self, api_client: tuple[TestClient, str, object], method: str, path: str) -> None:
        client, _key, _ctx = api_client
        resp = getattr(client, method)(path)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_unknown_key_is_401(self, api_client) -> None:
        client, _key, _ctx = api_client
        resp = client.get("/api/v1/users", headers=_headers("vw_" + "0" * 64))
        assert resp.status_code == 401

    def test_non_admin_key_is_403(self, api_client) -> None:
        client, _key, ctx = api_client
        uid = ctx.user_store.create_user(User(username="viewer", role="user", hashed_password=hash_password("pw")))
        raw = generate_api_key()
        ctx.user_store.create_api_key(ApiKey(user_id=uid, name="v", key_hash=hash_api_key(raw), key_prefix=raw[:12]))

        resp = client.get("/api/v1/users", headers=_headers(raw))

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_docs_require_admin(self, api_client) -> None:
        client, key, _ctx = api_client
        assert client.get("/docs").status_code == 401
        assert client.get("/docs", headers=_headers(key)).status_code == 200


class TestUsers:
    def test_list_users(self, api_client) -> None:
        client, key, ctx = api_client
        _seed_user(ctx.store)
        resp = client.get("/api/v1/users", headers=_headers(key))
        assert resp.status_code == 200
        assert {u["user_id"] for u in resp.json()} == {"alice", "testadmin"}

    def test_user_detail(self, api_client) -> None:
        client, key, ctx = api_client
        _seed_user(ctx.store)

        data = client.get("/api/v1/users/alice", headers=_headers(key)).json()

        assert data["is_disabled"] is False
        assert [p["public_key"] for p in data["peers"]] == ["A"]
        assert [c["common_name"] for c in data["certificates"]] == ["cn-1"]
        assert data["peers"][0]["expires_at"] > data["peers"][0]["created_at"]

    def test_unknown_user_is_404(self, api_client) -> None:
        client, key, _ctx = api_client
        resp = client.get("/api/v1/users/ghost", headers=_headers(key))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


class TestAccountActions:
    def test_disable_disconnects_before_responding(self, api_client) -> None:
        client, key, ctx = api_client
        _seed_user(ctx.store)
        ctx.daemon.seed_peer(GW1, "A", "10.0.0.1")
        ctx.daemon.seed_connection(GW1, "cn-1")

        resp = client.post("/api/v1/users/alice/actions", json={"action": "disable"}, headers=_headers(key))

        assert resp.status_code == 200
        data = resp.json()
        assert data["peers_removed"] == ["A"]
        assert data["certificates_disconnected"] == ["cn-1"]
        assert data["noop"] is False
        assert ctx.daemon.peers[GW1] == {}
        assert ctx.store.is_disabled("alice")
        assert ctx.store.user_log("alice")[0].message == "account disabled by testadmin"

    def test_enable(self, api_client) -> None:
        client, key, ctx = api_client
        _seed_user(ctx.store)
        ctx.store.disable_user("alice")

        resp = client.post("/api/v1/users/alice/actions", json={"action": "enable"}, headers=_headers(key))

        assert resp.status_code == 200
        assert resp.json()["noop"] is True
        assert not ctx.store.is_disabled("alice")

    def test_delete(self, api_client) -> None:
        client, key, ctx = api_client
        _seed_user(ctx.store)
        ctx.daemon.seed_peer(GW1, "A", "10.0.0.1")

        resp = client.post("/api/v1/users/alice/actions", json={"action": "delete"}, headers=_headers(key))

        assert resp.status_code == 200
        assert resp.json()["certificates_deleted"] == ["cn-1"]
        assert not ctx.store.user_exists("alice")
        assert ctx.daemon.peers[GW1] == {}

    def test_own_account_is_refused(self, api_client) -> None:
        client, key, ctx = api_client
        resp = client.post("/api/v1/users/testadmin/actions", json={"action": "disable"}, headers=_headers(key))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "own_account"
        assert not ctx.store.is_disabled("testadmin")

    def test_unknown_account_is_404(self, api_client) -> None:
        client, key, ctx = api_client
        resp = client.post("/api/v1/users/ghost/actions", json={"action": "delete"}, headers=_headers(key))
        assert resp.status_code == 404
        assert ctx.daemon.calls == []

    def test_invalid_action_is_422(self, api_client) -> None:
        client, key, _ctx = api_client
        resp = client.post("/api/v1/users/alice/actions", json={"action": "explode"}, headers=_headers(key))
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestRevokeAuthorization:
    def test_revokes_grant(self, api_client) -> None:
        client, key, ctx = api_client
        ctx.store.store_authorization(Authorization("grant-1", "alice", "org.example.app", "config", now_utc()))
        _seed_user(ctx.store, auth_key="grant-1")
        ctx.daemon.seed_peer(GW1, "A", "10.0.0.1")

        resp = client.delete("/api/v1/authorizations/grant-1", headers=_headers(key))

        assert resp.status_code == 200
        assert resp.json()["peers_removed"] == ["A"]
        assert ctx.store.get_authorization("grant-1") is None
        assert ctx.store.get_certificate("cn-1") is not None

    def test_unknown_grant_is_404(self, api_client) -> None:
        client, key, _ctx = api_client
        assert client.delete("/api/v1/authorizations/missing", headers=_headers(key)).status_code == 404


class TestConnectionsAndLog:
    def test_connections_grouped_by_profile(self, api_client) -> None:
        client, key, ctx = api_client
        _seed_user(ctx.store)
        ctx.daemon.seed_peer(GW1, "A", "10.0.0.1")
        ctx.daemon.seed_connection(GW1, "cn-1")

        data = client.get("/api/v1/connections", headers=_headers(key)).json()

        assert data["office"][0]["user_id"] == "alice"
        assert data["office"][0]["node_url"] == GW1
        assert data["legacy"][0]["common_name"] == "cn-1"
        assert data["lab"] == []

    def test_log_query(self, api_client) -> None:
        client, key, ctx = api_client
        _seed_user(ctx.store)
        connected = now_utc() - timedelta(hours=1)
        ctx.store.client_connect("legacy", "cn-1", "10.8.0.2", "fd01::2", connected)

        at = (connected + timedelta(minutes=5)).isoformat()
        resp = client.get("/api/v1/log", params={"at": at, "ip": "fd01:0::2"}, headers=_headers(key))

        assert resp.status_code == 200
        assert [e["user_id"] for e in resp.json()] == ["alice"]

    def test_log_rejects_future_time(self, api_client) -> None:
        client, key, _ctx = api_client
        at = (now_utc() + timedelta(days=1)).isoformat()
        resp = client.get("/api/v1/log", params={"at": at, "ip": "10.0.0.1"}, headers=_headers(key))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "future_time"

    def test_log_rejects_invalid_ip(self, api_client) -> None:
        client, key, _ctx = api_client
        at = now_utc().isoformat()
        resp = client.get("/api/v1/log", params={"at": at, "ip": "not-an-ip"}, headers=_headers(key))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_ip"


class TestStatsAndSync:
    def test_stats(self, api_client) -> None:
        client, key, ctx = api_client
        _seed_user(ctx.store, auth_key="grant-1")
        start = now_utc() - timedelta(hours=2)
        ctx.store.client_connect("legacy", "cn-1", "10.8.0.2", "fd01::2", start)
        ctx.store.client_disconnect("legacy", "cn-1", "10.8.0.2", "fd01::2", start, start + timedelta(hours=1), 2048)

        data = client.get("/api/v1/stats", headers=_headers(key)).json()

        assert data["profiles"]["legacy"]["total_traffic"] == 2048
        assert data["profiles"]["legacy"]["max_concurrent_connections"] == 1
        assert data["app_usage"] == [{"client_id": "org.example.app", "client_count": 1}]

    def test_sync_runs_a_pass(self, api_client) -> None:
        client, key, ctx = api_client
        _seed_user(ctx.store)
        ctx.daemon.seed_peer(GW2, "STRAY", "10.1.0.9")

        resp = client.post("/api/v1/sync", headers=_headers(key))

        assert resp.status_code == 200
        data = resp.json()
        assert data["failure_count"] == 0
        assert [n["node_url"] for n in data["nodes"]] == [GW1, GW2]
        assert "A" in ctx.daemon.peers[GW1]
        assert ctx.daemon.peers[GW2] == {}


class TestApiKeys:
    def test_issue_key(self, api_client) -> None:
        client, _key, _ctx = api_client
        resp = client.post(
            "/api/v1/api-keys",
            json={"username": "testadmin", "password": "testpass123", "name": "ci"},
        )
        assert resp.status_code == 201
        assert resp.headers["Cache-Control"] == "no-store"
        new_key = resp.json()["key"]
        assert new_key.startswith("vw_")
        assert client.get("/api/v1/users", headers=_headers(new_key)).status_code == 200

    def test_bad_credentials(self, api_client) -> None:
        client, _key, _ctx = api_client
        for username, password in (("testadmin", "wrong"), ("nobody", "testpass123")):
            resp = client.post("/api/v1/api-keys", json={"username": username, "password": password, "name": "x"})
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "bad_credentials"

    def test_non_admin_cannot_issue(self, api_client) -> None:
        client, _key, ctx = api_client
        ctx.user_store.create_user(User(username="viewer", role="user", hashed_password=hash_password("viewerpass")))
        resp = client.post("/api/v1/api-keys", json={"username": "viewer", "password": "viewerpass", "name": "x"})
        assert resp.status_code == 403

    def test_rate_limited(self, api_client) -> None:
        client, _key, _ctx = api_client
        body = {"username": "testadmin", "password": "wrong", "name": "x"}
        statuses = [client.post("/api/v1/api-keys", json=body).status_code for _ in range(11)]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429

    def test_revoke_own_key(self, api_client) -> None:
        client, key, _ctx = api_client
        resp = client.post(
            "/api/v1/api-keys",
            json={"username": "testadmin", "password": "testpass123", "name": "ci"},
        )
        new_id, new_key = resp.json()["id"], resp.json()["key"]

        assert client.delete(f"/api/v1/api-keys/{new_id}", headers=_headers(key)).status_code == 204

        assert client.get("/api/v1/users", headers=_headers(new_key)).status_code == 401
        assert client.get("/api/v1/users", headers=_headers(key)).status_code == 200

    def test_revoke_unknown_or_foreign_key_is_404(self, api_client) -> None:
        client, key, ctx = api_client
        uid = ctx.user_store.create_user(
            User(username="other", role="admin", hashed_password=hash_password("otherpass"))
        )
        raw = generate_api_key()
        other_id = ctx.user_store.create_api_key(
            ApiKey(user_id=uid, name="o", key_hash=hash_api_key(raw), key_prefix=raw[:12])
        )

        for key_id in (other_id, 9999):
            resp = client.delete(f"/api/v1/api-keys/{key_id}", headers=_headers(key))
            assert resp.status_code == 404
            assert resp.json()["error"]["code"] == "not_found"
        assert client.get("/api/v1/users", headers=_headers(raw)).status_code == 200
