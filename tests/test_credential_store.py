"""Unit tests for credentials/store.py -- CredentialStore lifecycle operations.

Covers:
- live reads exclude expired entries and disabled users
- force-close of a stale open entry when a new session reuses the addresses
- disconnect closes an entry exactly once
- point-in-time address lookup over the connection log, in any address spelling
- retention and expiry sweeps
- account deletion keeps the connection log
- authorization expiry, user log, statistics
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import NOW, SESSION_EXPIRY
from core.config import to_iso
from core.errors import StoreError
from core.expiry import ExpiryPolicy
from credentials.models import Authorization
from credentials.store import CredentialStore

T1 = NOW - timedelta(hours=2)
T2 = NOW - timedelta(hours=1)


class TestLiveReads:
    def test_expired_peer_excluded(self, store, add_peer):
        add_peer("LIVE", "10.0.0.1")
        add_peer("DEAD", "10.0.0.2", created_at=NOW - SESSION_EXPIRY - timedelta(seconds=1))
        assert [p.public_key for p in store.list_live_peers_by_profile("office")] == ["LIVE"]

    def test_policy_change_applies_without_rewriting_rows(self, store, add_peer):
        add_peer("A", "10.0.0.1", created_at=NOW - timedelta(days=10))
        store.expiry = ExpiryPolicy(timedelta(days=7), clock=lambda: NOW)
        assert store.list_live_peers_by_profile("office") == []

    def test_certificate_window(self, store, add_cert):
        add_cert("cn-live")
        add_cert("cn-future", valid_from=NOW + timedelta(minutes=1))
        add_cert("cn-ended", valid_to=NOW)
        assert [c.common_name for c in store.list_live_certs_by_profile("legacy")] == ["cn-live"]

    def test_disabled_user_excluded(self, store, add_peer, add_cert):
        add_peer("A", "10.0.0.1", user_id="bob")
        add_cert("cn-bob", user_id="bob")
        store.disable_user("bob")
        assert store.list_live_peers_by_profile("office") == []
        assert store.list_live_certs_by_profile("legacy") == []

    def test_duplicate_public_key_rejected(self, store, add_peer):
        add_peer("A", "10.0.0.1")
        with pytest.raises(IntegrityError):
            add_peer("A", "10.0.0.2", user_id="bob")

    def test_duplicate_common_name_rejected(self, store, add_cert):
        add_cert("cn-1")
        with pytest.raises(IntegrityError):
            add_cert("cn-1", user_id="bob")

    def test_list_by_auth_key(self, store, add_peer, add_cert):
        add_peer("P1", "10.0.0.1", auth_key="k1")
        add_peer("P2", "10.0.0.2", auth_key="k2")
        add_cert("cn-1", auth_key="k1")
        peers, certs = store.list_by_auth_key("k1")
        assert [p.public_key for p in peers] == ["P1"]
        assert [c.common_name for c in certs] == ["cn-1"]

    def test_allocated_ip_fours(self, store, add_peer):
        add_peer("A", "10.0.0.1")
        add_peer("B", "10.0.0.2")
        assert store.allocated_ip_fours() == {"10.0.0.1", "10.0.0.2"}


class TestConnectionLog:
    def test_reuse_force_closes_stale_entry(self, store, add_cert):
        add_cert("cn-old")
        add_cert("cn-new")
        store.client_connect("legacy", "cn-old", "10.0.0.5", "fd00::5", T1)

        store.client_connect("legacy", "cn-new", "10.0.0.5", "fd00::5", T2)

        entries = {e.common_name: e for e in store.connection_log_for_user("alice")}
        assert entries["cn-old"].disconnected_at == T2
        assert entries["cn-old"].client_lost is True
        assert entries["cn-new"].connected_at == T2
        assert entries["cn-new"].disconnected_at is None
        assert [e.common_name for e in store.open_connections("legacy")] == ["cn-new"]

    def test_reuse_on_other_profile_is_independent(self, store):
        store.client_connect("legacy", "cn-1", "10.0.0.5", "fd00::5", T1)
        store.client_connect("other", "cn-2", "10.0.0.5", "fd00::5", T2)
        assert len(store.open_connections()) == 2

    def test_disconnect_closes_exactly_once(self, store, add_cert):
        add_cert("cn-1")
        store.client_connect("legacy", "cn-1", "10.0.0.5", "fd00::5", T1)

        assert store.client_disconnect("legacy", "cn-1", "10.0.0.5", "fd00::5", T1, T2, 4096) is True
        assert store.client_disconnect("legacy", "cn-1", "10.0.0.5", "fd00::5", T1, NOW, 9999) is False

        (entry,) = store.connection_log_for_user("alice")
        assert entry.disconnected_at == T2
        assert entry.bytes_transferred == 4096
        assert entry.client_lost is False

    def test_late_disconnect_after_force_close_is_ignored(self, store):
        store.client_connect("legacy", "cn-1", "10.0.0.5", "fd00::5", T1)
        store.client_connect("legacy", "cn-2", "10.0.0.5", "fd00::5", T2)
        assert store.client_disconnect("legacy", "cn-1", "10.0.0.5", "fd00::5", T1, NOW, 1) is False

    def test_user_resolution(self, store, add_peer):
        add_peer("WGKEY", "10.0.0.1", user_id="carol")
        store.client_connect("office", "WGKEY", "10.0.0.1", "fd00::1", T1)
        store.client_connect("legacy", "cn-unknown", "10.0.0.9", "fd00::9", T1)
        users = {e.common_name: e.user_id for e in store.open_connections()}
        assert users == {"WGKEY": "carol", "cn-unknown": None}

    def test_point_in_time_lookup(self, store):
        store.client_connect("legacy", "cn-1", "10.0.0.5", "fd00::5", T1)
        store.client_disconnect("legacy", "cn-1", "10.0.0.5", "fd00::5", T1, T2, 0)
        store.client_connect("legacy", "cn-2", "10.0.0.5", "fd00::5", T2 + timedelta(minutes=10))

        middle = T1 + timedelta(minutes=30)
        assert [e.common_name for e in store.get_log_entries(middle, "10.0.0.5")] == ["cn-1"]
        assert [e.common_name for e in store.get_log_entries(middle, "fd00::5")] == ["cn-1"]
        assert store.get_log_entries(T2 + timedelta(minutes=5), "10.0.0.5") == []
        assert [e.common_name for e in store.get_log_entries(NOW, "10.0.0.5")] == ["cn-2"]
        assert store.get_log_entries(T1 - timedelta(minutes=1), "10.0.0.5") == []

    def test_addresses_match_in_any_spelling(self, store):
        store.client_connect("legacy", "cn-1", "10.0.0.5", "fd00:0::5", T1)

        (entry,) = store.open_connections()
        assert entry.ip_six == "fd00::5"
        assert [e.common_name for e in store.get_log_entries(T1, "FD00:0:0::5")] == ["cn-1"]
        assert store.client_disconnect("legacy", "cn-1", "10.0.0.5", "FD00::5", T1, T2, 0) is True
        assert store.open_connections() == []

    def test_invalid_address_rejected(self, store):
        with pytest.raises(ValueError):
            store.get_log_entries(T1, "not-an-ip")

    def test_retention_only_purges_closed_entries(self, store):
        old = NOW - timedelta(days=40)
        store.client_connect("legacy", "cn-closed", "10.0.0.5", "fd00::5", old)
        store.client_disconnect("legacy", "cn-closed", "10.0.0.5", "fd00::5", old, old + timedelta(hours=1), 0)
        store.client_connect("legacy", "cn-open", "10.0.0.6", "fd00::6", old)

        assert store.clean_connection_log(NOW - timedelta(days=30)) == 1
        assert [e.common_name for e in store.open_connections()] == ["cn-open"]


class TestUsers:
    def test_ensure_user_is_idempotent(self, store):
        store.ensure_user("dave")
        store.ensure_user("dave")
        assert [u.user_id for u in store.list_users()] == ["dave"]
        assert store.user_exists("dave")
        assert not store.is_disabled("dave")

    def test_unknown_user_counts_as_enabled(self, store):
        assert store.is_disabled("ghost") is False

    def test_delete_user_keeps_connection_log(self, store, add_peer, add_cert):
        add_peer("A", "10.0.0.1")
        add_cert("cn-1")
        store.store_authorization(Authorization("k1", "alice", "org.example.app", "config", NOW))
        store.add_user_log("alice", "info", "hello")
        store.client_connect("legacy", "cn-1", "10.0.0.5", "fd00::5", T1)

        assert store.delete_user("alice") is True

        assert not store.user_exists("alice")
        assert store.list_peers_by_user("alice") == []
        assert store.list_certs_by_user("alice") == []
        assert store.list_authorizations("alice") == []
        assert store.user_log("alice") == []
        assert [e.user_id for e in store.get_log_entries(NOW, "10.0.0.5")] == ["alice"]

    def test_user_log_newest_first_and_retention(self, store):
        store.add_user_log("alice", "info", "first", NOW - timedelta(days=40))
        store.add_user_log("alice", "notice", "second", NOW)
        assert [e.message for e in store.user_log("alice")] == ["second", "first"]
        assert store.clean_user_log(NOW - timedelta(days=30)) == 1
        assert [e.message for e in store.user_log("alice")] == ["second"]


class TestAuthorizationsAndSweeps:
    def test_authorization_expiry(self, store):
        store.store_authorization(Authorization("fresh", "alice", "app", "config", NOW - timedelta(days=1)))
        store.store_authorization(Authorization("stale", "alice", "app", "config", NOW - SESSION_EXPIRY))
        assert store.has_authorization("fresh")
        assert not store.has_authorization("stale")
        assert not store.has_authorization("missing")
        assert [a.auth_key for a in store.list_expired_authorizations()] == ["stale"]
        assert store.clean_expired_authorizations() == 1
        assert [a.auth_key for a in store.list_authorizations("alice")] == ["fresh"]

    def test_replayed_auth_key_rejected(self, store):
        store.store_authorization(Authorization("k1", "alice", "app", "config", NOW))
        with pytest.raises(IntegrityError):
            store.store_authorization(Authorization("k1", "alice", "app", "config", NOW))

    def test_expiry_sweeps(self, store, add_peer, add_cert):
        add_peer("LIVE", "10.0.0.1")
        add_peer("DEAD", "10.0.0.2", created_at=NOW - SESSION_EXPIRY - timedelta(days=1))
        add_cert("cn-live")
        add_cert("cn-dead", valid_to=NOW - timedelta(days=1))

        assert store.clean_expired_peers() == 1
        assert store.clean_expired_certificates() == 1
        assert store.get_peer("DEAD") is None
        assert store.get_certificate("cn-dead") is None
        assert store.get_peer("LIVE") is not None


class TestStatistics:
    def test_app_usage_counts_distinct_users(self, store, add_peer, add_cert):
        add_peer("P1", "10.0.0.1", client_id="org.example.app")
        add_peer("P2", "10.0.0.2", client_id="org.example.app")
        add_cert("cn-1", user_id="bob", client_id="org.example.app")
        add_cert("cn-2", user_id="bob", client_id="org.other.app")
        add_peer("P3", "10.0.0.3")
        assert store.app_usage() == [
            {"client_id": "org.example.app", "client_count": 2},
            {"client_id": "org.other.app", "client_count": 1},
        ]

    def test_profile_stats(self, store, add_cert):
        add_cert("cn-a")
        add_cert("cn-b", user_id="bob")
        t1000 = NOW - timedelta(hours=4)
        t1030 = t1000 + timedelta(minutes=30)
        t1100 = t1000 + timedelta(hours=1)
        t1200 = t1000 + timedelta(hours=2)
        store.client_connect("legacy", "cn-a", "10.0.0.1", "fd00::1", t1000)
        store.client_disconnect("legacy", "cn-a", "10.0.0.1", "fd00::1", t1000, t1100, 100)
        store.client_connect("legacy", "cn-b", "10.0.0.2", "fd00::2", t1030)
        store.client_disconnect("legacy", "cn-b", "10.0.0.2", "fd00::2", t1030, t1200, 50)
        store.client_connect("legacy", "cn-a", "10.0.0.3", "fd00::3", t1100)

        stats = store.profile_stats()["legacy"]

        assert stats["total_traffic"] == 150
        assert stats["unique_user_count"] == 2
        assert stats["max_concurrent_connections"] == 2
        assert stats["max_concurrent_connections_time"] == to_iso(t1030)


def test_unreachable_database_raises_store_error(expiry):
    with pytest.raises(StoreError):
        CredentialStore("sqlite:////nonexistent-dir/vpnwarden/creds.db", expiry)
