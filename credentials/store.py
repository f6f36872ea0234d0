"""
credentials/store.py -- SQLAlchemy-backed credential store for VPNWarden.

Authoritative record of what *should* exist on the gateway nodes: WireGuard
peers, OpenVPN certificates, OAuth authorizations, plus the connection log
and the per-user event log.

Uses SQLAlchemy Core (not ORM) so the dataclasses in credentials/models.py
remain the domain representation. Pattern: Repository + Data Mapper.
CredentialStore is the repository; the _row_to_* functions are the mappers.

Security: all queries use bound parameters. No f-strings in SQL.

Liveness: the list_live_* reads exclude expired entries (see
core/expiry.py) and entries owned by disabled portal users. Those are the
desired state of the reconciliation engine.

Usage:
    store = CredentialStore("sqlite:///vpnwarden.db", ExpiryPolicy(timedelta(days=90)))
    store.add_peer(peer)
    peers = store.list_live_peers_by_profile("office")
    store.client_connect("office", "cn-1", "10.0.0.5", "fd00::5", connected_at)
    store.close()
"""

import ipaddress
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    desc,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from core.config import from_iso, to_iso
from core.errors import StoreError
from core.expiry import ExpiryPolicy
from credentials.models import Authorization, Certificate, ConnectionLogEntry, Peer, PortalUser, UserLogEntry

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("user_id", String(255), primary_key=True),
    Column("created_at", String(32), nullable=False),
    Column("is_disabled", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
)

_peers = Table(
    "wg_peers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=False),
    Column("profile_id", String(64), nullable=False),
    Column("display_name", String(255), nullable=False),
    Column("public_key", String(64), nullable=False, unique=True),
    Column("ip_four", String(45), nullable=False),
    Column("ip_six", String(45), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("client_id", String(255)),
    Column("auth_key", String(255)),
)

_certificates = Table(
    "certificates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("common_name", String(255), nullable=False, unique=True),
    Column("user_id", String(255), nullable=False),
    Column("profile_id", String(64), nullable=False),
    Column("display_name", String(255), nullable=False),
    Column("valid_from", String(32), nullable=False),
    Column("valid_to", String(32), nullable=False),
    Column("client_id", String(255)),
    Column("auth_key", String(255)),
)

_connection_log = Table(
    "connection_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255)),  # NULL when the common name is unknown
    Column("profile_id", String(64), nullable=False),
    Column("common_name", String(255), nullable=False),
    Column("ip_four", String(45), nullable=False),
    Column("ip_six", String(45), nullable=False),
    Column("connected_at", String(32), nullable=False),
    Column("disconnected_at", String(32)),
    Column("bytes_transferred", Integer, nullable=False, server_default="0"),
    Column("client_lost", Integer, nullable=False, server_default="0"),
)

_authorizations = Table(
    "authorizations",
    metadata,
    Column("auth_key", String(255), primary_key=True),
    Column("user_id", String(255), nullable=False),
    Column("client_id", String(255), nullable=False),
    Column("scope", String(255), nullable=False),
    Column("auth_time", String(32), nullable=False),
)

_user_log = Table(
    "user_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=False),
    Column("level", String(16), nullable=False),
    Column("message", Text, nullable=False),
    Column("date_time", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode per connection.

    SQLite PRAGMAs are not inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _canonical_ip(address: str) -> str:
    """Return the canonical text form of an IPv4 or IPv6 address. Raises ValueError."""
    return str(ipaddress.ip_address(address))


def _disabled_user_ids():
    return select(_users.c.user_id).where(_users.c.is_disabled == 1)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    def __init__(self, db_url: str, expiry: ExpiryPolicy) -> None:
        self.expiry = expiry
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        try:
            self.engine: Engine = create_engine(db_url, connect_args=connect_args)
            if db_url.startswith("sqlite"):
                event.listen(self.engine, "connect", _set_sqlite_pragmas)
            metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StoreError(f"credential store unavailable: {e}") from e

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    # ------------------------------------------------------------------
    # WireGuard peers
    # ------------------------------------------------------------------

    def add_peer(self, peer: Peer) -> int:
        """Record an issued peer. Raises IntegrityError on a duplicate public key."""
        self.ensure_user(peer.user_id)
        with self.engine.connect() as conn:
            result = conn.execute(
                _peers.insert().values(
                    user_id=peer.user_id,
                    profile_id=peer.profile_id,
                    display_name=peer.display_name,
                    public_key=peer.public_key,
                    ip_four=peer.ip_four,
                    ip_six=peer.ip_six,
                    created_at=to_iso(peer.created_at),
                    client_id=peer.client_id,
                    auth_key=peer.auth_key,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_peer(self, public_key: str) -> Optional[Peer]:
        with self.engine.connect() as conn:
            row = conn.execute(_peers.select().where(_peers.c.public_key == public_key)).fetchone()
        return _row_to_peer(row) if row is not None else None

    def list_peers_by_user(self, user_id: str) -> list[Peer]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _peers.select().where(_peers.c.user_id == user_id).order_by(_peers.c.created_at)
            ).fetchall()
        return [_row_to_peer(r) for r in rows]

    def list_live_peers_by_profile(self, profile_id: str, now: Optional[datetime] = None) -> list[Peer]:
        """Return the non-expired peers of a profile owned by enabled users."""
        cutoff = to_iso(self.expiry.peer_cutoff(now))
        with self.engine.connect() as conn:
            rows = conn.execute(
                _peers.select()
                .where(
                    (_peers.c.profile_id == profile_id)
                    & (_peers.c.created_at > cutoff)
                    & _peers.c.user_id.not_in(_disabled_user_ids())
                )
                .order_by(_peers.c.created_at)
            ).fetchall()
        return [_row_to_peer(r) for r in rows]

    def delete_peer(self, user_id: str, public_key: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _peers.delete().where((_peers.c.user_id == user_id) & (_peers.c.public_key == public_key))
            )
            conn.commit()
        return result.rowcount > 0

    def allocated_ip_fours(self) -> set[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_peers.c.ip_four)).fetchall()
        return {r.ip_four for r in rows}

    def clean_expired_peers(self, now: Optional[datetime] = None) -> int:
        """Delete peers whose session-derived lifetime has ended. Returns rows removed."""
        cutoff = to_iso(self.expiry.peer_cutoff(now))
        with self.engine.connect() as conn:
            result = conn.execute(_peers.delete().where(_peers.c.created_at <= cutoff))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # OpenVPN certificates
    # ------------------------------------------------------------------

    def add_certificate(self, cert: Certificate) -> int:
        """Record an issued certificate. Raises IntegrityError on a duplicate common name."""
        self.ensure_user(cert.user_id)
        with self.engine.connect() as conn:
            result = conn.execute(
                _certificates.insert().values(
                    common_name=cert.common_name,
                    user_id=cert.user_id,
                    profile_id=cert.profile_id,
                    display_name=cert.display_name,
                    valid_from=to_iso(cert.valid_from),
                    valid_to=to_iso(cert.valid_to),
                    client_id=cert.client_id,
                    auth_key=cert.auth_key,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_certificate(self, common_name: str) -> Optional[Certificate]:
        with self.engine.connect() as conn:
            row = conn.execute(_certificates.select().where(_certificates.c.common_name == common_name)).fetchone()
        return _row_to_certificate(row) if row is not None else None

    def list_certs_by_user(self, user_id: str) -> list[Certificate]:
        """Return all certificates of a user, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _certificates.select()
                .where(_certificates.c.user_id == user_id)
                .order_by(_certificates.c.valid_from.desc())
            ).fetchall()
        return [_row_to_certificate(r) for r in rows]

    def list_live_certs_by_profile(self, profile_id: str, now: Optional[datetime] = None) -> list[Certificate]:
        """Return certificates of a profile inside their validity window, owned by enabled users."""
        now_str = to_iso(now or self.expiry.now())
        with self.engine.connect() as conn:
            rows = conn.execute(
                _certificates.select().where(
                    (_certificates.c.profile_id == profile_id)
                    & (_certificates.c.valid_from <= now_str)
                    & (_certificates.c.valid_to > now_str)
                    & _certificates.c.user_id.not_in(_disabled_user_ids())
                )
            ).fetchall()
        return [_row_to_certificate(r) for r in rows]

    def delete_certificate(self, common_name: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_certificates.delete().where(_certificates.c.common_name == common_name))
            conn.commit()
        return result.rowcount > 0

    def clean_expired_certificates(self, now: Optional[datetime] = None) -> int:
        now_str = to_iso(now or self.expiry.now())
        with self.engine.connect() as conn:
            result = conn.execute(_certificates.delete().where(_certificates.c.valid_to <= now_str))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Grant-scoped reads
    # ------------------------------------------------------------------

    def list_by_auth_key(self, auth_key: str) -> tuple[list[Peer], list[Certificate]]:
        """Return the peers and certificates issued under one OAuth grant."""
        with self.engine.connect() as conn:
            peer_rows = conn.execute(_peers.select().where(_peers.c.auth_key == auth_key)).fetchall()
            cert_rows = conn.execute(_certificates.select().where(_certificates.c.auth_key == auth_key)).fetchall()
        return [_row_to_peer(r) for r in peer_rows], [_row_to_certificate(r) for r in cert_rows]

    # ------------------------------------------------------------------
    # OAuth authorizations
    # ------------------------------------------------------------------

    def store_authorization(self, authorization: Authorization) -> None:
        """Insert an authorization. The auth_key primary key makes replays fail with IntegrityError."""
        self.ensure_user(authorization.user_id)
        with self.engine.connect() as conn:
            conn.execute(
                _authorizations.insert().values(
                    auth_key=authorization.auth_key,
                    user_id=authorization.user_id,
                    client_id=authorization.client_id,
                    scope=authorization.scope,
                    auth_time=to_iso(authorization.auth_time),
                )
            )
            conn.commit()

    def get_authorization(self, auth_key: str) -> Optional[Authorization]:
        with self.engine.connect() as conn:
            row = conn.execute(_authorizations.select().where(_authorizations.c.auth_key == auth_key)).fetchone()
        return _row_to_authorization(row) if row is not None else None

    def has_authorization(self, auth_key: str, now: Optional[datetime] = None) -> bool:
        """True if the authorization exists and has not outlived the session expiry."""
        authorization = self.get_authorization(auth_key)
        if authorization is None:
            return False
        return self.expiry.is_authorization_live(authorization.auth_time, now)

    def list_authorizations(self, user_id: str) -> list[Authorization]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _authorizations.select()
                .where(_authorizations.c.user_id == user_id)
                .order_by(_authorizations.c.auth_time)
            ).fetchall()
        return [_row_to_authorization(r) for r in rows]

    def delete_authorization(self, auth_key: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_authorizations.delete().where(_authorizations.c.auth_key == auth_key))
            conn.commit()
        return result.rowcount > 0

    def list_expired_authorizations(self, now: Optional[datetime] = None) -> list[Authorization]:
        cutoff = to_iso((now or self.expiry.now()) - self.expiry.session_expiry)
        with self.engine.connect() as conn:
            rows = conn.execute(_authorizations.select().where(_authorizations.c.auth_time <= cutoff)).fetchall()
        return [_row_to_authorization(r) for r in rows]

    def clean_expired_authorizations(self, now: Optional[datetime] = None) -> int:
        cutoff = to_iso((now or self.expiry.now()) - self.expiry.session_expiry)
        with self.engine.connect() as conn:
            result = conn.execute(_authorizations.delete().where(_authorizations.c.auth_time <= cutoff))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Connection log
    # ------------------------------------------------------------------

    def client_connect(
        self,
        profile_id: str,
        common_name: str,
        ip_four: str,
        ip_six: str,
        connected_at: datetime,
    ) -> int:
        """Open a connection log entry, force-closing any stale entry on the same addresses.

        A gateway process that dies never reports its disconnects, leaving
        entries open forever. When a new session gets the exact same
        (profile_id, ip_four, ip_six) tuple the old session cannot still be
        running, so its entry is closed at the new connect time and flagged
        client_lost. Both steps run in one transaction, which keeps at most
        one open entry per tuple. If a crash lands between them anyway, the
        next connect on the tuple closes the dangling entry.

        user_id is resolved now and stored, so the log stays attributable
        after the certificate or the whole account is deleted.

        Returns the id of the new entry.
        """
        ip_four, ip_six = _canonical_ip(ip_four), _canonical_ip(ip_six)
        connected_str = to_iso(connected_at)
        with self.engine.begin() as conn:
            conn.execute(
                _connection_log.update()
                .where(
                    (_connection_log.c.profile_id == profile_id)
                    & (_connection_log.c.ip_four == ip_four)
                    & (_connection_log.c.ip_six == ip_six)
                    & _connection_log.c.disconnected_at.is_(None)
                )
                .values(disconnected_at=connected_str, client_lost=1)
            )
            user_id = conn.execute(
                select(_certificates.c.user_id).where(_certificates.c.common_name == common_name)
            ).scalar()
            if user_id is None:
                user_id = conn.execute(select(_peers.c.user_id).where(_peers.c.public_key == common_name)).scalar()
            result = conn.execute(
                _connection_log.insert().values(
                    user_id=user_id,
                    profile_id=profile_id,
                    common_name=common_name,
                    ip_four=ip_four,
                    ip_six=ip_six,
                    connected_at=connected_str,
                    bytes_transferred=0,
                    client_lost=0,
                )
            )
            return result.inserted_primary_key[0]

    def client_disconnect(
        self,
        profile_id: str,
        common_name: str,
        ip_four: str,
        ip_six: str,
        connected_at: datetime,
        disconnected_at: datetime,
        bytes_transferred: int,
    ) -> bool:
        """Close the open entry for this exact session. Returns False if none matched.

        An entry already force-closed as lost is left alone; it was closed
        exactly once already.
        """
        ip_four, ip_six = _canonical_ip(ip_four), _canonical_ip(ip_six)
        with self.engine.connect() as conn:
            result = conn.execute(
                _connection_log.update()
                .where(
                    (_connection_log.c.profile_id == profile_id)
                    & (_connection_log.c.common_name == common_name)
                    & (_connection_log.c.ip_four == ip_four)
                    & (_connection_log.c.ip_six == ip_six)
                    & (_connection_log.c.connected_at == to_iso(connected_at))
                    & _connection_log.c.disconnected_at.is_(None)
                )
                .values(disconnected_at=to_iso(disconnected_at), bytes_transferred=bytes_transferred)
            )
            conn.commit()
        return result.rowcount > 0

    def open_connections(self, profile_id: Optional[str] = None) -> list[ConnectionLogEntry]:
        stmt = _connection_log.select().where(_connection_log.c.disconnected_at.is_(None))
        if profile_id is not None:
            stmt = stmt.where(_connection_log.c.profile_id == profile_id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_connection_log.c.connected_at)).fetchall()
        return [_row_to_log_entry(r) for r in rows]

    def connection_log_for_user(self, user_id: str) -> list[ConnectionLogEntry]:
        """Return a user's sessions, most recent first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _connection_log.select()
                .where(_connection_log.c.user_id == user_id)
                .order_by(_connection_log.c.connected_at.desc())
            ).fetchall()
        return [_row_to_log_entry(r) for r in rows]

    def get_log_entries(self, at: datetime, ip_address: str) -> list[ConnectionLogEntry]:
        """Return the sessions that held ip_address (v4 or v6) at instant `at`."""
        at_str = to_iso(at)
        ip_address = _canonical_ip(ip_address)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _connection_log.select()
                .where(
                    ((_connection_log.c.ip_four == ip_address) | (_connection_log.c.ip_six == ip_address))
                    & (_connection_log.c.connected_at <= at_str)
                    & or_(_connection_log.c.disconnected_at.is_(None), _connection_log.c.disconnected_at > at_str)
                )
                .order_by(_connection_log.c.connected_at)
            ).fetchall()
        return [_row_to_log_entry(r) for r in rows]

    def clean_connection_log(self, before: datetime) -> int:
        """Delete closed entries that started before `before`. Open entries are never purged."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _connection_log.delete().where(
                    (_connection_log.c.connected_at < to_iso(before)) & _connection_log.c.disconnected_at.isnot(None)
                )
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Portal users
    # ------------------------------------------------------------------

    def ensure_user(self, user_id: str) -> None:
        """Create the users row on first sight. Safe to call repeatedly."""
        with self.engine.connect() as conn:
            exists = conn.execute(select(_users.c.user_id).where(_users.c.user_id == user_id)).fetchone()
            if exists is None:
                conn.execute(_users.insert().values(user_id=user_id, created_at=to_iso(self.expiry.now())))
                conn.commit()

    def user_exists(self, user_id: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.user_id).where(_users.c.user_id == user_id)).fetchone()
        return row is not None

    def list_users(self) -> list[PortalUser]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.user_id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def get_user(self, user_id: str) -> Optional[PortalUser]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.user_id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_disabled(self, user_id: str, disabled: bool) -> None:
        self.ensure_user(user_id)
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.user_id == user_id).values(is_disabled=1 if disabled else 0))
            conn.commit()

    def disable_user(self, user_id: str) -> None:
        self.set_disabled(user_id, True)

    def enable_user(self, user_id: str) -> None:
        self.set_disabled(user_id, False)

    def is_disabled(self, user_id: str) -> bool:
        user = self.get_user(user_id)
        return user is not None and user.is_disabled

    def delete_user(self, user_id: str) -> bool:
        """Delete a user and everything they own, except the connection log.

        The connection log is kept for the point-in-time address lookup; its
        rows carry user_id by value and survive the account.
        """
        with self.engine.begin() as conn:
            conn.execute(_peers.delete().where(_peers.c.user_id == user_id))
            conn.execute(_certificates.delete().where(_certificates.c.user_id == user_id))
            conn.execute(_authorizations.delete().where(_authorizations.c.user_id == user_id))
            conn.execute(_user_log.delete().where(_user_log.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.user_id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # User event log
    # ------------------------------------------------------------------

    def add_user_log(self, user_id: str, level: str, message: str, date_time: Optional[datetime] = None) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _user_log.insert().values(
                    user_id=user_id,
                    level=level,
                    message=message,
                    date_time=to_iso(date_time or self.expiry.now()),
                )
            )
            conn.commit()

    def user_log(self, user_id: str) -> list[UserLogEntry]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_log.select()
                .where(_user_log.c.user_id == user_id)
                .order_by(_user_log.c.date_time.desc(), _user_log.c.id.desc())
            ).fetchall()
        return [
            UserLogEntry(
                id=r.id,
                user_id=r.user_id,
                level=r.level,
                message=r.message,
                date_time=from_iso(r.date_time),
            )
            for r in rows
        ]

    def clean_user_log(self, before: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_user_log.delete().where(_user_log.c.date_time < to_iso(before)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def app_usage(self) -> list[dict]:
        """Return the number of distinct users per issuing OAuth client, most used first."""
        issued = (
            select(_certificates.c.client_id, _certificates.c.user_id)
            .where(_certificates.c.client_id.isnot(None))
            .union_all(select(_peers.c.client_id, _peers.c.user_id).where(_peers.c.client_id.isnot(None)))
            .subquery()
        )
        stmt = (
            select(issued.c.client_id, func.count(func.distinct(issued.c.user_id)).label("client_count"))
            .group_by(issued.c.client_id)
            .order_by(desc("client_count"), issued.c.client_id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [{"client_id": r.client_id, "client_count": r.client_count} for r in rows]

    def profile_stats(self) -> dict[str, dict]:
        """Return traffic, unique users and peak concurrency per profile from the connection log.

        Peak concurrency is computed with a sweep over connect/disconnect
        instants in Python; open sessions count as still connected.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(
                    _connection_log.c.profile_id,
                    _connection_log.c.user_id,
                    _connection_log.c.connected_at,
                    _connection_log.c.disconnected_at,
                    _connection_log.c.bytes_transferred,
                )
            ).fetchall()

        stats: dict[str, dict] = {}
        events: dict[str, list[tuple[str, int]]] = {}
        users: dict[str, set] = {}
        for row in rows:
            entry = stats.setdefault(
                row.profile_id,
                {"total_traffic": 0, "unique_user_count": 0, "max_concurrent_connections": 0,
                 "max_concurrent_connections_time": None},
            )
            entry["total_traffic"] += row.bytes_transferred or 0
            if row.user_id is not None:
                users.setdefault(row.profile_id, set()).add(row.user_id)
            profile_events = events.setdefault(row.profile_id, [])
            profile_events.append((row.connected_at, 1))
            if row.disconnected_at is not None:
                profile_events.append((row.disconnected_at, -1))

        for profile_id, profile_events in events.items():
            # Disconnects sort before connects at the same instant, a lost
            # client closed at T does not overlap the session that opened at T.
            profile_events.sort(key=lambda e: (e[0], e[1]))
            current = 0
            for when, delta in profile_events:
                current += delta
                if current > stats[profile_id]["max_concurrent_connections"]:
                    stats[profile_id]["max_concurrent_connections"] = current
                    stats[profile_id]["max_concurrent_connections_time"] = when
            stats[profile_id]["unique_user_count"] = len(users.get(profile_id, ()))
        return stats

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _row_to_peer(row) -> Peer:
    return Peer(
        id=row.id,
        user_id=row.user_id,
        profile_id=row.profile_id,
        display_name=row.display_name,
        public_key=row.public_key,
        ip_four=row.ip_four,
        ip_six=row.ip_six,
        created_at=from_iso(row.created_at),
        client_id=row.client_id,
        auth_key=row.auth_key,
    )


def _row_to_certificate(row) -> Certificate:
    return Certificate(
        id=row.id,
        common_name=row.common_name,
        user_id=row.user_id,
        profile_id=row.profile_id,
        display_name=row.display_name,
        valid_from=from_iso(row.valid_from),
        valid_to=from_iso(row.valid_to),
        client_id=row.client_id,
        auth_key=row.auth_key,
    )


def _row_to_log_entry(row) -> ConnectionLogEntry:
    return ConnectionLogEntry(
        id=row.id,
        user_id=row.user_id,
        profile_id=row.profile_id,
        common_name=row.common_name,
        ip_four=row.ip_four,
        ip_six=row.ip_six,
        connected_at=from_iso(row.connected_at),
        disconnected_at=from_iso(row.disconnected_at) if row.disconnected_at else None,
        bytes_transferred=row.bytes_transferred or 0,
        client_lost=bool(row.client_lost),
    )


def _row_to_authorization(row) -> Authorization:
    return Authorization(
        auth_key=row.auth_key,
        user_id=row.user_id,
        client_id=row.client_id,
        scope=row.scope,
        auth_time=from_iso(row.auth_time),
    )


def _row_to_user(row) -> PortalUser:
    return PortalUser(
        user_id=row.user_id,
        created_at=from_iso(row.created_at),
        is_disabled=bool(row.is_disabled),
    )
