"""
api/routes/v1/admin.py -- Account administration, connection log and sync.

Routes:
  GET    /api/v1/users                        -- all VPN users
  GET    /api/v1/users/{user_id}              -- configurations, grants and logs of one user
  POST   /api/v1/users/{user_id}/actions      -- disable | enable | delete
  DELETE /api/v1/authorizations/{auth_key}    -- revoke one OAuth grant
  GET    /api/v1/connections                  -- live sessions per profile, from the nodes
  GET    /api/v1/log?at=&ip=                  -- who held an address at a given time
  GET    /api/v1/stats                        -- per-profile usage and per-client adoption
  POST   /api/v1/sync                         -- run a reconciliation pass now

Every route requires an admin API key (require_admin).

Account actions and revocations return only after the affected sessions
were disconnected (or the failure was logged); the response lists what was
terminated.
"""

from __future__ import annotations

import ipaddress
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import (
    AppUsageRow,
    AuthorizationRow,
    CertificateRow,
    ConnectionLogRow,
    ConnectionRow,
    NodeReportRow,
    PeerRow,
    ProfileStatsRow,
    RevocationResponse,
    StatsResponse,
    SyncResponse,
    UserActionEnum,
    UserActionRequest,
    UserDetail,
    UserLogRow,
    UserSummary,
)
from auth.dependencies import require_admin
from auth.models import User
from core.accounts import AccountService
from core.config import now_utc
from core.connections import ConnectionManager
from core.errors import UnknownAccount
from core.reconcile import ReconciliationEngine
from credentials.store import CredentialStore

router = APIRouter(dependencies=[Depends(require_admin)])


def _not_found(user_id: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "not_found", "message": f"Account '{user_id}' does not exist."},
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserSummary])
def list_users(request: Request) -> list[UserSummary]:
    store: CredentialStore = request.app.state.store
    return [UserSummary.from_user(u) for u in store.list_users()]


@router.get("/users/{user_id}", response_model=UserDetail)
def get_user(request: Request, user_id: str) -> UserDetail:
    store: CredentialStore = request.app.state.store
    user = store.get_user(user_id)
    if user is None:
        raise _not_found(user_id)
    return UserDetail(
        user_id=user.user_id,
        created_at=user.created_at,
        is_disabled=user.is_disabled,
        peers=[PeerRow.from_peer(p, store.expiry.peer_expires_at(p.created_at)) for p in store.list_peers_by_user(user_id)],
        certificates=[CertificateRow.from_certificate(c) for c in store.list_certs_by_user(user_id)],
        authorizations=[AuthorizationRow.from_authorization(a) for a in store.list_authorizations(user_id)],
        user_log=[UserLogRow.from_entry(e) for e in store.user_log(user_id)],
        connection_log=[ConnectionLogRow.from_entry(e) for e in store.connection_log_for_user(user_id)],
    )


@router.post("/users/{user_id}/actions", response_model=RevocationResponse)
def user_action(
    request: Request,
    user_id: str,
    body: UserActionRequest,
    current_user: User = Depends(require_admin),
) -> RevocationResponse:
    """Disable, enable or delete an account. Admins cannot act on their own account."""
    if current_user.username == user_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "own_account", "message": "Cannot manage your own account."},
        )
    accounts: AccountService = request.app.state.accounts
    try:
        if body.action == UserActionEnum.disable:
            result = accounts.disable_account(user_id, actor=current_user.username)
        elif body.action == UserActionEnum.enable:
            accounts.enable_account(user_id, actor=current_user.username)
            return RevocationResponse(
                noop=True, peers_removed=[], certificates_disconnected=[], certificates_deleted=[], failures=[]
            )
        else:
            result = accounts.delete_account(user_id, actor=current_user.username)
    except UnknownAccount:
        raise _not_found(user_id) from None
    return RevocationResponse.from_result(result)


@router.delete("/authorizations/{auth_key}", response_model=RevocationResponse)
def revoke_authorization(request: Request, auth_key: str) -> RevocationResponse:
    accounts: AccountService = request.app.state.accounts
    store: CredentialStore = request.app.state.store
    if store.get_authorization(auth_key) is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Authorization does not exist."},
        )
    return RevocationResponse.from_result(accounts.revoke_authorization(auth_key))


# ---------------------------------------------------------------------------
# Connections and log
# ---------------------------------------------------------------------------


@router.get("/connections", response_model=dict[str, list[ConnectionRow]])
def list_connections(request: Request) -> dict[str, list[ConnectionRow]]:
    connections: ConnectionManager = request.app.state.connections
    return {
        profile_id: [ConnectionRow(**entry) for entry in entries]
        for profile_id, entries in connections.list_connections().items()
    }


@router.get("/log", response_model=list[ConnectionLogRow])
def query_log(
    request: Request,
    at: datetime = Query(..., description="Point in time, ISO 8601"),
    ip: str = Query(..., max_length=45, description="IPv4 or IPv6 address"),
) -> list[ConnectionLogRow]:
    """Return the sessions that held `ip` at time `at`."""
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    if at > now_utc():
        raise HTTPException(
            status_code=400,
            detail={"code": "future_time", "message": "Cannot query the log in the future."},
        )
    try:
        ip = str(ipaddress.ip_address(ip))
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_ip", "message": f"'{ip}' is not an IP address."},
        ) from None
    store: CredentialStore = request.app.state.store
    return [ConnectionLogRow.from_entry(e) for e in store.get_log_entries(at, ip)]


# ---------------------------------------------------------------------------
# Stats and sync
# ---------------------------------------------------------------------------


@router.get("/stats", response_model=StatsResponse)
def stats(request: Request) -> StatsResponse:
    store: CredentialStore = request.app.state.store
    return StatsResponse(
        profiles={pid: ProfileStatsRow(**row) for pid, row in store.profile_stats().items()},
        app_usage=[AppUsageRow(**row) for row in store.app_usage()],
    )


@router.post("/sync", response_model=SyncResponse)
def sync(request: Request) -> SyncResponse:
    """Run a reconciliation pass over every node and report what it did."""
    engine: ReconciliationEngine = request.app.state.engine
    report = engine.run()
    return SyncResponse(
        call_count=report.call_count,
        failure_count=report.failure_count,
        nodes=[NodeReportRow.from_report(n) for n in report.nodes],
    )
