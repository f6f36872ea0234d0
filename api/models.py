"""
API request and response models for the VPNWarden REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py and
credentials/models.py, which own the internal domain representation. The
from_* factory methods colocate the mapping with the output model.
"""

import ipaddress
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.models import NodeReport, RevocationResult
from credentials.models import Authorization, Certificate, ConnectionLogEntry, Peer, PortalUser, UserLogEntry

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"  # "healthy" | "degraded"
    version: str
    components: dict[str, str]


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class ApiKeyRequest(BaseModel):
    """Request body for POST /api/v1/api-keys. Credentials are checked on every call."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    name: str = Field(min_length=1, max_length=100)


class ApiKeyCreatedResponse(BaseModel):
    """Returned once at creation; the raw key cannot be recovered afterwards."""

    id: int
    name: str
    key_prefix: str
    key: str


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    is_disabled: bool

    @classmethod
    def from_user(cls, user: PortalUser) -> "UserSummary":
        return cls(user_id=user.user_id, created_at=user.created_at, is_disabled=user.is_disabled)


class PeerRow(BaseModel):
    profile_id: str
    display_name: str
    public_key: str
    ip_four: str
    ip_six: str
    created_at: datetime
    expires_at: datetime
    client_id: Optional[str] = None

    @classmethod
    def from_peer(cls, peer: Peer, expires_at: datetime) -> "PeerRow":
        return cls(
            profile_id=peer.profile_id,
            display_name=peer.display_name,
            public_key=peer.public_key,
            ip_four=peer.ip_four,
            ip_six=peer.ip_six,
            created_at=peer.created_at,
            expires_at=expires_at,
            client_id=peer.client_id,
        )


class CertificateRow(BaseModel):
    profile_id: str
    display_name: str
    common_name: str
    valid_from: datetime
    valid_to: datetime
    client_id: Optional[str] = None

    @classmethod
    def from_certificate(cls, cert: Certificate) -> "CertificateRow":
        return cls(
            profile_id=cert.profile_id,
            display_name=cert.display_name,
            common_name=cert.common_name,
            valid_from=cert.valid_from,
            valid_to=cert.valid_to,
            client_id=cert.client_id,
        )


class AuthorizationRow(BaseModel):
    """An OAuth authorization as shown to admins. auth_key is the revocation handle."""

    auth_key: str
    client_id: str
    scope: str
    auth_time: datetime

    @classmethod
    def from_authorization(cls, authorization: Authorization) -> "AuthorizationRow":
        return cls(
            auth_key=authorization.auth_key,
            client_id=authorization.client_id,
            scope=authorization.scope,
            auth_time=authorization.auth_time,
        )


class UserLogRow(BaseModel):
    level: str
    message: str
    date_time: datetime

    @classmethod
    def from_entry(cls, entry: UserLogEntry) -> "UserLogRow":
        return cls(level=entry.level, message=entry.message, date_time=entry.date_time)


class ConnectionLogRow(BaseModel):
    user_id: Optional[str] = None
    profile_id: str
    common_name: str
    ip_four: str
    ip_six: str
    connected_at: datetime
    disconnected_at: Optional[datetime] = None
    bytes_transferred: int = 0
    client_lost: bool = False

    @classmethod
    def from_entry(cls, entry: ConnectionLogEntry) -> "ConnectionLogRow":
        return cls(
            user_id=entry.user_id,
            profile_id=entry.profile_id,
            common_name=entry.common_name,
            ip_four=entry.ip_four,
            ip_six=entry.ip_six,
            connected_at=entry.connected_at,
            disconnected_at=entry.disconnected_at,
            bytes_transferred=entry.bytes_transferred,
            client_lost=entry.client_lost,
        )


class UserDetail(BaseModel):
    user_id: str
    created_at: datetime
    is_disabled: bool
    peers: list[PeerRow]
    certificates: list[CertificateRow]
    authorizations: list[AuthorizationRow]
    user_log: list[UserLogRow]
    connection_log: list[ConnectionLogRow]


class UserActionEnum(str, Enum):
    disable = "disable"
    enable = "enable"
    delete = "delete"


class UserActionRequest(BaseModel):
    action: UserActionEnum


class RevocationResponse(BaseModel):
    """What an account action or authorization revocation terminated."""

    noop: bool
    peers_removed: list[str]
    certificates_disconnected: list[str]
    certificates_deleted: list[str]
    failures: list[str]

    @classmethod
    def from_result(cls, result: RevocationResult) -> "RevocationResponse":
        return cls(
            noop=result.is_noop,
            peers_removed=result.peers_removed,
            certificates_disconnected=result.certificates_disconnected,
            certificates_deleted=result.certificates_deleted,
            failures=result.failures,
        )


# ---------------------------------------------------------------------------
# Connections, sync and statistics
# ---------------------------------------------------------------------------


class ConnectionRow(BaseModel):
    user_id: Optional[str] = None
    display_name: Optional[str] = None
    public_key: Optional[str] = None
    common_name: Optional[str] = None
    ip_four: str = ""
    ip_six: str = ""
    node_url: str


class NodeReportRow(BaseModel):
    node_url: str
    added: list[str]
    removed: list[str]
    disconnected: list[str]
    already_satisfied: list[str]
    failures: list[str]

    @classmethod
    def from_report(cls, report: NodeReport) -> "NodeReportRow":
        return cls(
            node_url=report.node_url,
            added=report.added,
            removed=report.removed,
            disconnected=report.disconnected,
            already_satisfied=report.already_satisfied,
            failures=report.failures,
        )


class SyncResponse(BaseModel):
    call_count: int
    failure_count: int
    nodes: list[NodeReportRow]


class ProfileStatsRow(BaseModel):
    total_traffic: int
    unique_user_count: int
    max_concurrent_connections: int
    max_concurrent_connections_time: Optional[datetime] = None


class AppUsageRow(BaseModel):
    client_id: str
    client_count: int


class StatsResponse(BaseModel):
    profiles: dict[str, ProfileStatsRow]
    app_usage: list[AppUsageRow]


# ---------------------------------------------------------------------------
# Node events
# ---------------------------------------------------------------------------


class NodeConnectRequest(BaseModel):
    """Reported by a gateway when an OpenVPN client connects.

    Timestamps without an offset are taken as UTC. Addresses are stored in
    their canonical form so the point-in-time lookup matches any spelling.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    profile_id: str = Field(min_length=1, max_length=64)
    common_name: str = Field(min_length=1, max_length=255)
    ip_four: str = Field(min_length=1, max_length=45)
    ip_six: str = Field(min_length=1, max_length=45)
    connected_at: datetime

    @field_validator("ip_four", "ip_six")
    @classmethod
    def canonical_ip(cls, value: str) -> str:
        return str(ipaddress.ip_address(value))

    @field_validator("connected_at")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class NodeDisconnectRequest(NodeConnectRequest):
    disconnected_at: datetime
    bytes_transferred: int = Field(default=0, ge=0)

    @field_validator("disconnected_at")
    @classmethod
    def assume_utc_disconnect(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class NodeEventResponse(BaseModel):
    ok: bool = True
