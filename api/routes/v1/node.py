"""
api/routes/v1/node.py -- Session events reported by the gateway nodes.

Routes:
  POST /node-api/v1/connect     -- an OpenVPN client connected
  POST /node-api/v1/disconnect  -- an OpenVPN client disconnected

The connect hook is also the last line of defence: a certificate that is
unknown, outside its validity window, or owned by a disabled user is refused
with 403 and the gateway drops the client.

Auth: Authorization: Bearer <NODE_API_SECRET> on every route.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import NodeConnectRequest, NodeDisconnectRequest, NodeEventResponse
from auth.dependencies import require_node
from credentials.store import CredentialStore

logger = logging.getLogger("vpnwarden.api.node")

router = APIRouter(dependencies=[Depends(require_node)])


def _refuse(common_name: str, reason: str) -> HTTPException:
    logger.warning("Refusing connection for '%s': %s", common_name, reason)
    return HTTPException(status_code=403, detail={"code": "access_denied", "message": reason})


@router.post("/connect", response_model=NodeEventResponse)
def connect(request: Request, body: NodeConnectRequest) -> NodeEventResponse:
    store: CredentialStore = request.app.state.store

    cert = store.get_certificate(body.common_name)
    if cert is None:
        raise _refuse(body.common_name, "unknown certificate")
    if cert.profile_id != body.profile_id:
        raise _refuse(body.common_name, "certificate issued for another profile")
    if not store.expiry.is_cert_live(cert.valid_from, cert.valid_to, body.connected_at):
        raise _refuse(body.common_name, "certificate not valid at connect time")
    # The reported time is the node's; admission also holds against our clock.
    if not store.expiry.is_cert_live(cert.valid_from, cert.valid_to):
        raise _refuse(body.common_name, "certificate no longer valid")
    if store.is_disabled(cert.user_id):
        raise _refuse(body.common_name, "account disabled")

    store.client_connect(body.profile_id, body.common_name, body.ip_four, body.ip_six, body.connected_at)
    return NodeEventResponse()


@router.post("/disconnect", response_model=NodeEventResponse)
def disconnect(request: Request, body: NodeDisconnectRequest) -> NodeEventResponse:
    store: CredentialStore = request.app.state.store
    closed = store.client_disconnect(
        body.profile_id,
        body.common_name,
        body.ip_four,
        body.ip_six,
        body.connected_at,
        body.disconnected_at,
        body.bytes_transferred,
    )
    if not closed:
        # Already force-closed as lost, or the connect was never recorded.
        logger.info("No open log entry for '%s' on %s", body.common_name, body.profile_id)
    return NodeEventResponse(ok=closed)
