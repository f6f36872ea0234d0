"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two callers, two schemes:
  X-API-Key header            -- administrators (scripts, the admin UI backend).
  Authorization: Bearer <s>   -- gateway nodes reporting session events, using
                                 the shared NODE_API_SECRET.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.
require_node() raises HTTP 401 unless the Bearer secret matches.

Layer rule: no imports from api/ or credentials/. This module may import
from fastapi because it is part of the dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import User
from auth.tokens import hash_api_key, secrets_match
from core.config import get_settings


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via X-API-Key. Returns None on any failure."""
    user_store = request.app.state.user_store

    raw_key = request.headers.get("X-API-Key", "")
    if not raw_key:
        return None
    key = user_store.get_api_key_by_hash(hash_api_key(raw_key))
    if key is None or not key.is_active:
        return None
    user = user_store.get_by_id(key.user_id)
    if user is None or not user.is_active:
        return None
    user_store.update_api_key_last_used(key.id)
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated."""
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_admin(request: Request) -> User:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(user: User = Depends(require_admin)): ...
    """
    user = get_current_user(request)
    if user.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user


def require_node(request: Request) -> None:
    """Require the node shared secret as a Bearer token.

    An unset NODE_API_SECRET disables the node API entirely.
    """
    auth_header = request.headers.get("Authorization", "")
    presented = auth_header[7:] if auth_header.startswith("Bearer ") else ""
    if not presented or not secrets_match(presented, get_settings().node_api_secret):
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Node authentication required."},
        )
