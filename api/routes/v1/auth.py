"""
api/routes/v1/auth.py -- API key issuance for administrators.

Routes:
  POST   /api/v1/api-keys       -- exchange admin credentials for an API key
  DELETE /api/v1/api-keys/{id}  -- revoke one of the caller's own keys (X-API-Key)

Security:
  Rate limited per IP (ADMIN_RATE_LIMIT, default 10/minute).
  DbCredentialValidator runs bcrypt even for unknown usernames, so timing
  does not reveal which accounts exist.
  Wrong username and wrong password return the same error.
  Cache-Control: no-store on every response that may carry a key.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import admin_rate_limit, limiter
from api.models import ApiKeyCreatedResponse, ApiKeyRequest
from auth.dependencies import require_admin
from auth.models import ApiKey, User
from auth.store import LocalUserStore
from auth.tokens import generate_api_key, hash_api_key
from auth.validator import DbCredentialValidator

_MAX_KEYS_PER_USER = 10

router = APIRouter()


@router.post("/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
@limiter.limit(admin_rate_limit)
def create_api_key(request: Request, body: ApiKeyRequest) -> JSONResponse:
    """Validate admin credentials and return a new API key. The raw key is shown once."""
    user_store: LocalUserStore = request.app.state.user_store
    identity = DbCredentialValidator(user_store).validate_credentials(body.username, body.password)
    if identity is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp
    if not identity.is_admin:
        return JSONResponse(
            status_code=403,
            content={"error": {"code": "forbidden", "message": "Admin access required."}},
        )

    user = user_store.get_by_username(identity.user_id)
    if len(user_store.get_api_keys(user.id)) >= _MAX_KEYS_PER_USER:
        return JSONResponse(
            status_code=400,
            content={
                "error": {
                    "code": "key_limit_reached",
                    "message": f"Maximum of {_MAX_KEYS_PER_USER} API keys per user. Revoke an existing key first.",
                }
            },
        )

    raw_key = generate_api_key()
    key_prefix = raw_key[:12]
    key_id = user_store.create_api_key(
        ApiKey(user_id=user.id, name=body.name, key_hash=hash_api_key(raw_key), key_prefix=key_prefix)
    )
    resp = JSONResponse(
        status_code=201,
        content=ApiKeyCreatedResponse(id=key_id, name=body.name, key_prefix=key_prefix, key=raw_key).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.delete("/api-keys/{key_id}", status_code=204)
def revoke_api_key(request: Request, key_id: int, user: User = Depends(require_admin)) -> None:
    """Deactivate an API key. Only the owner may revoke it; anyone else gets 404."""
    user_store: LocalUserStore = request.app.state.user_store
    if not user_store.revoke_api_key(key_id, user.id):
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "API key not found."})
