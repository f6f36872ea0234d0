"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and by the routes that
apply per-route limits with @limiter.limit(). A single shared instance keeps
all routes on the same in-memory counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def admin_rate_limit() -> str:
    """Limit string for credential-checking endpoints (ADMIN_RATE_LIMIT)."""
    return get_settings().admin_rate_limit
