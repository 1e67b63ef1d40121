"""
Authentication for the admin API.

Admin routes require the X-API-Key header (or api_key query parameter)
when ADMIN_API_KEY is configured. Without a configured key, auth is off.
"""

import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader, APIKeyQuery

from config.settings import get_settings

logger = logging.getLogger(__name__)

# ── Security schemes ───────────────────────────────────────────────
API_KEY_HEADER = "X-API-Key"
API_KEY_QUERY = "api_key"

api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)
api_key_query = APIKeyQuery(name=API_KEY_QUERY, auto_error=False)


# ── Dependencies ──────────────────────────────────────────────────

def get_api_key() -> str:
    """Configured admin API key (empty when auth is disabled)."""
    return get_settings().admin_api_key or ""


async def api_key_auth(
    header_key: Optional[str] = Security(api_key_header),
    query_key: Optional[str] = Security(api_key_query),
) -> str:
    """Validate API key from header or query parameter."""
    api_key = header_key or query_key
    expected_key = get_api_key()

    # Skip auth if no key configured (development mode)
    if not expected_key:
        return ""

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="API key required",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    if not hmac.compare_digest(api_key, expected_key):
        logger.warning("Invalid API key attempt")
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key
