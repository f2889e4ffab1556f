"""Shared-secret check for REST and WebSocket callers."""

import hmac

from fastapi import Header, HTTPException, Query

from pushtocode.server.state import get_settings


def api_key_valid(candidate: str | None) -> bool:
    """Constant-time comparison against the configured key; no key configured rejects all."""
    expected = get_settings().api_key
    if not expected or not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


async def require_api_key(
    x_api_key: str | None = Header(default=None),
    api_key: str | None = Query(default=None, alias="apiKey"),
) -> None:
    """FastAPI dependency rejecting requests without a valid key."""
    if not api_key_valid(x_api_key or api_key):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
