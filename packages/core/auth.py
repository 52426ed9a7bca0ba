# packages/core/auth.py
from __future__ import annotations

from fastapi import HTTPException, Request

from packages.core.settings import get_settings


def require_bearer(request: Request) -> str:
    """FastAPI dependency: return the bearer token or reject with 401.

    Identity is issued elsewhere; when API_TOKENS is empty any non-empty
    bearer token is accepted.
    """
    header = request.headers.get("authorization") or ""
    if not header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = header[len("Bearer "):].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    allowed = get_settings().api_tokens
    if allowed and token not in allowed:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return token
