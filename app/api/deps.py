"""Shared FastAPI dependencies for the billing routes."""

from __future__ import annotations

import logging

from fastapi import Header, HTTPException

from app.clients.supabase_auth import AuthenticatedUser, SupabaseAuthClient
from app.config import settings
from app.observability.metrics import metrics

logger = logging.getLogger(__name__)

_AUTH_CLIENT: SupabaseAuthClient | None = None


def get_auth_client() -> SupabaseAuthClient:
    global _AUTH_CLIENT  # noqa: PLW0603
    if _AUTH_CLIENT is None:
        _AUTH_CLIENT = SupabaseAuthClient(
            settings.supabase_url or "",
            settings.supabase_anon_key or "",
            timeout=settings.gateway_timeout_seconds,
        )
    return _AUTH_CLIENT


def require_user(authorization: str | None = Header(default=None)) -> AuthenticatedUser:
    """Resolve the bearer token into a Supabase user or fail with 401."""
    if not authorization:
        logger.warning("auth.session.missing_header")
        raise HTTPException(status_code=401, detail="No authorization header")
    if not authorization.lower().startswith("bearer "):
        logger.warning("auth.session.invalid_scheme")
        raise HTTPException(status_code=401, detail="Invalid user token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        client = get_auth_client()
    except ValueError as exc:
        logger.error("auth.supabase.not_configured")
        raise HTTPException(status_code=401, detail="Invalid user token") from exc
    user = client.get_user(token)
    if user is None:
        metrics.increment("auth.session.rejected")
        raise HTTPException(status_code=401, detail="Invalid user token")
    return user
