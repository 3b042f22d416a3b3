"""Resolve Supabase user JWTs through the GoTrue ``/auth/v1/user`` endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)


@dataclass
class AuthenticatedUser:
    id: str
    email: str | None
    full_name: str | None = None
    tax_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class SupabaseAuthClient:
    """Thin wrapper around Supabase Auth used to authenticate billing requests."""

    def __init__(
        self,
        supabase_url: str,
        anon_key: str,
        *,
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not supabase_url or not anon_key:
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY are required.")
        self._anon_key = anon_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(
            base_url=supabase_url.rstrip("/"), timeout=timeout
        )

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()

    def get_user(self, token: str) -> AuthenticatedUser | None:
        """Return the user owning ``token`` or None when Supabase rejects it."""
        try:
            response = self._http.get(
                "/auth/v1/user",
                headers={"apikey": self._anon_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError:
            logger.warning("auth.supabase.unreachable", exc_info=True)
            return None
        if response.status_code != 200:
            logger.info("auth.supabase.rejected", extra={"status": response.status_code})
            return None
        payload = response.json()
        if not isinstance(payload, dict) or not payload.get("id"):
            return None
        user_metadata = payload.get("user_metadata") or {}
        return AuthenticatedUser(
            id=str(payload["id"]),
            email=payload.get("email"),
            full_name=user_metadata.get("full_name") or user_metadata.get("name"),
            tax_id=user_metadata.get("cpf_cnpj") or user_metadata.get("cpfCnpj"),
            metadata=user_metadata,
        )
