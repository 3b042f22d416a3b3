"""Client for the ASAAS REST API (v3)."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from app.observability.metrics import metrics
from app.services.billing.errors import ConfigError, GatewayError, GatewayNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://sandbox.asaas.com/api/v3"


class AsaasClient:
    """Minimal authenticated ASAAS client; every call goes through ``request``."""

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 15.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise ConfigError("ASAAS_API_KEY is not set")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._owns_http_client:
            self._http.close()

    def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send an authenticated request and return the decoded JSON body."""
        headers = {"access_token": self._api_key, "Content-Type": "application/json"}
        started = time.perf_counter()
        try:
            response = self._http.request(method, path, json=body, params=params, headers=headers)
        except httpx.HTTPError as exc:
            metrics.increment("asaas.request.failed", tags={"reason": "transport"})
            raise GatewayError(f"ASAAS Error: {exc}", gateway="asaas") from exc

        metrics.timing(
            "asaas.request.latency_ms",
            (time.perf_counter() - started) * 1000,
            tags={"method": method},
        )
        data = _decode(response)
        if response.is_success:
            metrics.increment("asaas.request.ok", tags={"method": method})
            return data

        description = _error_description(data) or response.reason_phrase
        logger.error(
            "asaas.request.failed",
            extra={
                "method": method,
                "path": path,
                "status": response.status_code,
                "error": description,
            },
        )
        metrics.increment("asaas.request.failed", tags={"status": response.status_code})
        if response.status_code == 404:
            raise GatewayNotFoundError(f"ASAAS Error: {description}", gateway="asaas")
        raise GatewayError(
            f"ASAAS Error: {description}", gateway="asaas", status_code=response.status_code
        )

    def __enter__(self) -> "AsaasClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _decode(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"data": data}


def _error_description(data: dict[str, Any]) -> str | None:
    errors = data.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return errors[0].get("description")
    return None
