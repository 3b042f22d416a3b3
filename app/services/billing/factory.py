"""Resolve the active payment gateway adapter."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from threading import Lock

from app.config import Settings, settings
from app.services.billing.errors import UnsupportedGatewayError
from app.services.billing.providers import AsaasProvider, PaymentProvider, StripeProvider

logger = logging.getLogger(__name__)

FALLBACK_GATEWAY = "stripe"

ProviderBuilder = Callable[[], PaymentProvider]


class ProviderFactory:
    """Build (and cache) one adapter per gateway name."""

    def __init__(
        self,
        builders: Mapping[str, ProviderBuilder],
        *,
        default_gateway: str | None = None,
    ) -> None:
        self._builders = {name.lower(): builder for name, builder in builders.items()}
        self._default_gateway = default_gateway
        self._instances: dict[str, PaymentProvider] = {}
        self._lock = Lock()

    @property
    def default_gateway(self) -> str:
        return (self._default_gateway or FALLBACK_GATEWAY).lower()

    @property
    def supported(self) -> tuple[str, ...]:
        return tuple(self._builders)

    def resolve_name(self, name: str | None = None) -> str:
        """Apply the precedence argument > configured default > ``stripe``."""
        return (name or self._default_gateway or FALLBACK_GATEWAY).strip().lower()

    def get_provider(self, name: str | None = None) -> PaymentProvider:
        gateway = self.resolve_name(name)
        source = "arg" if name else "env" if self._default_gateway else "default"
        builder = self._builders.get(gateway)
        if builder is None:
            logger.warning("billing.factory.unsupported", extra={"gateway": gateway})
            raise UnsupportedGatewayError(gateway)
        with self._lock:
            provider = self._instances.get(gateway)
            if provider is None:
                provider = builder()
                self._instances[gateway] = provider
        logger.debug("billing.factory.selected", extra={"gateway": gateway, "source": source})
        return provider


def build_provider_factory(config: Settings | None = None) -> ProviderFactory:
    """Create a factory wired to the gateway credentials in ``config``."""
    resolved = config or settings
    return ProviderFactory(
        {
            "stripe": lambda: StripeProvider.from_settings(resolved),
            "asaas": lambda: AsaasProvider.from_settings(resolved),
        },
        default_gateway=resolved.active_gateway,
    )


_FACTORY: ProviderFactory | None = None


def get_provider_factory() -> ProviderFactory:
    """Singleton accessor used by API routes."""
    global _FACTORY  # noqa: PLW0603
    if _FACTORY is None:
        _FACTORY = build_provider_factory()
    return _FACTORY
