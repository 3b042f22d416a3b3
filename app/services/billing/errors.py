"""Error taxonomy shared by gateway adapters, services, and routes."""

from __future__ import annotations


class BillingError(RuntimeError):
    """Base exception for billing failures."""

    def __init__(self, message: str, code: str = "BILLING_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ConfigError(BillingError):
    """Raised when a gateway secret or setting is missing at construction time."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFIG_ERROR")


class GatewayError(BillingError):
    """Raised when the remote gateway answers with a non-success response."""

    def __init__(
        self,
        message: str,
        *,
        gateway: str,
        status_code: int | None = None,
        code: str = "GATEWAY_ERROR",
    ) -> None:
        super().__init__(message, code=code)
        self.gateway = gateway
        self.status_code = status_code


class GatewayNotFoundError(GatewayError):
    """Raised when the gateway reports that the requested resource does not exist."""

    def __init__(self, message: str, *, gateway: str) -> None:
        super().__init__(message, gateway=gateway, status_code=404, code="GATEWAY_NOT_FOUND")


class CheckoutError(BillingError):
    """Raised when a checkout or payment link cannot be opened."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CHECKOUT_ERROR")


class UnsupportedGatewayError(BillingError):
    """Raised when a gateway name has no adapter."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Payment gateway '{name}' is not supported.", code="UNSUPPORTED_GATEWAY")
        self.name = name


class WebhookSignatureError(BillingError):
    """Raised when an inbound webhook fails signature or token verification."""

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message, code="WEBHOOK_SIGNATURE")
