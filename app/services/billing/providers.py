"""Payment gateway adapters behind a uniform ``PaymentProvider`` contract.

Subscription snapshots and invoices are returned in the gateway's own shape;
normalisation happens in the reconciler so the mapping rules live in one
place.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Final

import stripe

from app.clients.asaas import AsaasClient
from app.config import Settings
from app.models.subscription import Coupon
from app.observability.metrics import metrics
from app.services.billing.errors import (
    CheckoutError,
    ConfigError,
    GatewayError,
    GatewayNotFoundError,
)
from app.services.billing.plans import PLAN_CATALOG, Plan, resolve_plan_or_default

logger = logging.getLogger(__name__)

INVOICE_PAGE_SIZE: Final[int] = 10
STRIPE_SUBSCRIPTION_EXPAND: Final[list[str]] = ["items.data.price.product"]


@dataclass
class CheckoutRequest:
    customer_id: str
    plan_id: str
    success_url: str
    cancel_url: str
    metadata: dict[str, Any] = field(default_factory=dict)
    coupon: Coupon | None = None


@dataclass
class CheckoutSession:
    url: str
    session_id: str
    gateway: str


class PaymentProvider(ABC):
    """Capability set every gateway adapter implements."""

    name: str

    @abstractmethod
    def create_customer(
        self,
        email: str,
        name: str | None = None,
        tax_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create a billing identity at the gateway and return its id.

        Callers must look for an existing customer under the same gateway
        first; adapters never deduplicate.
        """

    @abstractmethod
    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        """Open a hosted checkout / payment link for ``request.plan_id``."""

    @abstractmethod
    def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel at the gateway; an unknown subscription counts as cancelled."""

    @abstractmethod
    def get_subscription_status(self, subscription_id: str) -> dict[str, Any]:
        """Return the live, gateway-native subscription payload."""

    @abstractmethod
    def get_invoices(self, customer_id: str) -> list[dict[str, Any]]:
        """Return up to ten gateway-native billing records, newest first."""


def _to_dict(obj: Any) -> dict[str, Any]:
    """Turn a StripeObject (or plain mapping) into a dict."""
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _compact(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


class StripeProvider(PaymentProvider):
    """Stripe adapter using subscription-mode Checkout Sessions."""

    name = "stripe"

    def __init__(
        self,
        api_key: str | None,
        *,
        api_version: str = "2023-10-16",
        plans: dict[str, Plan] | None = None,
        sdk: Any = stripe,
    ) -> None:
        if not api_key:
            raise ConfigError("STRIPE_SECRET_KEY is not set")
        self._api_key = api_key
        self._api_version = api_version
        self._plans = plans if plans is not None else PLAN_CATALOG
        self._stripe = sdk

    @classmethod
    def from_settings(cls, config: Settings) -> "StripeProvider":
        return cls(config.stripe_secret_key, api_version=config.stripe_api_version)

    def _options(self) -> dict[str, Any]:
        return {"api_key": self._api_key, "stripe_version": self._api_version}

    def _gateway_error(self, operation: str, exc: Exception) -> GatewayError:
        message = getattr(exc, "user_message", None) or str(exc)
        logger.warning("stripe.%s.failed", operation, extra={"error": message})
        metrics.increment("gateway.call.failed", tags={"gateway": self.name, "op": operation})
        return GatewayError(
            message, gateway=self.name, status_code=getattr(exc, "http_status", None)
        )

    def create_customer(
        self,
        email: str,
        name: str | None = None,
        tax_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        customer_metadata = _compact({**(metadata or {}), "cpfCnpj": tax_id})
        try:
            customer = self._stripe.Customer.create(
                email=email,
                **_compact({"name": name}),
                metadata=customer_metadata,
                **self._options(),
            )
        except self._stripe.StripeError as exc:
            raise self._gateway_error("customer", exc) from exc
        metrics.increment("gateway.customer.created", tags={"gateway": self.name})
        return customer["id"]

    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        if request.plan_id not in self._plans:
            raise CheckoutError(f"Unknown plan '{request.plan_id}'")
        try:
            session = self._stripe.checkout.Session.create(
                customer=request.customer_id,
                line_items=[{"price": request.plan_id, "quantity": 1}],
                mode="subscription",
                success_url=request.success_url,
                cancel_url=request.cancel_url,
                metadata=request.metadata,
                subscription_data={"metadata": request.metadata},
                **self._options(),
            )
        except self._stripe.StripeError as exc:
            raise CheckoutError(str(self._gateway_error("checkout", exc))) from exc
        payload = _to_dict(session)
        if not payload.get("url"):
            raise CheckoutError("Stripe Session URL is null")
        return CheckoutSession(url=payload["url"], session_id=payload["id"], gateway=self.name)

    def create_portal(self, customer_id: str, return_url: str) -> str:
        """Open a Stripe billing portal session and return its URL."""
        try:
            session = self._stripe.billing_portal.Session.create(
                customer=customer_id, return_url=return_url, **self._options()
            )
        except self._stripe.StripeError as exc:
            raise self._gateway_error("portal", exc) from exc
        return _to_dict(session).get("url") or ""

    def cancel_subscription(self, subscription_id: str) -> None:
        try:
            self._stripe.Subscription.cancel(subscription_id, **self._options())
        except self._stripe.StripeError as exc:
            if getattr(exc, "code", None) == "resource_missing" or getattr(
                exc, "http_status", None
            ) == 404:
                logger.info(
                    "stripe.cancel.already_gone", extra={"subscription_id": subscription_id}
                )
                return
            raise self._gateway_error("cancel", exc) from exc

    def get_subscription_status(self, subscription_id: str) -> dict[str, Any]:
        try:
            subscription = self._stripe.Subscription.retrieve(
                subscription_id, expand=STRIPE_SUBSCRIPTION_EXPAND, **self._options()
            )
        except self._stripe.StripeError as exc:
            raise self._gateway_error("subscription", exc) from exc
        return _to_dict(subscription)

    def get_invoices(self, customer_id: str) -> list[dict[str, Any]]:
        try:
            invoices = self._stripe.Invoice.list(
                customer=customer_id, limit=INVOICE_PAGE_SIZE, **self._options()
            )
        except self._stripe.StripeError as exc:
            raise self._gateway_error("invoices", exc) from exc
        return [_to_dict(invoice) for invoice in invoices.data]


class AsaasProvider(PaymentProvider):
    """ASAAS adapter; checkout is a recurrent payment link priced from the catalog."""

    name = "asaas"

    def __init__(self, client: AsaasClient, *, plans: dict[str, Plan] | None = None) -> None:
        self._client = client
        self._plans = plans if plans is not None else PLAN_CATALOG

    @classmethod
    def from_settings(cls, config: Settings) -> "AsaasProvider":
        client = AsaasClient(
            config.asaas_api_key,
            base_url=config.asaas_url,
            timeout=config.gateway_timeout_seconds,
        )
        return cls(client)

    def plan_for(self, price_id: str | None) -> Plan:
        """Translate a Stripe-style price id, falling back to the monthly plan."""
        if price_id and price_id in self._plans:
            return self._plans[price_id]
        return resolve_plan_or_default(None)

    def create_customer(
        self,
        email: str,
        name: str | None = None,
        tax_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        logger.info("asaas.customer.create", extra={"email_domain": email.split("@")[-1]})
        data = self._client.request(
            "POST",
            "/customers",
            _compact(
                {
                    "name": name or email,
                    "email": email,
                    "cpfCnpj": tax_id,
                    "externalReference": (metadata or {}).get("supabase_user_id"),
                }
            ),
        )
        metrics.increment("gateway.customer.created", tags={"gateway": self.name})
        return data["id"]

    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        plan = self.plan_for(request.plan_id)
        value = plan.value
        if request.coupon is not None:
            value = max(round(plan.value - request.coupon.discount_for(plan.value), 2), 0.0)
        logger.info(
            "asaas.checkout.create",
            extra={
                "customer_id": request.customer_id,
                "plan": plan.name,
                "coupon": request.coupon.code if request.coupon else None,
            },
        )
        try:
            data = self._client.request(
                "POST",
                "/paymentLinks",
                {
                    "name": plan.name,
                    "description": f"Plano {plan.name} - Gestão de Aluguel",
                    "billingType": "UNDEFINED",
                    "chargeType": "RECURRENT",
                    "subscriptionCycle": plan.cycle,
                    "value": value,
                    "callback": {"successUrl": request.success_url, "autoRedirect": True},
                },
            )
        except GatewayError as exc:
            raise CheckoutError(str(exc)) from exc
        if not data.get("url"):
            raise CheckoutError("ASAAS payment link URL is missing")
        return CheckoutSession(url=data["url"], session_id=data["id"], gateway=self.name)

    def cancel_subscription(self, subscription_id: str) -> None:
        logger.info("asaas.cancel", extra={"subscription_id": subscription_id})
        try:
            self._client.request("DELETE", f"/subscriptions/{subscription_id}")
        except GatewayNotFoundError:
            logger.info("asaas.cancel.already_gone", extra={"subscription_id": subscription_id})

    def get_subscription_status(self, subscription_id: str) -> dict[str, Any]:
        data = self._client.request("GET", f"/subscriptions/{subscription_id}")
        raw_status = str(data.get("status") or "")
        return {
            **data,
            "asaas_status": raw_status,
            "status": "active" if raw_status.lower() == "active" else "inactive",
        }

    def get_invoices(self, customer_id: str) -> list[dict[str, Any]]:
        data = self._client.request(
            "GET", "/payments", params={"customer": customer_id, "limit": INVOICE_PAGE_SIZE}
        )
        payments = data.get("data") or []
        payments.sort(key=lambda entry: entry.get("dateCreated") or "", reverse=True)
        return payments[:INVOICE_PAGE_SIZE]
