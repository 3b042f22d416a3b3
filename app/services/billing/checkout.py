"""Tenant-facing billing commands: checkout, billing portal, and cancellation."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.clients.supabase_auth import AuthenticatedUser
from app.models.subscription import (
    Coupon,
    GatewayName,
    Subscription,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
)
from app.observability.metrics import metrics
from app.observability.redaction import mask_email
from app.services.billing.errors import CheckoutError
from app.services.billing.factory import ProviderFactory, get_provider_factory
from app.services.billing.providers import CheckoutRequest, CheckoutSession, StripeProvider
from app.services.billing.repositories import (
    SubscriptionRepository,
    get_subscription_repository,
    select_active_subscription,
)

logger = logging.getLogger(__name__)

ASAAS_PORTAL_NOTE = "Gerencie sua assinatura ASAAS pelos links enviados por e-mail."
COUPON_NOT_FOUND = "Cupom não encontrado ou inativo."


@dataclass
class PortalSession:
    url: str
    note: str | None = None


@dataclass
class CancellationResult:
    status: str
    gateway: str | None = None


class CheckoutService:
    """Coordinate customer provisioning and checkout across gateways."""

    def __init__(self, repository: SubscriptionRepository, factory: ProviderFactory) -> None:
        self._repository = repository
        self._factory = factory

    def start_checkout(
        self,
        user: AuthenticatedUser,
        price_id: str,
        success_url: str,
        cancel_url: str,
        gateway: str | None = None,
        coupon_code: str | None = None,
    ) -> CheckoutSession:
        """Open a checkout for ``price_id``, creating the gateway customer on first use.

        A coupon code is only honoured on ASAAS: the payment link is priced with
        the discount and the code stays on the row as ``pending_coupon`` until
        the webhook confirms the payment.
        """
        if not price_id:
            raise CheckoutError("priceId is required")
        if not user.email:
            raise CheckoutError("User has no email address")
        provider = self._factory.get_provider(gateway)
        coupon = self._redeemable_coupon(coupon_code, provider.name)
        row = self._repository.get_for_user(user.id, provider.name)
        if row is None or not row.gateway_customer_id:
            customer_id = provider.create_customer(
                user.email,
                name=user.full_name,
                tax_id=user.tax_id,
                metadata={"supabase_user_id": user.id},
            )
            if row is None:
                row = Subscription(
                    user_id=user.id,
                    gateway_name=provider.name,
                    status=SubscriptionStatus.INCOMPLETE.value,
                )
            row.gateway_customer_id = customer_id
            row = self._repository.save(row)
            logger.info(
                "billing.customer.created",
                extra={
                    "user_id": user.id,
                    "gateway": provider.name,
                    "email": mask_email(user.email),
                },
            )

        session = provider.create_checkout(
            CheckoutRequest(
                customer_id=row.gateway_customer_id,
                plan_id=price_id,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"supabase_user_id": user.id, "price_id": price_id},
                coupon=coupon,
            )
        )
        pending_coupon = coupon.code if coupon is not None else None
        if row.pending_coupon != pending_coupon:
            row.pending_coupon = pending_coupon
            self._repository.save(row)
        logger.info(
            "billing.checkout.created",
            extra={
                "user_id": user.id,
                "gateway": provider.name,
                "session_id": session.session_id,
                "coupon": pending_coupon,
            },
        )
        metrics.increment("billing.checkout.created", tags={"gateway": provider.name})
        return session

    def _redeemable_coupon(self, coupon_code: str | None, gateway_name: str) -> Coupon | None:
        if not coupon_code or not coupon_code.strip():
            return None
        if gateway_name != GatewayName.ASAAS.value:
            raise CheckoutError("Cupons são aceitos apenas em pagamentos ASAAS.")
        coupon = self._repository.find_coupon(coupon_code)
        reason = COUPON_NOT_FOUND if coupon is None else coupon.rejection_reason()
        if reason:
            logger.info(
                "billing.coupon.rejected",
                extra={"code": coupon_code.strip().upper(), "reason": reason},
            )
            metrics.increment("billing.coupon.rejected", tags={"gateway": gateway_name})
            raise CheckoutError(reason)
        return coupon

    def create_portal(self, user: AuthenticatedUser, return_url: str) -> PortalSession:
        rows = self._repository.list_for_user(user.id)
        row = select_active_subscription(rows, self._factory.default_gateway)
        if row is not None and row.gateway_name == "asaas":
            return PortalSession(url="", note=ASAAS_PORTAL_NOTE)
        if row is None or not row.gateway_customer_id:
            raise CheckoutError("No billing account found for this user")
        provider = self._factory.get_provider(row.gateway_name)
        if not isinstance(provider, StripeProvider):
            return PortalSession(url="", note=ASAAS_PORTAL_NOTE)
        url = provider.create_portal(row.gateway_customer_id, return_url)
        logger.info("billing.portal.created", extra={"user_id": user.id})
        return PortalSession(url=url)

    def cancel(self, user: AuthenticatedUser) -> CancellationResult:
        """Cancel the tenant's current subscription at its gateway and locally."""
        rows = self._repository.list_for_user(user.id)
        row = select_active_subscription(rows, self._factory.default_gateway)
        if row is None or not row.gateway_subscription_id:
            return CancellationResult(status=SubscriptionStatus.NONE.value)
        provider = self._factory.get_provider(row.gateway_name)
        provider.cancel_subscription(row.gateway_subscription_id)

        row.status = SubscriptionStatus.CANCELED.value
        row.cancel_at_period_end = False
        self._repository.save(row)

        tail = self._repository.latest_event(user.id)
        if tail is None or tail.event_type != SubscriptionEventType.CANCELED.value:
            self._repository.append_event(
                SubscriptionEvent(
                    user_id=user.id,
                    event_type=SubscriptionEventType.CANCELED.value,
                    description="Sua assinatura foi cancelada conforme solicitado.",
                    plan_name=row.plan_name,
                    event_metadata={
                        "gateway": row.gateway_name,
                        "gateway_subscription_id": row.gateway_subscription_id,
                        "source": "user",
                    },
                )
            )
        logger.info(
            "billing.subscription.canceled",
            extra={"user_id": user.id, "gateway": row.gateway_name},
        )
        metrics.increment("billing.subscription.canceled", tags={"gateway": row.gateway_name})
        return CancellationResult(status=row.status, gateway=row.gateway_name)


def get_checkout_service() -> CheckoutService:
    return CheckoutService(get_subscription_repository(), get_provider_factory())
