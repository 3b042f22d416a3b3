"""Push-based subscription updates from gateway webhooks.

Handlers mutate the stored row directly and append an audit event. They never
raise for unknown event types or unresolvable tenants so the gateway always
gets a 2xx and stops redelivering.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import stripe

from app.config import settings
from app.models.subscription import (
    CouponUsage,
    GatewayName,
    PaymentStatus,
    Subscription,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
)
from app.observability.metrics import metrics
from app.observability.redaction import mask_email
from app.services.billing.errors import BillingError, WebhookSignatureError
from app.services.billing.plans import Plan, resolve_plan, resolve_plan_or_default
from app.services.billing.reconciler import normalize_stripe_snapshot
from app.services.billing.repositories import (
    SubscriptionRepository,
    get_subscription_repository,
)

logger = logging.getLogger(__name__)

ASAAS_CONFIRMED_EVENTS = frozenset({"PAYMENT_CONFIRMED", "PAYMENT_RECEIVED"})
ASAAS_STATUS_MAP = {
    "OVERDUE": SubscriptionStatus.PAST_DUE.value,
    "DELETED": SubscriptionStatus.CANCELED.value,
    "REFUNDED": SubscriptionStatus.CANCELED.value,
}
USER_NOT_FOUND = "User not found"
MALFORMED_EVENT = "Event has no data object"


class WebhookPayloadError(BillingError):
    """Raised when a webhook body is not a JSON object."""

    def __init__(self, message: str = "Invalid JSON payload") -> None:
        super().__init__(message, code="INVALID_PAYLOAD")


@dataclass
class WebhookOutcome:
    event_type: str
    handled: bool
    user_id: str | None = None
    warning: str | None = None


def _signature_alert(metric: str) -> None:
    metrics.increment(metric)
    metrics.alert(metric, value=1.0, threshold=0.0, severity="warning")


def parse_payload(payload: bytes | str) -> dict[str, Any]:
    try:
        data = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise WebhookPayloadError() from exc
    if not isinstance(data, dict):
        raise WebhookPayloadError()
    return data


def verify_stripe_event(
    payload: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    sdk: Any = stripe,
) -> dict[str, Any]:
    """Return the decoded event, enforcing the Stripe signature when a secret is set."""
    if not secret:
        logger.warning("stripe.webhook.signature_unverified")
        metrics.increment("stripe.webhook.signature_unverified")
        return parse_payload(payload)
    if not signature_header:
        logger.warning("stripe.webhook.signature_missing")
        _signature_alert("stripe.webhook.signature_missing")
        raise WebhookSignatureError("Missing Stripe-Signature header")
    try:
        sdk.Webhook.construct_event(payload, signature_header, secret)
    except ValueError as exc:
        raise WebhookPayloadError() from exc
    except sdk.SignatureVerificationError as exc:
        logger.warning("stripe.webhook.signature_mismatch")
        _signature_alert("stripe.webhook.signature_invalid")
        raise WebhookSignatureError() from exc
    return parse_payload(payload)


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    if subscription:
        return subscription
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _as_amount(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _session_plan(session: dict[str, Any]) -> Plan:
    line_items = (session.get("line_items") or {}).get("data") or []
    price_id = ((line_items[0].get("price") or {}).get("id")) if line_items else None
    plan = resolve_plan(price_id)
    if plan is None:
        plan = resolve_plan_or_default((session.get("metadata") or {}).get("price_id"))
    return plan


class StripeWebhookProcessor:
    """Apply Stripe webhook events to stored subscriptions."""

    gateway = GatewayName.STRIPE.value

    def __init__(self, repository: SubscriptionRepository) -> None:
        self._repository = repository
        self._handlers: dict[str, Callable[[dict[str, Any]], WebhookOutcome]] = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_succeeded": self._payment_succeeded,
            "invoice.payment_failed": self._payment_failed,
        }

    def process(self, event: dict[str, Any]) -> WebhookOutcome:
        event_type = str(event.get("type") or "")
        logger.info(
            "stripe.webhook.received", extra={"event_id": event.get("id"), "type": event_type}
        )
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("stripe.webhook.ignored", extra={"type": event_type})
            metrics.increment("stripe.webhook.ignored", tags={"type": event_type})
            return WebhookOutcome(event_type=event_type, handled=False)
        data = event.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
            logger.warning(
                "stripe.webhook.malformed", extra={"event_id": event.get("id"), "type": event_type}
            )
            metrics.increment("stripe.webhook.malformed", tags={"type": event_type})
            metrics.increment("stripe.webhook.skipped", tags={"type": event_type})
            return WebhookOutcome(event_type=event_type, handled=False, warning=MALFORMED_EVENT)
        outcome = handler(event)
        metrics.increment(
            "stripe.webhook.processed" if outcome.handled else "stripe.webhook.skipped",
            tags={"type": event_type},
        )
        return outcome

    def _log_event(
        self,
        user_id: str,
        event_type: SubscriptionEventType,
        description: str,
        *,
        plan_name: str | None = None,
        amount_cents: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._repository.append_event(
            SubscriptionEvent(
                user_id=user_id,
                event_type=event_type.value,
                description=description,
                plan_name=plan_name,
                amount_cents=amount_cents,
                event_metadata={"gateway": self.gateway, **(metadata or {})},
            )
        )
        logger.info(
            "stripe.webhook.event_logged",
            extra={"user_id": user_id, "event_type": event_type.value},
        )

    def _row_for_subscription(
        self, event_type: str, subscription_id: str | None
    ) -> Subscription | None:
        row = None
        if subscription_id:
            row = self._repository.get_by_gateway_subscription_id(self.gateway, subscription_id)
        if row is None:
            logger.warning(
                "stripe.webhook.subscription_unknown",
                extra={"type": event_type, "subscription_id": subscription_id},
            )
        return row

    def _resolve_user(self, session: dict[str, Any]) -> str | None:
        user_id = (session.get("metadata") or {}).get("supabase_user_id")
        if user_id:
            return user_id
        email = (session.get("customer_details") or {}).get("email") or session.get(
            "customer_email"
        )
        if not email:
            return None
        profile = self._repository.find_profile_by_email(email)
        if profile is None:
            return None
        logger.info(
            "stripe.webhook.user_resolved_by_email",
            extra={"user_id": profile.id, "email": mask_email(email)},
        )
        return profile.id

    def _checkout_completed(self, event: dict[str, Any]) -> WebhookOutcome:
        session = event["data"]["object"]
        event_type = event["type"]
        user_id = self._resolve_user(session)
        if not user_id:
            email = (session.get("customer_details") or {}).get("email") or session.get(
                "customer_email"
            )
            logger.warning(
                "stripe.webhook.user_unresolved",
                extra={"session_id": session.get("id"), "email": mask_email(email)},
            )
            metrics.increment("stripe.webhook.user_unresolved")
            return WebhookOutcome(event_type=event_type, handled=False, warning=USER_NOT_FOUND)

        plan = _session_plan(session)
        subscription_id = session.get("subscription")
        row = self._repository.get_for_user(user_id, self.gateway) or Subscription(
            user_id=user_id, gateway_name=self.gateway
        )
        row.status = SubscriptionStatus.ACTIVE.value
        row.gateway_customer_id = session.get("customer") or row.gateway_customer_id
        row.gateway_subscription_id = subscription_id or row.gateway_subscription_id
        row.plan_name = plan.name
        row.billing_cycle = plan.billing_cycle
        row.amount_cents = plan.amount_cents
        row.cancel_at_period_end = False
        row.last_payment_status = PaymentStatus.PAID.value
        self._repository.save(row)
        self._log_event(
            user_id,
            SubscriptionEventType.SUBSCRIBED,
            f"Assinatura {plan.name} ativada",
            plan_name=plan.name,
            amount_cents=plan.amount_cents,
            metadata={"stripe_subscription_id": subscription_id},
        )
        return WebhookOutcome(event_type=event_type, handled=True, user_id=user_id)

    def _subscription_updated(self, event: dict[str, Any]) -> WebhookOutcome:
        subscription = event["data"]["object"]
        previous = event["data"].get("previous_attributes")
        if not isinstance(previous, dict):
            previous = {}
        event_type = event["type"]
        row = self._row_for_subscription(event_type, subscription.get("id"))
        if row is None:
            return WebhookOutcome(event_type=event_type, handled=False)

        snapshot = normalize_stripe_snapshot(subscription, fallback_plan_name=row.plan_name)
        tail = self._repository.latest_event(row.user_id)
        row.status = snapshot.status
        row.current_period_end = snapshot.current_period_end or row.current_period_end
        row.cancel_at_period_end = snapshot.cancel_at_period_end
        if snapshot.billing_cycle:
            row.plan_name = snapshot.plan_name
            row.billing_cycle = snapshot.billing_cycle
            row.amount_cents = snapshot.amount_cents
        self._repository.save(row)

        if snapshot.cancel_at_period_end:
            if "cancel_at_period_end" in previous:
                newly_set = previous["cancel_at_period_end"] is False
            else:
                newly_set = (
                    tail is None
                    or tail.event_type != SubscriptionEventType.CANCELLATION_SCHEDULED.value
                )
            if newly_set:
                period_end = snapshot.current_period_end
                self._log_event(
                    row.user_id,
                    SubscriptionEventType.CANCELLATION_SCHEDULED,
                    "Cancelamento agendado para "
                    f"{period_end.strftime('%d/%m/%Y') if period_end else 'o fim do período'}",
                    plan_name=row.plan_name,
                    metadata={"cancel_at": subscription.get("cancel_at")},
                )
        elif previous.get("cancel_at_period_end") is True:
            self._log_event(
                row.user_id,
                SubscriptionEventType.REACTIVATED,
                "Assinatura reativada com sucesso!",
                plan_name=row.plan_name,
                metadata={"stripe_subscription_id": subscription.get("id")},
            )
        return WebhookOutcome(event_type=event_type, handled=True, user_id=row.user_id)

    def _subscription_deleted(self, event: dict[str, Any]) -> WebhookOutcome:
        subscription = event["data"]["object"]
        event_type = event["type"]
        row = self._row_for_subscription(event_type, subscription.get("id"))
        if row is None:
            return WebhookOutcome(event_type=event_type, handled=False)
        row.status = SubscriptionStatus.CANCELED.value
        row.cancel_at_period_end = False
        self._repository.save(row)
        self._log_event(
            row.user_id,
            SubscriptionEventType.CANCELED,
            "Assinatura cancelada",
            metadata={"stripe_subscription_id": subscription.get("id")},
        )
        return WebhookOutcome(event_type=event_type, handled=True, user_id=row.user_id)

    def _payment_succeeded(self, event: dict[str, Any]) -> WebhookOutcome:
        invoice = event["data"]["object"]
        event_type = event["type"]
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return WebhookOutcome(event_type=event_type, handled=False)
        row = self._row_for_subscription(event_type, subscription_id)
        if row is None:
            return WebhookOutcome(event_type=event_type, handled=False)
        row.last_payment_status = PaymentStatus.PAID.value
        row.status = SubscriptionStatus.ACTIVE.value
        self._repository.save(row)
        if invoice.get("billing_reason") == "subscription_cycle":
            self._log_event(
                row.user_id,
                SubscriptionEventType.PAYMENT_SUCCEEDED,
                "Pagamento realizado com sucesso",
                amount_cents=invoice.get("amount_paid"),
                metadata={"invoice_id": invoice.get("id")},
            )
        return WebhookOutcome(event_type=event_type, handled=True, user_id=row.user_id)

    def _payment_failed(self, event: dict[str, Any]) -> WebhookOutcome:
        invoice = event["data"]["object"]
        event_type = event["type"]
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return WebhookOutcome(event_type=event_type, handled=False)
        row = self._row_for_subscription(event_type, subscription_id)
        if row is None:
            return WebhookOutcome(event_type=event_type, handled=False)
        row.last_payment_status = PaymentStatus.FAILED.value
        row.status = SubscriptionStatus.PAST_DUE.value
        self._repository.save(row)
        self._log_event(
            row.user_id,
            SubscriptionEventType.PAYMENT_FAILED,
            "Falha no pagamento - atualize seu cartão",
            amount_cents=invoice.get("amount_due"),
            metadata={"invoice_id": invoice.get("id")},
        )
        metrics.increment("billing.payment.failed", tags={"gateway": self.gateway})
        return WebhookOutcome(event_type=event_type, handled=True, user_id=row.user_id)


class AsaasWebhookProcessor:
    """Apply ASAAS payment notifications to stored subscriptions."""

    gateway = GatewayName.ASAAS.value

    def __init__(
        self, repository: SubscriptionRepository, *, webhook_token: str | None = None
    ) -> None:
        self._repository = repository
        self._webhook_token = webhook_token

    def verify_token(self, token: str | None) -> None:
        if not self._webhook_token:
            return
        if token != self._webhook_token:
            logger.warning("asaas.webhook.token_invalid")
            _signature_alert("asaas.webhook.token_invalid")
            raise WebhookSignatureError("Unauthorized")

    def process(self, body: dict[str, Any]) -> WebhookOutcome:
        event_name = str(body.get("event") or "")
        payment = body.get("payment")
        if payment is not None and not isinstance(payment, dict):
            logger.warning("asaas.webhook.malformed", extra={"type": event_name})
            metrics.increment("asaas.webhook.malformed", tags={"type": event_name})
            raise WebhookPayloadError("Invalid payment payload")
        payment = payment or {}
        logger.info(
            "asaas.webhook.received", extra={"type": event_name, "payment_id": payment.get("id")}
        )
        if not payment:
            logger.info("asaas.webhook.ignored", extra={"type": event_name})
            return WebhookOutcome(event_type=event_name, handled=False)

        subscription_id = payment.get("subscriptionId") or payment.get("id")
        customer_id = payment.get("customer")
        row = None
        if customer_id:
            row = self._repository.get_by_gateway_customer_id(self.gateway, customer_id)
        if row is None and subscription_id:
            row = self._repository.get_by_gateway_subscription_id(self.gateway, subscription_id)
        if row is None:
            logger.warning(
                "asaas.webhook.user_unresolved",
                extra={"customer_id": customer_id, "type": event_name},
            )
            metrics.increment("asaas.webhook.user_unresolved")
            return WebhookOutcome(event_type=event_name, handled=False, warning=USER_NOT_FOUND)

        confirmed = event_name in ASAAS_CONFIRMED_EVENTS
        coupon_code = row.pending_coupon
        if confirmed and coupon_code:
            self._redeem_coupon(row, coupon_code, payment)

        payment_status = str(payment.get("status") or "")
        row.status = ASAAS_STATUS_MAP.get(payment_status, SubscriptionStatus.ACTIVE.value)
        if payment.get("subscriptionId") and not row.gateway_subscription_id:
            row.gateway_subscription_id = payment["subscriptionId"]
        if confirmed:
            row.last_payment_status = PaymentStatus.PAID.value
            row.pending_coupon = None
        self._repository.save(row)

        value = _as_amount(payment.get("value"))
        self._repository.append_event(
            SubscriptionEvent(
                user_id=row.user_id,
                event_type=event_name.lower(),
                description=(
                    f"Pagamento ASAAS: {payment_status}. ID: {payment.get('id')}. "
                    f"Cupom: {coupon_code or 'Nenhum'}"
                ),
                plan_name=row.plan_name,
                amount_cents=round(value * 100) if value is not None else None,
                event_metadata={"gateway": self.gateway, "payment_id": payment.get("id")},
            )
        )
        metrics.increment("asaas.webhook.processed", tags={"type": event_name})
        return WebhookOutcome(event_type=event_name, handled=True, user_id=row.user_id)

    def _redeem_coupon(
        self, row: Subscription, coupon_code: str, payment: dict[str, Any]
    ) -> None:
        coupon = self._repository.find_coupon(coupon_code)
        if coupon is None:
            logger.warning(
                "asaas.webhook.coupon_unknown", extra={"user_id": row.user_id, "code": coupon_code}
            )
            return
        final_amount = _as_amount(payment.get("value")) or 0.0
        original_amount = _as_amount(payment.get("originalValue")) or final_amount
        self._repository.record_coupon_usage(
            CouponUsage(
                coupon_id=coupon.id,
                user_id=row.user_id,
                payment_id=payment.get("id"),
                original_amount=original_amount,
                discount_amount=coupon.discount_for(original_amount),
                final_amount=final_amount,
            )
        )
        logger.info(
            "asaas.webhook.coupon_redeemed",
            extra={"user_id": row.user_id, "code": coupon.code, "payment_id": payment.get("id")},
        )


def get_stripe_webhook_processor() -> StripeWebhookProcessor:
    return StripeWebhookProcessor(get_subscription_repository())


def get_asaas_webhook_processor() -> AsaasWebhookProcessor:
    return AsaasWebhookProcessor(
        get_subscription_repository(), webhook_token=settings.asaas_webhook_token
    )
