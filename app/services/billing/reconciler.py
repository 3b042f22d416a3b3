"""Poll-based reconciliation of local subscription rows against gateway truth.

Each call refreshes the stored snapshot unconditionally but only appends a
ledger event when the normalised state differs from what the latest
``subscription_events`` row already implies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.config import Settings, settings
from app.models.subscription import (
    Subscription,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
)
from app.observability.metrics import metrics
from app.services.billing.factory import ProviderFactory, get_provider_factory
from app.services.billing.plans import (
    DEFAULT_PLAN,
    NO_PLAN_LABEL,
    find_plan_by_terms,
    resolve_plan,
)
from app.services.billing.repositories import (
    EVENT_PAGE_SIZE,
    SubscriptionRepository,
    get_subscription_repository,
    select_active_subscription,
)

logger = logging.getLogger(__name__)

_STRIPE_STATUSES = {
    "incomplete",
    "incomplete_expired",
    "trialing",
    "active",
    "past_due",
    "canceled",
    "unpaid",
    "paused",
}
_STRIPE_STATUS_ALIASES = {
    "incomplete_expired": SubscriptionStatus.CANCELED.value,
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "paused": SubscriptionStatus.PAST_DUE.value,
}
_ASAAS_CANCELED = {"inactive", "expired", "deleted"}


@dataclass
class NormalizedSnapshot:
    status: str
    current_period_end: datetime | None
    plan_name: str
    cancel_at_period_end: bool = False
    billing_cycle: str | None = None
    amount_cents: int | None = None


class InvoiceView(BaseModel):
    id: str
    amount: float
    created: str
    description: str
    pdf_url: str | None = Field(default=None, alias="pdfUrl")

    model_config = ConfigDict(populate_by_name=True)


class EventView(BaseModel):
    id: str
    type: str = "event"
    event_type: str = Field(alias="eventType")
    description: str
    created: str

    model_config = ConfigDict(populate_by_name=True)


class BillingInfo(BaseModel):
    """Payload returned by ``/get-billing-info``."""

    plan_name: str = Field(alias="planName")
    subscription_status: str = Field(alias="subscriptionStatus")
    next_billing_date: str | None = Field(default=None, alias="nextBillingDate")
    gateway: str | None = None
    invoices: list[InvoiceView] = Field(default_factory=list)
    events: list[EventView] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


def _from_epoch(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _parse_datetime(value: Any) -> datetime | None:
    """Parse ASAAS dates (``YYYY-MM-DD`` or ISO timestamps) as UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text[:10], "%Y-%m-%d")
        except ValueError:
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _first_item(raw: dict[str, Any]) -> dict[str, Any]:
    items = (raw.get("items") or {}).get("data") or []
    return items[0] if items else {}


def normalize_stripe_snapshot(
    raw: dict[str, Any], *, fallback_plan_name: str | None = None
) -> NormalizedSnapshot:
    item = _first_item(raw)
    price = item.get("price") or {}
    product = price.get("product")
    product_name = product.get("name") if isinstance(product, dict) else None

    status = str(raw.get("status") or "").lower()
    if status not in _STRIPE_STATUSES:
        status = SubscriptionStatus.INCOMPLETE.value
    status = _STRIPE_STATUS_ALIASES.get(status, status)

    plan = resolve_plan(price.get("id"))
    plan_name = (plan.name if plan else None) or product_name or fallback_plan_name
    plan_name = plan_name or DEFAULT_PLAN.name
    if plan_name == "Risu":
        plan_name = DEFAULT_PLAN.name

    period_end = _from_epoch(raw.get("current_period_end")) or _from_epoch(
        item.get("current_period_end")
    )
    return NormalizedSnapshot(
        status=status,
        current_period_end=period_end,
        plan_name=plan_name,
        cancel_at_period_end=bool(raw.get("cancel_at_period_end")),
        billing_cycle=plan.billing_cycle if plan else None,
        amount_cents=plan.amount_cents if plan else None,
    )


def normalize_asaas_snapshot(
    raw: dict[str, Any], *, fallback_plan_name: str | None = None
) -> NormalizedSnapshot:
    asaas_status = str(raw.get("asaas_status") or raw.get("status") or "").lower()
    if asaas_status == "active":
        status = SubscriptionStatus.ACTIVE.value
    elif asaas_status in _ASAAS_CANCELED:
        status = SubscriptionStatus.CANCELED.value
    else:
        status = SubscriptionStatus.PAST_DUE.value
    plan = find_plan_by_terms(raw.get("value"), raw.get("cycle"))
    return NormalizedSnapshot(
        status=status,
        current_period_end=_parse_datetime(raw.get("nextDueDate")),
        plan_name=(plan.name if plan else None) or fallback_plan_name or DEFAULT_PLAN.name,
        billing_cycle=plan.billing_cycle if plan else None,
        amount_cents=plan.amount_cents if plan else None,
    )


def normalize_snapshot(
    gateway: str, raw: dict[str, Any], *, fallback_plan_name: str | None = None
) -> NormalizedSnapshot:
    if gateway == "asaas":
        return normalize_asaas_snapshot(raw, fallback_plan_name=fallback_plan_name)
    return normalize_stripe_snapshot(raw, fallback_plan_name=fallback_plan_name)


def normalize_invoice(gateway: str, raw: dict[str, Any], *, plan_name: str) -> InvoiceView:
    if gateway == "asaas":
        created = _parse_datetime(raw.get("dateCreated"))
        return InvoiceView(
            id=str(raw.get("id") or ""),
            amount=float(raw.get("value") or 0),
            created=_isoformat(created) or "",
            description=raw.get("description") or plan_name,
            pdf_url=raw.get("invoiceUrl") or raw.get("bankSlipUrl"),
        )
    lines = (raw.get("lines") or {}).get("data") or []
    line_description = lines[0].get("description") if lines else None
    return InvoiceView(
        id=str(raw.get("id") or ""),
        amount=(raw.get("amount_paid") or 0) / 100,
        created=_isoformat(_from_epoch(raw.get("created"))) or "",
        description=line_description or plan_name,
        pdf_url=raw.get("invoice_pdf"),
    )


def normalize_invoices(
    gateway: str, invoices: list[dict[str, Any]], *, plan_name: str
) -> list[InvoiceView]:
    return [normalize_invoice(gateway, raw, plan_name=plan_name) for raw in invoices]


def detect_transition(snapshot: NormalizedSnapshot, tail_type: str | None) -> str | None:
    """Return the event type implied by ``snapshot`` given the ledger tail, if any."""
    canceled = SubscriptionEventType.CANCELED.value
    scheduled = SubscriptionEventType.CANCELLATION_SCHEDULED.value
    if (
        snapshot.status == SubscriptionStatus.ACTIVE.value
        and not snapshot.cancel_at_period_end
        and tail_type in (canceled, scheduled)
    ):
        return SubscriptionEventType.REACTIVATED.value
    if snapshot.cancel_at_period_end and tail_type != scheduled:
        return scheduled
    if snapshot.status == SubscriptionStatus.CANCELED.value and tail_type != canceled:
        return canceled
    return None


def describe_transition(event_type: str, snapshot: NormalizedSnapshot, gateway: str) -> str:
    if event_type == SubscriptionEventType.REACTIVATED.value:
        return f"Assinatura reativada com sucesso direto pela {gateway.capitalize()}."
    if event_type == SubscriptionEventType.CANCELLATION_SCHEDULED.value:
        if snapshot.current_period_end is not None:
            return (
                "Cancelamento agendado para "
                f"{snapshot.current_period_end.strftime('%d/%m/%Y')}."
            )
        return "Cancelamento agendado."
    return "Sua assinatura foi cancelada conforme solicitado."


def event_view(event: SubscriptionEvent) -> EventView:
    return EventView(
        id=str(event.id),
        event_type=event.event_type,
        description=event.description,
        created=_isoformat(event.created_at) or "",
    )


class SubscriptionReconciler:
    """Refresh a tenant's subscription from its gateway and build billing info."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        factory: ProviderFactory,
        *,
        config: Settings | None = None,
    ) -> None:
        self._repository = repository
        self._factory = factory
        self._settings = config or settings

    def reconcile(self, user_id: str) -> BillingInfo:
        rows = self._repository.list_for_user(user_id)
        row = select_active_subscription(rows, self._factory.default_gateway)
        if row is None or not row.gateway_customer_id:
            return BillingInfo(
                plan_name=NO_PLAN_LABEL,
                subscription_status=SubscriptionStatus.NONE.value,
            )

        provider = self._factory.get_provider(row.gateway_name)
        plan_name = row.plan_name or DEFAULT_PLAN.name
        status = row.status
        next_billing = row.current_period_end

        if row.gateway_subscription_id:
            raw = provider.get_subscription_status(row.gateway_subscription_id)
            snapshot = normalize_snapshot(row.gateway_name, raw, fallback_plan_name=row.plan_name)
            self._record_transition(row, snapshot)
            row = self._apply_snapshot(row, snapshot)
            plan_name = snapshot.plan_name
            status = snapshot.status
            next_billing = snapshot.current_period_end

        invoices = normalize_invoices(
            row.gateway_name,
            provider.get_invoices(row.gateway_customer_id),
            plan_name=plan_name,
        )
        events = self._repository.list_events(user_id, limit=EVENT_PAGE_SIZE)
        return BillingInfo(
            plan_name=plan_name,
            subscription_status=status,
            next_billing_date=_isoformat(next_billing),
            gateway=row.gateway_name,
            invoices=invoices,
            events=[event_view(event) for event in events],
        )

    def _record_transition(self, row: Subscription, snapshot: NormalizedSnapshot) -> None:
        tail = self._repository.latest_event(row.user_id)
        tail_type = tail.event_type if tail else None
        event_type = detect_transition(snapshot, tail_type)
        if event_type is None:
            return
        self._repository.append_event(
            SubscriptionEvent(
                user_id=row.user_id,
                event_type=event_type,
                description=describe_transition(event_type, snapshot, row.gateway_name),
                plan_name=snapshot.plan_name,
                event_metadata={
                    "gateway": row.gateway_name,
                    "gateway_subscription_id": row.gateway_subscription_id,
                    "source": "reconciler",
                },
            )
        )
        logger.info(
            "billing.reconcile.transition",
            extra={"user_id": row.user_id, "event_type": event_type, "previous": tail_type},
        )
        metrics.increment(
            "billing.reconcile.transition",
            tags={"gateway": row.gateway_name, "type": event_type},
        )

    def _apply_snapshot(self, row: Subscription, snapshot: NormalizedSnapshot) -> Subscription:
        row.status = snapshot.status
        row.plan_name = snapshot.plan_name
        row.current_period_end = snapshot.current_period_end or row.current_period_end
        row.cancel_at_period_end = snapshot.cancel_at_period_end
        if snapshot.billing_cycle:
            row.billing_cycle = snapshot.billing_cycle
        if snapshot.amount_cents is not None:
            row.amount_cents = snapshot.amount_cents
        return self._repository.save(row)


def get_subscription_reconciler() -> SubscriptionReconciler:
    return SubscriptionReconciler(get_subscription_repository(), get_provider_factory())
