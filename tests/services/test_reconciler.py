from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.models.subscription import Subscription, SubscriptionEvent
from app.services.billing import reconciler as reconciler_module
from app.services.billing.reconciler import (
    NormalizedSnapshot,
    SubscriptionReconciler,
    detect_transition,
    normalize_invoices,
    normalize_snapshot,
)
from tests.helpers.metrics_stub import StubMetrics

MONTHLY = "price_1SqHrZJrvxBiHEjISBIjF1Xg"
PERIOD_END = 1719792000  # 2024-07-01T00:00:00Z


def _stripe_subscription(
    status: str = "active", *, cancel_at_period_end: bool = False, price_id: str = MONTHLY
) -> dict:
    return {
        "id": "sub_1",
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_end": PERIOD_END,
        "items": {"data": [{"price": {"id": price_id, "product": {"name": "Risu"}}}]},
    }


def _stripe_row(user_id: str = "user-1") -> Subscription:
    return Subscription(
        user_id=user_id,
        gateway_name="stripe",
        gateway_customer_id="cus_1",
        gateway_subscription_id="sub_1",
        status="active",
        plan_name="Risu Mensal",
    )


@pytest.fixture
def stub_metrics(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(reconciler_module, "metrics", stub)
    return stub


def _ledger_types(repository, user_id: str = "user-1") -> list[str]:
    return [event.event_type for event in reversed(repository.list_events(user_id, limit=100))]


def test_stripe_snapshot_mapping() -> None:
    snapshot = normalize_snapshot("stripe", _stripe_subscription())

    assert snapshot.status == "active"
    assert snapshot.plan_name == "Risu Mensal"
    assert snapshot.current_period_end == datetime(2024, 7, 1, tzinfo=timezone.utc)
    assert snapshot.billing_cycle == "monthly"


def test_stripe_snapshot_plan_name_falls_back_to_product_then_default() -> None:
    by_product = _stripe_subscription(price_id="price_legacy")
    by_product["items"]["data"][0]["price"]["product"] = {"name": "Risu Plus"}
    bare = _stripe_subscription(price_id="price_legacy")

    assert normalize_snapshot("stripe", by_product).plan_name == "Risu Plus"
    assert normalize_snapshot("stripe", bare).plan_name == "Risu Mensal"
    assert normalize_snapshot("stripe", {"status": "mystery"}).status == "incomplete"


def test_stripe_period_end_falls_back_to_item() -> None:
    raw = _stripe_subscription()
    raw.pop("current_period_end")
    raw["items"]["data"][0]["current_period_end"] = PERIOD_END

    assert normalize_snapshot("stripe", raw).current_period_end.year == 2024


@pytest.mark.parametrize(
    ("asaas_status", "expected"),
    [("ACTIVE", "active"), ("INACTIVE", "canceled"), ("EXPIRED", "canceled"), ("OVERDUE", "past_due")],
)
def test_asaas_snapshot_mapping(asaas_status: str, expected: str) -> None:
    raw = {
        "status": "active" if asaas_status == "ACTIVE" else "inactive",
        "asaas_status": asaas_status,
        "value": 479.4,
        "cycle": "SEMIANNUALLY",
        "nextDueDate": "2024-09-15",
    }

    snapshot = normalize_snapshot("asaas", raw, fallback_plan_name="Risu Mensal")

    assert snapshot.status == expected
    assert snapshot.plan_name == "Risu Semestral"
    assert snapshot.current_period_end == datetime(2024, 9, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("status", "cancel_flag", "tail", "expected"),
    [
        ("active", False, "canceled", "reactivated"),
        ("active", False, "cancellation_scheduled", "reactivated"),
        ("active", True, "subscribed", "cancellation_scheduled"),
        ("active", True, "cancellation_scheduled", None),
        ("canceled", False, "subscribed", "canceled"),
        ("canceled", False, None, "canceled"),
        ("canceled", False, "canceled", None),
        ("active", False, "subscribed", None),
        ("active", False, None, None),
        ("past_due", False, "payment_failed", None),
    ],
)
def test_detect_transition(status, cancel_flag, tail, expected) -> None:
    snapshot = NormalizedSnapshot(
        status=status,
        current_period_end=None,
        plan_name="Risu Mensal",
        cancel_at_period_end=cancel_flag,
    )

    assert detect_transition(snapshot, tail) == expected


def test_invoice_normalisation_has_common_shape() -> None:
    stripe_invoices = normalize_invoices(
        "stripe",
        [
            {
                "id": "in_1",
                "amount_paid": 9990,
                "created": PERIOD_END,
                "lines": {"data": [{"description": "1 × Risu Mensal"}]},
                "invoice_pdf": "https://pay.stripe.test/in_1.pdf",
            },
            {"id": "in_2", "amount_paid": 0, "created": PERIOD_END, "lines": {"data": []}},
        ],
        plan_name="Risu Mensal",
    )
    asaas_invoices = normalize_invoices(
        "asaas",
        [
            {
                "id": "pay_1",
                "value": 99.9,
                "dateCreated": "2024-07-01",
                "description": "Plano Risu Mensal",
                "bankSlipUrl": "https://sandbox.asaas.com/b/pay_1",
            }
        ],
        plan_name="Risu Mensal",
    )

    for invoice in stripe_invoices + asaas_invoices:
        assert invoice.id
        assert isinstance(invoice.amount, float)
        assert datetime.fromisoformat(invoice.created).tzinfo is not None
        assert invoice.description
    assert stripe_invoices[0].amount == 99.9
    assert stripe_invoices[1].description == "Risu Mensal"
    assert asaas_invoices[0].pdf_url == "https://sandbox.asaas.com/b/pay_1"


def test_reconcile_without_row_reports_no_subscription(repository, provider_factory) -> None:
    info = SubscriptionReconciler(repository, provider_factory()).reconcile("user-1")

    assert info.plan_name == "Sem Assinatura"
    assert info.subscription_status == "none"
    assert info.invoices == []
    assert info.events == []


def test_reactivation_is_logged_once(
    repository, provider_factory, fake_stripe, stub_metrics
) -> None:
    fake_stripe.subscriptions["sub_1"] = _stripe_subscription("active")
    repository.save(_stripe_row())
    repository.append_event(
        SubscriptionEvent(user_id="user-1", event_type="canceled", description="Assinatura cancelada")
    )
    reconciler = SubscriptionReconciler(repository, provider_factory())

    reconciler.reconcile("user-1")
    reconciler.reconcile("user-1")

    assert _ledger_types(repository) == ["canceled", "reactivated"]
    assert stub_metrics.counted("billing.reconcile.transition") == 1


def test_scheduled_then_final_cancellation(repository, provider_factory, fake_stripe) -> None:
    fake_stripe.subscriptions["sub_1"] = _stripe_subscription("active", cancel_at_period_end=True)
    repository.save(_stripe_row())
    reconciler = SubscriptionReconciler(repository, provider_factory())

    info = reconciler.reconcile("user-1")
    reconciler.reconcile("user-1")
    fake_stripe.subscriptions["sub_1"] = _stripe_subscription("canceled")
    reconciler.reconcile("user-1")
    final = reconciler.reconcile("user-1")

    assert _ledger_types(repository) == ["cancellation_scheduled", "canceled"]
    assert info.events[0].description == "Cancelamento agendado para 01/07/2024."
    assert final.subscription_status == "canceled"
    assert repository.get_for_user("user-1", "stripe").status == "canceled"


def test_snapshot_is_persisted_even_without_transition(
    repository, provider_factory, fake_stripe
) -> None:
    fake_stripe.subscriptions["sub_1"] = _stripe_subscription(
        "past_due", price_id="price_1SqHuVJrvxBiHEjIUNJCWLFm"
    )
    row = _stripe_row()
    repository.save(row)

    info = SubscriptionReconciler(repository, provider_factory()).reconcile("user-1")

    stored = repository.get_for_user("user-1", "stripe")
    assert stored.status == "past_due"
    assert stored.plan_name == "Risu Anual"
    assert stored.amount_cents == 83880
    assert stored.current_period_end == datetime(2024, 7, 1, tzinfo=timezone.utc)
    assert info.next_billing_date == "2024-07-01T00:00:00+00:00"
    assert repository.list_events("user-1") == []


def test_billing_info_includes_invoices_and_events(repository, provider_factory, fake_stripe) -> None:
    fake_stripe.subscriptions["sub_1"] = _stripe_subscription("active")
    fake_stripe.invoices["cus_1"] = [
        {"id": "in_1", "amount_paid": 9990, "created": PERIOD_END, "invoice_pdf": "https://x/1.pdf"}
    ]
    repository.save(_stripe_row())
    repository.append_event(
        SubscriptionEvent(user_id="user-1", event_type="subscribed", description="Assinatura ativada")
    )

    info = SubscriptionReconciler(repository, provider_factory()).reconcile("user-1")
    payload = info.model_dump(by_alias=True)

    assert payload["planName"] == "Risu Mensal"
    assert payload["subscriptionStatus"] == "active"
    assert payload["invoices"][0] == {
        "id": "in_1",
        "amount": 99.9,
        "created": "2024-07-01T00:00:00+00:00",
        "description": "Risu Mensal",
        "pdfUrl": "https://x/1.pdf",
    }
    assert payload["events"][0]["type"] == "event"
    assert payload["events"][0]["eventType"] == "subscribed"


def test_row_without_remote_subscription_skips_status_call(
    repository, provider_factory, fake_stripe
) -> None:
    repository.save(
        Subscription(
            user_id="user-1", gateway_name="stripe", gateway_customer_id="cus_1", status="incomplete"
        )
    )

    info = SubscriptionReconciler(repository, provider_factory()).reconcile("user-1")

    assert info.subscription_status == "incomplete"
    assert fake_stripe.calls_to("subscription.retrieve") == []
    assert len(fake_stripe.calls_to("invoice.list")) == 1


def test_asaas_row_reconciles_against_asaas(repository, provider_factory, asaas_api) -> None:
    asaas_api.subscriptions["sub_a1"] = {
        "id": "sub_a1",
        "status": "EXPIRED",
        "value": 99.9,
        "cycle": "MONTHLY",
        "nextDueDate": "2024-08-10",
    }
    asaas_api.payments = [
        {"id": "pay_1", "customer": "cus_000001", "value": 99.9, "dateCreated": "2024-07-10"}
    ]
    repository.save(
        Subscription(
            user_id="user-1",
            gateway_name="asaas",
            gateway_customer_id="cus_000001",
            gateway_subscription_id="sub_a1",
            status="active",
        )
    )

    info = SubscriptionReconciler(repository, provider_factory("asaas")).reconcile("user-1")

    assert info.subscription_status == "canceled"
    assert info.plan_name == "Risu Mensal"
    assert info.gateway == "asaas"
    assert info.invoices[0].amount == 99.9
    assert _ledger_types(repository) == ["canceled"]


def test_snapshot_without_period_end_keeps_stored_date(
    repository, provider_factory, fake_stripe
) -> None:
    raw = _stripe_subscription("active")
    raw.pop("current_period_end")
    fake_stripe.subscriptions["sub_1"] = raw
    row = _stripe_row()
    row.current_period_end = datetime(2024, 7, 1, tzinfo=timezone.utc)
    repository.save(row)

    SubscriptionReconciler(repository, provider_factory()).reconcile("user-1")

    stored = repository.get_for_user("user-1", "stripe")
    assert stored.current_period_end == datetime(2024, 7, 1, tzinfo=timezone.utc)
    assert stored.status == "active"
