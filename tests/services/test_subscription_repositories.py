from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.config import settings
from app.models.subscription import (
    Coupon,
    CouponUsage,
    Profile,
    Subscription,
    SubscriptionEvent,
)
from app.services.billing.repositories import (
    InMemorySubscriptionRepository,
    SqlSubscriptionRepository,
    build_subscription_repository,
    select_active_subscription,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemorySubscriptionRepository()
        return
    repository = SqlSubscriptionRepository(
        f"sqlite:///{tmp_path / 'billing.db'}", auto_create_schema=True
    )
    yield repository
    repository.dispose()


def _row(
    status: str, gateway: str = "stripe", *, minutes: int = 0, user: str = "u1"
) -> Subscription:
    return Subscription(
        user_id=user,
        gateway_name=gateway,
        status=status,
        updated_at=NOW + timedelta(minutes=minutes),
    )


def test_active_on_configured_gateway_wins() -> None:
    rows = [_row("active", "stripe", minutes=5), _row("active", "asaas", minutes=1)]

    assert select_active_subscription(rows, "asaas").gateway_name == "asaas"
    assert select_active_subscription(rows, "stripe").gateway_name == "stripe"


def test_any_active_beats_trialing_and_recency() -> None:
    rows = [_row("trialing", "stripe", minutes=9), _row("active", "asaas", minutes=1)]

    assert select_active_subscription(rows, "stripe").status == "active"


def test_trialing_beats_most_recent() -> None:
    rows = [_row("canceled", "stripe", minutes=9), _row("trialing", "asaas", minutes=1)]

    assert select_active_subscription(rows, "stripe").status == "trialing"


def test_falls_back_to_most_recently_updated() -> None:
    rows = [_row("canceled", "stripe", minutes=1), _row("past_due", "asaas", minutes=3)]

    assert select_active_subscription(rows, "stripe").gateway_name == "asaas"
    assert select_active_subscription([], "stripe") is None


def test_save_upserts_by_user_and_gateway(store) -> None:
    first = store.save(
        Subscription(user_id="u1", gateway_name="stripe", gateway_customer_id="cus_1")
    )
    updated_at = first.updated_at

    again = Subscription(
        user_id="u1", gateway_name="stripe", gateway_customer_id="cus_1", status="active"
    )
    saved = store.save(again)

    rows = store.list_for_user("u1")
    assert len(rows) == 1
    assert rows[0].status == "active"
    assert saved.id == first.id
    assert saved.updated_at >= updated_at


def test_rows_are_scoped_per_gateway(store) -> None:
    store.save(Subscription(user_id="u1", gateway_name="stripe", gateway_customer_id="cus_1"))
    store.save(Subscription(user_id="u1", gateway_name="asaas", gateway_customer_id="cus_000001"))

    assert len(store.list_for_user("u1")) == 2
    assert store.get_for_user("u1", "asaas").gateway_customer_id == "cus_000001"
    assert store.get_by_gateway_customer_id("stripe", "cus_000001") is None
    assert store.get_by_gateway_customer_id("asaas", "cus_000001").user_id == "u1"


def test_lookup_by_remote_subscription_id(store) -> None:
    store.save(
        Subscription(
            user_id="u2",
            gateway_name="stripe",
            gateway_customer_id="cus_2",
            gateway_subscription_id="sub_2",
        )
    )

    assert store.get_by_gateway_subscription_id("stripe", "sub_2").user_id == "u2"
    assert store.get_by_gateway_subscription_id("asaas", "sub_2") is None


def test_profile_lookup_is_case_insensitive(store) -> None:
    store.add_profile(Profile(id="u3", email="Bia@Example.com"))

    assert store.find_profile_by_email("bia@example.com").id == "u3"
    assert store.find_profile_by_email("nobody@example.com") is None


def test_ledger_tail_and_limit(store) -> None:
    for index in range(12):
        store.append_event(
            SubscriptionEvent(
                user_id="u1",
                event_type=f"event_{index}",
                description="",
                created_at=NOW + timedelta(seconds=index),
            )
        )
    store.append_event(SubscriptionEvent(user_id="other", event_type="subscribed", created_at=NOW))

    events = store.list_events("u1")

    assert len(events) == 10
    assert events[0].event_type == "event_11"
    assert store.latest_event("u1").event_type == "event_11"
    assert store.latest_event("nobody") is None


def test_event_metadata_round_trips(store) -> None:
    store.append_event(
        SubscriptionEvent(
            user_id="u1",
            event_type="subscribed",
            description="Assinatura Risu Mensal ativada",
            amount_cents=9990,
            event_metadata={"stripe_subscription_id": "sub_1"},
        )
    )

    event = store.latest_event("u1")
    assert event.event_metadata == {"stripe_subscription_id": "sub_1"}
    assert event.amount_cents == 9990


def test_ping(store) -> None:
    assert store.ping() is True


def test_build_without_database_url_uses_memory(monkeypatch) -> None:
    monkeypatch.setattr(settings, "database_url", None)

    assert isinstance(build_subscription_repository(), InMemorySubscriptionRepository)


def test_coupon_lookup_ignores_case(store) -> None:
    store.add_coupon(Coupon(code="RISU10", type="percentage", value=10))

    assert store.find_coupon("risu10").value == 10
    assert store.find_coupon(" Risu10 ").code == "RISU10"
    assert store.find_coupon("OTHER") is None


def test_coupon_usage_increments_current_uses(store) -> None:
    coupon = Coupon(code="BEMVINDO", type="fixed", value=20, max_uses=5)
    store.add_coupon(coupon)

    store.record_coupon_usage(
        CouponUsage(
            coupon_id=coupon.id,
            user_id="u1",
            payment_id="pay_1",
            original_amount=99.9,
            discount_amount=20,
            final_amount=79.9,
        )
    )

    assert store.find_coupon("BEMVINDO").current_uses == 1
    usages = store.list_coupon_usages()
    assert [usage.payment_id for usage in usages] == ["pay_1"]
    assert usages[0].final_amount == pytest.approx(79.9)
