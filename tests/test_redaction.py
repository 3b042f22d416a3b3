from __future__ import annotations

import logging

import pytest

from app.observability.redaction import mask_email
from app.services.billing.checkout import CheckoutService
from app.services.billing.webhooks import StripeWebhookProcessor


@pytest.mark.parametrize(
    ("email", "masked"),
    [
        ("ana@example.com", "a***@example.com"),
        ("Bia.Lima@risu.com.br", "B***@risu.com.br"),
        ("no-at-sign", "***"),
        ("", "***"),
        (None, "***"),
    ],
)
def test_mask_email(email, masked) -> None:
    assert mask_email(email) == masked


def test_checkout_and_webhook_logs_mask_the_same_way(
    caplog, repository, provider_factory, current_user
) -> None:
    caplog.set_level(logging.INFO)
    CheckoutService(repository, provider_factory()).start_checkout(
        current_user, "price_1SqHrZJrvxBiHEjISBIjF1Xg", "https://ok", "https://cancel"
    )
    StripeWebhookProcessor(repository).process(
        {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_2", "customer_email": "ghost@example.com"}},
        }
    )

    logged = {
        record.getMessage(): getattr(record, "email", None)
        for record in caplog.records
        if hasattr(record, "email")
    }
    assert logged["billing.customer.created"] == "a***@example.com"
    assert logged["stripe.webhook.user_unresolved"] == "g***@example.com"
