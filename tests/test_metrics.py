from __future__ import annotations

import logging

from app.config import Settings
from app.observability.metrics import MetricsReporter, _statsd_bucket


def test_metric_names_are_namespaced_once() -> None:
    reporter = MetricsReporter(Settings(metrics_namespace="billing"))

    assert reporter.qualify("stripe.webhook.processed") == "billing.stripe.webhook.processed"
    assert reporter.qualify("billing.payment.failed") == "billing.payment.failed"
    assert reporter.qualify("") == "billing"


def test_counter_is_logged_with_tags(caplog) -> None:
    reporter = MetricsReporter(Settings(metrics_backend="stdout"))

    with caplog.at_level(logging.INFO, logger="app.metrics"):
        reporter.increment("gateway.customer.created", tags={"gateway": "asaas"})

    record = caplog.records[-1]
    assert record.getMessage() == "billing.metric"
    assert record.metrics["metric"] == "billing.gateway.customer.created"
    assert record.metrics["type"] == "counter"
    assert record.metrics["tags"] == {"gateway": "asaas"}


def test_disabled_reporter_is_silent(caplog) -> None:
    reporter = MetricsReporter(Settings(metrics_disable=True))

    with caplog.at_level(logging.INFO, logger="app.metrics"):
        reporter.increment("stripe.webhook.ignored")
        reporter.alert("stripe.webhook.signature_invalid", value=1, threshold=0, severity="warning")

    assert reporter.enabled is False
    assert caplog.records == []


def test_alert_carries_schema_version(caplog) -> None:
    reporter = MetricsReporter(Settings(metrics_schema_version="billing.v1"))

    with caplog.at_level(logging.WARNING, logger="app.metrics"):
        reporter.alert("asaas.webhook.token_invalid", value=1, threshold=0, severity="warning")

    payload = caplog.records[-1].metrics
    assert payload["metric"] == "billing.asaas.webhook.token_invalid"
    assert payload["schema_version"] == "billing.v1"


def test_statsd_bucket_folds_gateway_and_type() -> None:
    assert (
        _statsd_bucket("billing.webhook.processed", {"gateway": "stripe", "op": "x"})
        == "billing.webhook.processed.stripe"
    )
    assert _statsd_bucket("billing.stripe.webhook.ignored", {"type": "customer.created"}) == (
        "billing.stripe.webhook.ignored.customer.created"
    )
    assert _statsd_bucket("billing.ping", None) == "billing.ping"
