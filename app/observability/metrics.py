"""Billing metrics: structured log lines, mirrored to StatsD when configured.

Every emitter is fire-and-forget. A broken metrics backend must never fail a
checkout or a webhook, so backend errors are logged and dropped.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any

from app.config import Settings, settings

try:  # pragma: no cover - optional dependency
    from statsd import StatsClient
except ImportError:  # pragma: no cover - statsd is an optional extra
    StatsClient = None  # type: ignore[assignment]

logger = logging.getLogger("app.metrics")

# Tags whose values are folded into the StatsD bucket name (StatsD has no tags).
STATSD_NAME_TAGS = ("gateway", "type")


class MetricsReporter:
    """Counters, timings, and alerts for gateway calls and webhook outcomes."""

    def __init__(self, config: Settings | None = None) -> None:
        config = config or settings
        self.namespace = config.metrics_namespace or "billing"
        self.backend = "none" if config.metrics_disable else config.metrics_backend.lower()
        self.sample_rate = max(0.0, min(config.metrics_sample_rate, 1.0))
        self.schema_version = config.metrics_schema_version
        self._statsd = None
        if self.backend == "statsd":
            self._statsd = self._connect_statsd(config)

    def _connect_statsd(self, config: Settings):
        if StatsClient is None:
            logger.warning("metrics.statsd.unavailable")
            return None
        try:
            return StatsClient(
                host=config.metrics_statsd_host, port=config.metrics_statsd_port, prefix=None
            )
        except OSError as exc:
            self._backend_error("statsd.connect", exc)
            return None

    @property
    def enabled(self) -> bool:
        return self.backend != "none"

    def timing(self, metric: str, value_ms: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit("timing", metric, value_ms, tags)

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._emit("counter", metric, value, tags)

    def alert(
        self,
        metric: str,
        *,
        value: float,
        threshold: float,
        severity: str,
        tags: dict[str, Any] | None = None,
    ) -> None:
        """Log an alert record; alerts are never sampled."""
        if not self.enabled:
            return
        logger.warning(
            f"{self.namespace}.alert",
            extra={
                "metrics": {
                    "metric": self.qualify(metric),
                    "value": round(float(value), 4),
                    "threshold": round(float(threshold), 4),
                    "severity": severity,
                    "schema_version": self.schema_version,
                    "tags": tags or {},
                }
            },
        )

    def qualify(self, metric: str) -> str:
        """Prefix ``metric`` with the namespace unless it already carries it."""
        name = (metric or "").strip()
        if not name:
            return self.namespace
        if name.startswith(f"{self.namespace}."):
            return name
        return f"{self.namespace}.{name}"

    def _sampled_out(self) -> bool:
        if self.sample_rate >= 1.0:
            return False
        return secrets.randbelow(1_000_000) / 1_000_000 > self.sample_rate

    def _emit(
        self, kind: str, metric: str, value: float | None, tags: dict[str, Any] | None
    ) -> None:
        if not self.enabled or value is None or self._sampled_out():
            return
        name = self.qualify(metric)
        record: dict[str, Any] = {
            "metric": name,
            "type": kind,
            "value": round(float(value), 4),
            "tags": tags or {},
        }
        if self.sample_rate < 1.0:
            record["sample_rate"] = round(self.sample_rate, 4)
        logger.info(f"{self.namespace}.metric", extra={"metrics": record})
        if self._statsd is None:
            return
        bucket = _statsd_bucket(name, tags)
        try:
            if kind == "timing":
                self._statsd.timing(bucket, value, rate=self.sample_rate)
            else:
                self._statsd.incr(bucket, value, rate=self.sample_rate)
        except OSError as exc:
            self._backend_error(bucket, exc)

    def _backend_error(self, metric: str, exc: Exception) -> None:
        logger.warning(
            "metrics.backend_error",
            extra={"metric": metric, "backend": self.backend, "error": type(exc).__name__},
        )


def _statsd_bucket(name: str, tags: dict[str, Any] | None) -> str:
    suffix = [str(tags[key]) for key in STATSD_NAME_TAGS if tags and tags.get(key)]
    return ".".join([name, *suffix]).replace(" ", "_")


metrics = MetricsReporter()
