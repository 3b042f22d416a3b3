from __future__ import annotations

from typing import Any


class StubMetrics:
    """Records billing metrics in place of ``app.observability.metrics.metrics``."""

    def __init__(self) -> None:
        self.timing_calls: list[dict[str, Any]] = []
        self.increment_calls: list[dict[str, Any]] = []
        self.alert_calls: list[dict[str, Any]] = []

    def timing(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self.timing_calls.append({"metric": metric, "value": value, "tags": tags or {}})

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self.increment_calls.append({"metric": metric, "value": value, "tags": tags or {}})

    def alert(
        self,
        metric: str,
        *,
        value: float,
        threshold: float,
        severity: str,
        tags: dict[str, Any] | None = None,
    ) -> None:
        self.alert_calls.append(
            {"metric": metric, "value": value, "severity": severity, "tags": tags or {}}
        )

    def counted(self, metric: str) -> int:
        """Number of increments recorded for ``metric``."""
        return sum(1 for call in self.increment_calls if call["metric"] == metric)
