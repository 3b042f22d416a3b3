"""Commercial plan catalog keyed by Stripe price id.

ASAAS has no price objects, so its adapter translates the same ids into a
flat value + cycle through this table. Keep it in sync with the Stripe
dashboard.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final


@dataclass(frozen=True)
class Plan:
    price_id: str
    name: str
    value: float
    cycle: str
    billing_cycle: str
    amount_cents: int


PLAN_CATALOG: Final[dict[str, Plan]] = {
    plan.price_id: plan
    for plan in (
        Plan("price_1SqHrZJrvxBiHEjISBIjF1Xg", "Risu Mensal", 99.90, "MONTHLY", "monthly", 9990),
        Plan(
            "price_1SqHtTJrvxBiHEIgyTx6ECr", "Risu Trimestral", 269.70, "QUARTERLY", "quarterly", 26970
        ),
        Plan(
            "price_1SqHu6JrvxBiHEjIcFJOrE7Y",
            "Risu Semestral",
            479.40,
            "SEMIANNUALLY",
            "semiannual",
            47940,
        ),
        Plan("price_1SqHuVJrvxBiHEjIUNJCWLFm", "Risu Anual", 838.80, "YEARLY", "annual", 83880),
    )
}

DEFAULT_PRICE_ID: Final[str] = "price_1SqHrZJrvxBiHEjISBIjF1Xg"
DEFAULT_PLAN: Final[Plan] = PLAN_CATALOG[DEFAULT_PRICE_ID]
NO_PLAN_LABEL: Final[str] = "Sem Assinatura"


def resolve_plan(price_id: str | None) -> Plan | None:
    if not price_id:
        return None
    return PLAN_CATALOG.get(price_id)


def resolve_plan_or_default(price_id: str | None) -> Plan:
    """Return the catalog entry for ``price_id`` or the monthly plan."""
    return resolve_plan(price_id) or DEFAULT_PLAN


def find_plan_by_terms(value: float | None, cycle: str | None) -> Plan | None:
    """Match an ASAAS subscription (flat value + cycle) back to a catalog entry."""
    if value is None or not cycle:
        return None
    for plan in PLAN_CATALOG.values():
        if plan.cycle == cycle.upper() and abs(plan.value - float(value)) < 0.005:
            return plan
    return None
