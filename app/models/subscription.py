"""SQLModel mapping for tenant subscriptions and their billing timeline."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql import expression
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")


class UtcNow(expression.FunctionElement):
    """Dialect-aware server default that pins timestamps to UTC."""

    type = DateTime(timezone=True)
    inherit_cache = True


@compiles(UtcNow)
def _utc_now_default(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "CURRENT_TIMESTAMP"


@compiles(UtcNow, "postgresql")
def _utc_now_default_postgres(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "timezone('utc', now())"


class GatewayName(str, Enum):
    STRIPE = "stripe"
    ASAAS = "asaas"


class SubscriptionStatus(str, Enum):
    NONE = "none"
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class CouponType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class PaymentStatus(str, Enum):
    PAID = "paid"
    FAILED = "failed"


class SubscriptionEventType(str, Enum):
    SUBSCRIBED = "subscribed"
    REACTIVATED = "reactivated"
    CANCELED = "canceled"
    CANCELLATION_SCHEDULED = "cancellation_scheduled"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"


class Profile(SQLModel, table=True):
    """Tenant profile; read here for email fallback and customer prefill."""

    __tablename__ = "profiles"
    __table_args__ = (sa.Index("ix_profiles_email", "email"),)

    id: str = Field(sa_column=Column(String(length=255), primary_key=True, nullable=False))
    email: str = Field(sa_column=Column(String(length=255), nullable=False))
    full_name: str | None = Field(default=None, sa_column=Column(String(length=255)))
    tax_id: str | None = Field(default=None, sa_column=Column(String(length=32)))


class Subscription(SQLModel, table=True):
    """Local snapshot of a tenant's subscription under one gateway."""

    __tablename__ = "saas_subscriptions"
    __table_args__ = (
        sa.UniqueConstraint("user_id", "gateway_name", name="uq_saas_subscriptions_user_gateway"),
        sa.Index("ix_saas_subscriptions_user_id", "user_id"),
        sa.Index("ix_saas_subscriptions_gateway_subscription", "gateway_subscription_id"),
        sa.Index("ix_saas_subscriptions_gateway_customer", "gateway_customer_id"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    user_id: str = Field(sa_column=Column(String(length=255), nullable=False))
    gateway_name: str = Field(
        default=GatewayName.STRIPE.value,
        sa_column=Column(String(length=32), nullable=False),
    )
    gateway_customer_id: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    gateway_subscription_id: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    status: str = Field(
        default=SubscriptionStatus.INCOMPLETE.value,
        sa_column=Column(String(length=32), nullable=False),
    )
    plan_name: str | None = Field(default=None, sa_column=Column(String(length=255)))
    billing_cycle: str | None = Field(default=None, sa_column=Column(String(length=32)))
    amount_cents: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    current_period_end: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    cancel_at_period_end: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
    last_payment_status: str | None = Field(default=None, sa_column=Column(String(length=16)))
    pending_coupon: str | None = Field(default=None, sa_column=Column(String(length=64)))
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=UtcNow(),
            onupdate=UtcNow(),
        ),
    )


class SubscriptionEvent(SQLModel, table=True):
    """Append-only billing timeline entry written on lifecycle transitions."""

    __tablename__ = "subscription_events"
    __table_args__ = (sa.Index("ix_subscription_events_user_created", "user_id", "created_at"),)

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    user_id: str = Field(sa_column=Column(String(length=255), nullable=False))
    event_type: str = Field(sa_column=Column(String(length=64), nullable=False))
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    plan_name: str | None = Field(default=None, sa_column=Column(String(length=255)))
    amount_cents: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    event_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON_BACKING_TYPE, nullable=False),
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )


class Coupon(SQLModel, table=True):
    """Discount code a tenant can attach to an ASAAS checkout."""

    __tablename__ = "saas_coupons"
    __table_args__ = (sa.UniqueConstraint("code", name="uq_saas_coupons_code"),)

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    code: str = Field(sa_column=Column(String(length=64), nullable=False))
    type: str = Field(
        default=CouponType.PERCENTAGE.value, sa_column=Column(String(length=16), nullable=False)
    )
    value: float = Field(sa_column=Column(Float, nullable=False))
    max_uses: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    current_uses: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, server_default="0")
    )
    valid_until: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    is_active: bool = Field(
        default=True, sa_column=Column(Boolean, nullable=False, server_default=sa.true())
    )

    def discount_for(self, amount: float) -> float:
        if self.type == CouponType.PERCENTAGE.value:
            return round(amount * self.value / 100, 2)
        return round(min(self.value, amount), 2)

    def rejection_reason(self, now: datetime | None = None) -> str | None:
        """Return why this coupon cannot be redeemed, or None when it can."""
        if not self.is_active:
            return "Cupom não encontrado ou inativo."
        if self.valid_until is not None:
            valid_until = self.valid_until
            if valid_until.tzinfo is None:
                valid_until = valid_until.replace(tzinfo=timezone.utc)
            if valid_until < (now or _utcnow()):
                return "Cupom expirado."
        if self.max_uses is not None and self.current_uses >= self.max_uses:
            return "Cupom esgotado."
        return None


class CouponUsage(SQLModel, table=True):
    """One redemption of a coupon against a confirmed payment."""

    __tablename__ = "saas_coupon_usages"
    __table_args__ = (sa.Index("ix_saas_coupon_usages_coupon", "coupon_id"),)

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    coupon_id: UUID = Field(sa_column=Column(Uuid(as_uuid=True), nullable=False))
    user_id: str = Field(sa_column=Column(String(length=255), nullable=False))
    payment_id: str | None = Field(default=None, sa_column=Column(String(length=255)))
    original_amount: float = Field(sa_column=Column(Float, nullable=False))
    discount_amount: float = Field(sa_column=Column(Float, nullable=False))
    final_amount: float = Field(sa_column=Column(Float, nullable=False))
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )
