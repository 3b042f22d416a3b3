"""Persistence backends for subscriptions and the subscription event ledger."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import func, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from app.config import settings
from app.models.subscription import (
    Coupon,
    CouponUsage,
    Profile,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
)
from app.observability.metrics import metrics
from app.services.billing.errors import BillingError

logger = logging.getLogger(__name__)

EVENT_PAGE_SIZE = 10

_MUTABLE_FIELDS = (
    "gateway_customer_id",
    "gateway_subscription_id",
    "status",
    "plan_name",
    "billing_cycle",
    "amount_cents",
    "current_period_end",
    "cancel_at_period_end",
    "last_payment_status",
    "pending_coupon",
)


class SubscriptionPersistenceError(BillingError):
    """Raised when the subscription store cannot be read or written."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="PERSISTENCE_ERROR")


class SubscriptionRepository(Protocol):
    """Persistence contract for subscriptions, profiles, and events."""

    def list_for_user(self, user_id: str) -> list[Subscription]:
        ...

    def get_for_user(self, user_id: str, gateway_name: str) -> Subscription | None:
        ...

    def get_by_gateway_subscription_id(
        self, gateway_name: str, subscription_id: str
    ) -> Subscription | None:
        ...

    def get_by_gateway_customer_id(self, gateway_name: str, customer_id: str) -> Subscription | None:
        ...

    def find_profile_by_email(self, email: str) -> Profile | None:
        ...

    def save(self, subscription: Subscription) -> Subscription:
        ...

    def append_event(self, event: SubscriptionEvent) -> SubscriptionEvent:
        ...

    def latest_event(self, user_id: str) -> SubscriptionEvent | None:
        ...

    def list_events(self, user_id: str, *, limit: int = EVENT_PAGE_SIZE) -> list[SubscriptionEvent]:
        ...

    def find_coupon(self, code: str) -> Coupon | None:
        ...

    def record_coupon_usage(self, usage: CouponUsage) -> CouponUsage:
        ...

    def ping(self) -> bool:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime:
    if value is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def select_active_subscription(
    rows: Sequence[Subscription], active_gateway: str | None = None
) -> Subscription | None:
    """Pick the row that represents the tenant's current entitlement.

    Priority: active on the configured gateway, any active, trialing, then the
    most recently updated row.
    """
    if not rows:
        return None
    gateway = (active_gateway or "").lower()
    newest_first = sorted(rows, key=lambda row: _aware(row.updated_at), reverse=True)
    for row in newest_first:
        if row.status == SubscriptionStatus.ACTIVE.value and row.gateway_name == gateway:
            return row
    for wanted in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value):
        for row in newest_first:
            if row.status == wanted:
                return row
    return newest_first[0]


def _copy_fields(target: Subscription, source: Subscription) -> None:
    for name in _MUTABLE_FIELDS:
        setattr(target, name, getattr(source, name))


class InMemorySubscriptionRepository(SubscriptionRepository):
    """Thread-safe repository used for local development and tests."""

    def __init__(
        self,
        *,
        profiles: Sequence[Profile] | None = None,
        subscriptions: Sequence[Subscription] | None = None,
        events: Sequence[SubscriptionEvent] | None = None,
        coupons: Sequence[Coupon] | None = None,
    ) -> None:
        self._lock = Lock()
        self._profiles: dict[str, Profile] = {profile.id: profile for profile in profiles or []}
        self._subscriptions: dict[tuple[str, str], Subscription] = {
            (row.user_id, row.gateway_name): row for row in subscriptions or []
        }
        self._events: list[SubscriptionEvent] = list(events or [])
        self._coupons: dict[str, Coupon] = {coupon.code.upper(): coupon for coupon in coupons or []}
        self._coupon_usages: list[CouponUsage] = []

    def add_profile(self, profile: Profile) -> None:
        with self._lock:
            self._profiles[profile.id] = profile

    def add_coupon(self, coupon: Coupon) -> None:
        with self._lock:
            self._coupons[coupon.code.upper()] = coupon

    def find_coupon(self, code: str) -> Coupon | None:
        with self._lock:
            return self._coupons.get(code.strip().upper())

    def record_coupon_usage(self, usage: CouponUsage) -> CouponUsage:
        with self._lock:
            for coupon in self._coupons.values():
                if coupon.id == usage.coupon_id:
                    coupon.current_uses += 1
                    break
            self._coupon_usages.append(usage)
        metrics.increment("billing.coupon.redeemed", tags={"repository": "memory"})
        return usage

    def list_coupon_usages(self) -> list[CouponUsage]:
        with self._lock:
            return list(self._coupon_usages)

    def list_for_user(self, user_id: str) -> list[Subscription]:
        with self._lock:
            return [row for (owner, _), row in self._subscriptions.items() if owner == user_id]

    def get_for_user(self, user_id: str, gateway_name: str) -> Subscription | None:
        with self._lock:
            return self._subscriptions.get((user_id, gateway_name))

    def get_by_gateway_subscription_id(
        self, gateway_name: str, subscription_id: str
    ) -> Subscription | None:
        with self._lock:
            for row in self._subscriptions.values():
                if (
                    row.gateway_name == gateway_name
                    and row.gateway_subscription_id == subscription_id
                ):
                    return row
        return None

    def get_by_gateway_customer_id(self, gateway_name: str, customer_id: str) -> Subscription | None:
        with self._lock:
            for row in self._subscriptions.values():
                if row.gateway_name == gateway_name and row.gateway_customer_id == customer_id:
                    return row
        return None

    def find_profile_by_email(self, email: str) -> Profile | None:
        wanted = email.strip().lower()
        with self._lock:
            for profile in self._profiles.values():
                if profile.email.lower() == wanted:
                    return profile
        return None

    def save(self, subscription: Subscription) -> Subscription:
        key = (subscription.user_id, subscription.gateway_name)
        with self._lock:
            existing = self._subscriptions.get(key)
            if existing is not None and existing is not subscription:
                _copy_fields(existing, subscription)
                subscription = existing
            subscription.updated_at = _now()
            self._subscriptions[key] = subscription
        metrics.increment("billing.persistence.saved", tags={"repository": "memory"})
        return subscription

    def append_event(self, event: SubscriptionEvent) -> SubscriptionEvent:
        with self._lock:
            self._events.append(event)
        metrics.increment(
            "billing.ledger.appended", tags={"repository": "memory", "type": event.event_type}
        )
        return event

    def latest_event(self, user_id: str) -> SubscriptionEvent | None:
        events = self.list_events(user_id, limit=1)
        return events[0] if events else None

    def list_events(self, user_id: str, *, limit: int = EVENT_PAGE_SIZE) -> list[SubscriptionEvent]:
        with self._lock:
            indexed = [
                (index, event) for index, event in enumerate(self._events) if event.user_id == user_id
            ]
        ordered = sorted(
            indexed, key=lambda pair: (_aware(pair[1].created_at), pair[0]), reverse=True
        )
        return [event for _, event in ordered[: max(0, limit)]]

    def ping(self) -> bool:
        return True


class SqlSubscriptionRepository(SubscriptionRepository):
    """SQLModel-backed repository for Postgres/Supabase (or SQLite in tests)."""

    def __init__(
        self,
        database_url: str,
        *,
        pool_min_size: int | None = None,
        pool_max_size: int | None = None,
        auto_create_schema: bool = False,
    ) -> None:
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlSubscriptionRepository.")
        parsed_url = make_url(database_url)
        sync_url, connect_args, drivername = _coerce_sync_database_url(parsed_url)
        pool_min = max(pool_min_size or settings.db_pool_min_size, 1)
        pool_max = max(pool_max_size or settings.db_pool_max_size, pool_min)
        is_sqlite = drivername.startswith("sqlite")
        engine_kwargs: dict[str, Any] = {
            "echo": settings.debug,
            "connect_args": connect_args,
            "pool_pre_ping": not is_sqlite,
        }
        if not is_sqlite:
            engine_kwargs["pool_size"] = pool_min
            engine_kwargs["max_overflow"] = max(pool_max - pool_min, 0)
        self._engine: Engine = create_engine(sync_url, **engine_kwargs)
        if auto_create_schema:
            SQLModel.metadata.create_all(self._engine)
        self._metrics_tags = {"repository": "sqlite" if is_sqlite else "postgres"}

    def dispose(self) -> None:
        """Close the underlying SQLAlchemy engine."""
        self._engine.dispose()

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        try:
            with Session(self._engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception(
                "billing.persistence.error",
                extra={"operation": operation, "backend": self._metrics_tags["repository"]},
            )
            raise SubscriptionPersistenceError(f"Failed to {operation}.") from exc

    def add_profile(self, profile: Profile) -> None:
        with self._session("persist profile") as session:
            session.merge(profile)
            session.commit()

    def list_for_user(self, user_id: str) -> list[Subscription]:
        with self._session("list subscriptions") as session:
            statement = select(Subscription).where(Subscription.user_id == user_id)
            return list(session.exec(statement).all())

    def get_for_user(self, user_id: str, gateway_name: str) -> Subscription | None:
        with self._session("load subscription") as session:
            statement = select(Subscription).where(
                Subscription.user_id == user_id, Subscription.gateway_name == gateway_name
            )
            return session.exec(statement).first()

    def get_by_gateway_subscription_id(
        self, gateway_name: str, subscription_id: str
    ) -> Subscription | None:
        with self._session("load subscription") as session:
            statement = select(Subscription).where(
                Subscription.gateway_name == gateway_name,
                Subscription.gateway_subscription_id == subscription_id,
            )
            return session.exec(statement).first()

    def get_by_gateway_customer_id(self, gateway_name: str, customer_id: str) -> Subscription | None:
        with self._session("load subscription") as session:
            statement = select(Subscription).where(
                Subscription.gateway_name == gateway_name,
                Subscription.gateway_customer_id == customer_id,
            )
            return session.exec(statement).first()

    def find_profile_by_email(self, email: str) -> Profile | None:
        with self._session("load profile") as session:
            statement = select(Profile).where(func.lower(Profile.email) == email.strip().lower())
            return session.exec(statement).first()

    def save(self, subscription: Subscription) -> Subscription:
        with self._session("persist subscription") as session:
            statement = select(Subscription).where(
                Subscription.user_id == subscription.user_id,
                Subscription.gateway_name == subscription.gateway_name,
            )
            existing = session.exec(statement).first()
            if existing is not None:
                _copy_fields(existing, subscription)
                persisted = existing
            else:
                persisted = subscription
            persisted.updated_at = _now()
            session.add(persisted)
            session.commit()
            session.refresh(persisted)
        metrics.increment("billing.persistence.saved", tags=self._metrics_tags)
        return persisted

    def append_event(self, event: SubscriptionEvent) -> SubscriptionEvent:
        with self._session("append subscription event") as session:
            session.add(event)
            session.commit()
            session.refresh(event)
        metrics.increment(
            "billing.ledger.appended", tags={**self._metrics_tags, "type": event.event_type}
        )
        return event

    def latest_event(self, user_id: str) -> SubscriptionEvent | None:
        events = self.list_events(user_id, limit=1)
        return events[0] if events else None

    def list_events(self, user_id: str, *, limit: int = EVENT_PAGE_SIZE) -> list[SubscriptionEvent]:
        with self._session("list subscription events") as session:
            statement = (
                select(SubscriptionEvent)
                .where(SubscriptionEvent.user_id == user_id)
                .order_by(SubscriptionEvent.created_at.desc())
                .limit(max(0, limit))
            )
            return list(session.exec(statement).all())

    def add_coupon(self, coupon: Coupon) -> None:
        with self._session("persist coupon") as session:
            session.merge(coupon)
            session.commit()

    def find_coupon(self, code: str) -> Coupon | None:
        with self._session("load coupon") as session:
            statement = select(Coupon).where(func.upper(Coupon.code) == code.strip().upper())
            return session.exec(statement).first()

    def record_coupon_usage(self, usage: CouponUsage) -> CouponUsage:
        with self._session("record coupon usage") as session:
            session.add(usage)
            session.execute(
                update(Coupon)
                .where(Coupon.id == usage.coupon_id)
                .values(current_uses=Coupon.current_uses + 1)
            )
            session.commit()
            session.refresh(usage)
        metrics.increment("billing.coupon.redeemed", tags=self._metrics_tags)
        return usage

    def list_coupon_usages(self) -> list[CouponUsage]:
        with self._session("list coupon usages") as session:
            statement = select(CouponUsage).order_by(CouponUsage.created_at)
            return list(session.exec(statement).all())

    def ping(self) -> bool:
        try:
            with self._engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.error("billing.persistence.unreachable", exc_info=True)
            return False


def _coerce_sync_database_url(url: URL) -> tuple[str, dict[str, Any], str]:
    """Convert async connection strings into sync SQLAlchemy URLs."""
    drivername = url.drivername
    connect_args: dict[str, Any] = {}
    if drivername.endswith("+asyncpg"):
        drivername = drivername.replace("+asyncpg", "+psycopg2")
    sync_url = url.set(drivername=drivername)
    query = dict(sync_url.query) if sync_url.query else {}
    removed_ssl = query.pop("ssl", None) is not None
    sync_url = sync_url.set(query=query)
    host = (url.host or "").lower()
    if drivername.startswith("postgresql") and "sslmode" not in query:
        if removed_ssl or "supabase.co" in host:
            connect_args["sslmode"] = "require"
    if drivername.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return sync_url.render_as_string(hide_password=False), connect_args, drivername


def build_subscription_repository(database_url: str | None = None) -> SubscriptionRepository:
    """Instantiate a repository using DATABASE_URL when available."""
    resolved_url = database_url or settings.database_url
    if not resolved_url:
        logger.info("billing.repository.initialized", extra={"backend": "memory"})
        return InMemorySubscriptionRepository()
    repository = SqlSubscriptionRepository(
        resolved_url,
        pool_min_size=settings.db_pool_min_size,
        pool_max_size=settings.db_pool_max_size,
    )
    logger.info("billing.repository.initialized", extra={"backend": "database"})
    return repository


_REPOSITORY: SubscriptionRepository | None = None


def get_subscription_repository() -> SubscriptionRepository:
    """Singleton accessor used by API routes."""
    global _REPOSITORY  # noqa: PLW0603
    if _REPOSITORY is None:
        _REPOSITORY = build_subscription_repository()
    return _REPOSITORY
