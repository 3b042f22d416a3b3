"""Alembic environment for the billing schema.

Postgres targets (Supabase included) run through asyncpg. SQLite targets, used
for local development, run on a plain synchronous engine.
"""

from __future__ import annotations

import asyncio
import logging
import os
import ssl
from logging.config import fileConfig
from typing import Any

try:
    import certifi
except ImportError:  # pragma: no cover
    certifi = None

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import Connection
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

from app.config import settings
from app.models import subscription  # noqa: F401 - registers the billing tables

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("billing.alembic")
logger.setLevel(logging.INFO)
target_metadata = SQLModel.metadata

BILLING_TABLES = frozenset(
    {"profiles", "saas_subscriptions", "subscription_events", "saas_coupons", "saas_coupon_usages"}
)
SUPABASE_POOLER_PORT = 6543
_LIBPQ_SSL_KEYS = ("ssl", "sslmode", "sslrootcert")


def _include_object(
    obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any
) -> bool:
    """Keep autogenerate away from tables other services own in the same database."""
    if type_ == "table":
        return name in BILLING_TABLES
    return True


def _database_url() -> tuple[str, str]:
    candidates = (
        ("environment variable", os.environ.get("DATABASE_URL")),
        ("alembic.ini", config.get_main_option("sqlalchemy.url")),
        ("app settings", settings.database_url),
    )
    for source, value in candidates:
        if value:
            return value, source
    raise RuntimeError("DATABASE_URL must be set to run migrations.")


def _tls_context() -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    ca_file = os.environ.get("ALEMBIC_SUPABASE_CA_FILE")
    if ca_file:
        ctx.load_verify_locations(cafile=ca_file)
    elif certifi is not None:
        ctx.load_verify_locations(certifi.where())
    return ctx


def _asyncpg_target(url: URL) -> tuple[URL, dict[str, Any]]:
    """Point a Postgres URL at asyncpg and move libpq TLS flags into connect args."""
    query = {key: value for key, value in url.query.items() if key not in _LIBPQ_SSL_KEYS}
    wants_tls = url.query.get("sslmode") in {"require", "verify-ca", "verify-full"}
    target = url.set(drivername="postgresql+asyncpg", query=query)
    host = (url.host or "").lower()
    if "supabase.co" in host:
        wants_tls = True
        if url.port != SUPABASE_POOLER_PORT:
            target = target.set(port=SUPABASE_POOLER_PORT)
            logger.info("Using the Supabase pooler port for migrations.")
    if os.environ.get("PGSSLMODE", "").lower() == "require":
        wants_tls = True
    return target, ({"ssl": _tls_context()} if wants_tls else {})


def _resolve_target() -> tuple[URL, dict[str, Any]]:
    raw, source = _database_url()
    try:
        url = make_url(raw)
    except ArgumentError as exc:
        raise RuntimeError(f"DATABASE_URL from {source} is not a valid SQLAlchemy URL") from exc
    if url.get_backend_name() == "postgresql":
        url, connect_args = _asyncpg_target(url)
    else:
        connect_args = {}
    rendered = url.render_as_string(hide_password=True)
    logger.info("Alembic resolved DATABASE_URL from %s: %s", source, rendered)
    config.print_stdout(f"[Alembic] target={rendered} source={source}")
    return url, connect_args


def _configure(**kwargs: Any) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_object=_include_object,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL for the billing schema without a live connection."""
    url, _ = _resolve_target()
    _configure(
        url=url.render_as_string(hide_password=False),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_with_connection(connection: Connection) -> None:
    _configure(connection=connection, render_as_batch=connection.dialect.name == "sqlite")
    with context.begin_transaction():
        context.run_migrations()


async def _run_async(url: URL, connect_args: dict[str, Any]) -> None:
    engine = create_async_engine(url, poolclass=pool.NullPool, connect_args=connect_args)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_with_connection)
    finally:
        await engine.dispose()


def run_migrations_online() -> None:
    url, connect_args = _resolve_target()
    if url.get_backend_name() == "postgresql":
        asyncio.run(_run_async(url, connect_args))
        return
    engine = create_engine(url, poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            _run_with_connection(connection)
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
