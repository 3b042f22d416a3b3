"""Create profiles, saas_subscriptions, and subscription_events tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "5b2e9d41c0a7"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=255), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("tax_id", sa.String(length=32), nullable=True),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"])

    op.create_table(
        "saas_subscriptions",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("gateway_name", sa.String(length=32), nullable=False),
        sa.Column("gateway_customer_id", sa.String(length=255), nullable=True),
        sa.Column("gateway_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("plan_name", sa.String(length=255), nullable=True),
        sa.Column("billing_cycle", sa.String(length=32), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_payment_status", sa.String(length=16), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint("user_id", "gateway_name", name="uq_saas_subscriptions_user_gateway"),
    )
    op.create_index("ix_saas_subscriptions_user_id", "saas_subscriptions", ["user_id"])
    op.create_index(
        "ix_saas_subscriptions_gateway_subscription",
        "saas_subscriptions",
        ["gateway_subscription_id"],
    )
    op.create_index(
        "ix_saas_subscriptions_gateway_customer", "saas_subscriptions", ["gateway_customer_id"]
    )

    op.create_table(
        "subscription_events",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("plan_name", sa.String(length=255), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("metadata", JSON_TYPE, nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index(
        "ix_subscription_events_user_created", "subscription_events", ["user_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_subscription_events_user_created", table_name="subscription_events")
    op.drop_table("subscription_events")
    op.drop_index("ix_saas_subscriptions_gateway_customer", table_name="saas_subscriptions")
    op.drop_index("ix_saas_subscriptions_gateway_subscription", table_name="saas_subscriptions")
    op.drop_index("ix_saas_subscriptions_user_id", table_name="saas_subscriptions")
    op.drop_table("saas_subscriptions")
    op.drop_index("ix_profiles_email", table_name="profiles")
    op.drop_table("profiles")
