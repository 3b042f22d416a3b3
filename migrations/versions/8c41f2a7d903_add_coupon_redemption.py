"""Add coupon catalog, coupon usages, and saas_subscriptions.pending_coupon."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "8c41f2a7d903"
down_revision = "5b2e9d41c0a7"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "saas_subscriptions", sa.Column("pending_coupon", sa.String(length=64), nullable=True)
    )

    op.create_table(
        "saas_coupons",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("code", name="uq_saas_coupons_code"),
    )

    op.create_table(
        "saas_coupon_usages",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("coupon_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("payment_id", sa.String(length=255), nullable=True),
        sa.Column("original_amount", sa.Float(), nullable=False),
        sa.Column("discount_amount", sa.Float(), nullable=False),
        sa.Column("final_amount", sa.Float(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("ix_saas_coupon_usages_coupon", "saas_coupon_usages", ["coupon_id"])


def downgrade() -> None:
    op.drop_index("ix_saas_coupon_usages_coupon", table_name="saas_coupon_usages")
    op.drop_table("saas_coupon_usages")
    op.drop_table("saas_coupons")
    with op.batch_alter_table("saas_subscriptions") as batch:
        batch.drop_column("pending_coupon")
