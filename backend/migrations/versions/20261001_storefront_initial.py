"""Storefront order intake schema

Revision ID: 20261001_storefront_initial
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261001_storefront_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "product_inventory",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.String(128), nullable=False),
        sa.Column("variant_label", sa.String(128), nullable=False),
        sa.Column("stock_units", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("product_id", "variant_label", name="uq_product_inventory_product_variant"),
        sa.CheckConstraint("stock_units >= 0", name="ck_product_inventory_stock_non_negative"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("product_inventory", schema=None) as batch_op:
        batch_op.create_index("ix_product_inventory_product_id", ["product_id"], unique=False)

    op.create_table(
        "referral_partners",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("contact_name", sa.String(255), nullable=True),
        sa.Column("contact_email", sa.String(255), nullable=True),
        sa.Column("contact_phone", sa.String(32), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("commission_bps", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("default_discount_type", sa.String(10), nullable=False, server_default="percent"),
        sa.Column("default_discount_value", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("contact_email"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("referral_partners", schema=None) as batch_op:
        batch_op.create_index("ix_referral_partners_active", ["active"], unique=False)

    op.create_table(
        "referral_codes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("partner_id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("discount_type", sa.String(10), nullable=False, server_default="percent"),
        sa.Column("discount_value", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("min_order_subtotal_cents", sa.Integer(), nullable=True),
        sa.Column("max_total_redemptions", sa.Integer(), nullable=True),
        sa.Column("current_redemptions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["partner_id"], ["referral_partners.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("referral_codes", schema=None) as batch_op:
        batch_op.create_index("ix_referral_codes_partner", ["partner_id"], unique=False)
        batch_op.create_index("ix_referral_codes_active", ["active"], unique=False)

    op.create_table(
        "referral_attributions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("partner_id", sa.Integer(), nullable=False),
        sa.Column("code_id", sa.Integer(), nullable=True),
        sa.Column("customer_email", sa.String(255), nullable=False),
        sa.Column("customer_user_id", sa.String(64), nullable=True),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("first_order_id", sa.Integer(), nullable=True),
        sa.Column("first_order_number", sa.String(16), nullable=True),
        sa.Column("first_order_discount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("lifetime_revenue_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("lifetime_commission_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_orders", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_order_id", sa.Integer(), nullable=True),
        sa.Column("last_order_number", sa.String(16), nullable=True),
        sa.Column("last_order_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["partner_id"], ["referral_partners.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["code_id"], ["referral_codes.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("customer_email", name="uq_referral_attributions_customer_email"),
        sa.UniqueConstraint("customer_user_id", name="uq_referral_attributions_customer_user"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("referral_attributions", schema=None) as batch_op:
        batch_op.create_index("ix_referral_attributions_partner", ["partner_id"], unique=False)

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_number", sa.String(16), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING_PAYMENT"),
        sa.Column("customer_name", sa.String(255), nullable=False),
        sa.Column("customer_email", sa.String(255), nullable=False),
        sa.Column("customer_phone", sa.String(32), nullable=False),
        sa.Column("customer_user_id", sa.String(64), nullable=True),
        sa.Column("shipping_street", sa.String(255), nullable=False),
        sa.Column("shipping_city", sa.String(128), nullable=False),
        sa.Column("shipping_state", sa.String(64), nullable=False),
        sa.Column("shipping_zip_code", sa.String(16), nullable=False),
        sa.Column("shipping_country", sa.String(64), nullable=False),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("gross_subtotal_cents", sa.Integer(), nullable=False),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False),
        sa.Column("shipping_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("total_units", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("tracking_number", sa.String(64), nullable=True),
        sa.Column("tracking_carrier", sa.String(10), nullable=True),
        sa.Column("referral_partner_id", sa.Integer(), nullable=True),
        sa.Column("referral_partner_name", sa.String(255), nullable=True),
        sa.Column("referral_code_id", sa.Integer(), nullable=True),
        sa.Column("referral_code_value", sa.String(64), nullable=True),
        sa.Column("referral_attribution_id", sa.Integer(), nullable=True),
        sa.Column("referral_discount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("referral_commission_bps", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("referral_commission_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["referral_partner_id"], ["referral_partners.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["referral_code_id"], ["referral_codes.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_order_number", ["order_number"], unique=True)
        batch_op.create_index("ix_orders_status", ["status"], unique=False)
        batch_op.create_index("ix_orders_customer_email", ["customer_email"], unique=False)
        batch_op.create_index("ix_orders_customer_user_id", ["customer_user_id"], unique=False)
        batch_op.create_index("ix_orders_referral_attribution_id", ["referral_attribution_id"], unique=False)
        batch_op.create_index("ix_orders_status_created", ["status", "created_at"], unique=False)
        batch_op.create_index("ix_orders_referral_partner_status", ["referral_partner_id", "status"], unique=False)

    op.create_table(
        "rate_limit_buckets",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("window_reset_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("rate_limit_buckets", schema=None) as batch_op:
        batch_op.create_index("ix_rate_limit_buckets_window_reset_at", ["window_reset_at"], unique=False)


def downgrade():
    op.drop_table("rate_limit_buckets")
    op.drop_table("orders")
    op.drop_table("referral_attributions")
    op.drop_table("referral_codes")
    op.drop_table("referral_partners")
    op.drop_table("product_inventory")
