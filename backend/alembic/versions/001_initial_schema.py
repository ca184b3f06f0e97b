"""Initialize schema with users, shops, vendors, products, orders, messages and sync logs

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial tables."""
    # users
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("role", sa.String(20), nullable=False, index=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False, index=True),
        sa.Column("username", sa.String(255)),
        sa.Column("password_hash", sa.String(255)),
        sa.Column("phone", sa.String(30)),
        sa.Column("avatar_url", sa.String(500)),
        sa.Column("shop_domain", sa.String(255), unique=True, nullable=True, index=True),
        sa.Column("notify_mode", sa.String(20), nullable=True),
        sa.Column("notify_value", sa.String(50), nullable=True),
        sa.Column("last_notified_at", sa.DateTime(), nullable=True),
        sa.Column("initial_sync_completed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_active", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.CheckConstraint("role IN ('vendor', 'store_owner')", name="ck_users_role"),
        sa.CheckConstraint(
            "(role = 'store_owner') = (shop_domain IS NOT NULL)",
            name="ck_users_shop_domain_role",
        ),
    )

    # shops
    op.create_table(
        "shops",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("shop_domain", sa.String(255), unique=True, nullable=False, index=True),
        sa.Column("access_token", sa.Text(), nullable=False, server_default=""),
        sa.Column("scope", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        sa.Column("installed_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.Column("uninstalled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()")),
    )

    # vendors
    op.create_table(
        "vendors",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column(
            "shop_domain",
            sa.String(255),
            sa.ForeignKey("users.shop_domain", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("email", sa.String(255), index=True),
        sa.Column("contact_person", sa.String(255)),
        sa.Column("mobile", sa.String(30)),
        sa.Column("upi_id", sa.String(100)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.UniqueConstraint("name", "shop_domain", name="uq_vendors_name_shop"),
    )

    # products
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("shopify_product_id", sa.BigInteger(), unique=True, nullable=False, index=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("image", sa.Text()),
        sa.Column("handle", sa.String(255)),
        sa.Column("product_type", sa.String(255)),
        sa.Column("status", sa.String(50), server_default="active"),
        sa.Column("vendor_name", sa.String(255), index=True),
        sa.Column(
            "vendor_id",
            sa.Integer(),
            sa.ForeignKey("vendors.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        sa.Column("shop_domain", sa.String(255), nullable=False, index=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()")),
    )

    # orders
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("shopify_order_id", sa.BigInteger(), unique=True, nullable=False, index=True),
        sa.Column("name", sa.String(100)),
        sa.Column("total_price", sa.Numeric(12, 2)),
        sa.Column("financial_status", sa.String(50)),
        sa.Column("fulfillment_status", sa.String(50)),
        sa.Column("notification", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("shop_domain", sa.String(255), nullable=False, index=True),
        sa.Column("shopify_created_at", sa.DateTime()),
        sa.Column("shopify_updated_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()")),
    )

    # order_line_items
    op.create_table(
        "order_line_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "product_id",
            sa.Integer(),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("shopify_line_item_id", sa.BigInteger(), nullable=True),
        sa.Column("title", sa.String(500)),
        sa.Column("vendor_name", sa.String(255), index=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("notification", sa.Boolean(), nullable=False, server_default=sa.text("false"), index=True),
        sa.Column("shop_domain", sa.String(255), nullable=False, index=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.UniqueConstraint("order_id", "product_id", name="uq_order_line_items_order_product"),
    )

    # messages
    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "sender_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "receiver_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("message_type", sa.String(30), nullable=False, server_default="text"),
        sa.Column("order_data", postgresql.JSONB(), nullable=True),
        sa.Column("file_url", sa.Text()),
        sa.Column("file_name", sa.String(255)),
        sa.Column(
            "parent_message_id",
            sa.Integer(),
            sa.ForeignKey("messages.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), index=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()")),
    )

    # message_recipients
    op.create_table(
        "message_recipients",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "message_id",
            sa.Integer(),
            sa.ForeignKey("messages.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        sa.Column("is_accept", sa.Boolean(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("delivery_status", sa.String(20), nullable=False, server_default="sent"),
        sa.Column("sent_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("responded_at", sa.DateTime(), nullable=True),
    )

    # sync_logs
    op.create_table(
        "sync_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("shop_domain", sa.String(255), nullable=False, index=True),
        sa.Column("sync_type", sa.String(20), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), server_default="running", index=True),
        sa.Column("records_synced", sa.Integer()),
        sa.Column("error_message", sa.Text()),
        sa.Column("started_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("sync_logs")
    op.drop_table("message_recipients")
    op.drop_table("messages")
    op.drop_table("order_line_items")
    op.drop_table("orders")
    op.drop_table("products")
    op.drop_table("vendors")
    op.drop_table("shops")
    op.drop_table("users")
