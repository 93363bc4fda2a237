"""Stores, products, aliases, inventory cycle tables and ingests.

Revision ID: 3b7e21c9d4a0
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "3b7e21c9d4a0"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    qty = sa.Numeric(12, 3)

    op.create_table(
        "stores",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=128), nullable=False, unique=True),
        *_timestamps(),
    )
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False, unique=True),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id", ondelete="SET NULL"), nullable=True),
        sa.Column("base_qty", qty, nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_products_lower_name", "products", [sa.text("lower(name)")])

    op.create_table(
        "product_aliases",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
        sa.Column("alias", sa.String(length=255), nullable=False),
        sa.UniqueConstraint("product_id", "alias", name="uq_product_aliases_product_alias"),
    )
    op.create_index("ix_product_aliases_product_id", "product_aliases", ["product_id"])
    op.create_index("ix_product_aliases_lower_alias", "product_aliases", [sa.text("lower(alias)")])

    op.create_table(
        "inventory_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_timestamps(),
    )
    op.create_table(
        "inventory_lines",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "snapshot_id",
            sa.Integer(),
            sa.ForeignKey("inventory_snapshots.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
        sa.Column("qty", qty, nullable=False),
        sa.UniqueConstraint("snapshot_id", "product_id", name="uq_inventory_lines_snapshot_product"),
    )
    op.create_index("ix_inventory_lines_product_id", "inventory_lines", ["product_id"])

    op.create_table(
        "purchases",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_timestamps(),
    )
    op.create_table(
        "purchase_lines",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("purchase_id", sa.Integer(), sa.ForeignKey("purchases.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
        sa.Column("qty", qty, nullable=False),
        sa.UniqueConstraint("purchase_id", "product_id", name="uq_purchase_lines_purchase_product"),
    )
    op.create_index("ix_purchase_lines_product_id", "purchase_lines", ["product_id"])

    op.create_table(
        "ingests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("chat_id", sa.BigInteger(), nullable=False),
        sa.Column("mode", sa.String(length=32), nullable=False),
        sa.Column("source_file_ref", sa.String(length=255), nullable=False),
        sa.Column("source_file_unique_id", sa.String(length=128), nullable=True),
        sa.Column("mime_type", sa.String(length=128), nullable=True),
        sa.Column("file_name", sa.String(length=255), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("error", sa.String(length=1024), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_ingests_chat_id", "ingests", ["chat_id"])


def downgrade() -> None:
    op.drop_index("ix_ingests_chat_id", table_name="ingests")
    op.drop_table("ingests")
    op.drop_index("ix_purchase_lines_product_id", table_name="purchase_lines")
    op.drop_table("purchase_lines")
    op.drop_table("purchases")
    op.drop_index("ix_inventory_lines_product_id", table_name="inventory_lines")
    op.drop_table("inventory_lines")
    op.drop_table("inventory_snapshots")
    op.drop_index("ix_product_aliases_lower_alias", table_name="product_aliases")
    op.drop_index("ix_product_aliases_product_id", table_name="product_aliases")
    op.drop_table("product_aliases")
    op.drop_index("ix_products_lower_name", table_name="products")
    op.drop_table("products")
    op.drop_table("stores")
