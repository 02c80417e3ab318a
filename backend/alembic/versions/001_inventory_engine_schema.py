"""Inventory engine schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Ingredients (the stock ledger)
    op.create_table(
        "ingredients",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("actual_unit", sa.String(20), nullable=False),
        sa.Column("display_unit", sa.String(20), nullable=True),
        sa.Column("conversion_rate", sa.Numeric(14, 6), nullable=True),
        sa.Column("initial_quantity", sa.Numeric(14, 3), nullable=False, server_default="0"),
        sa.Column("actual_quantity", sa.Numeric(14, 3), nullable=False, server_default="0"),
        sa.Column("reorder_level", sa.Numeric(14, 3), nullable=False, server_default="0"),
        sa.Column("cost_per_actual_unit", sa.Numeric(12, 4), nullable=False, server_default="0"),
        sa.Column("category", sa.String(50), nullable=True),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("visible_in_customization", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_ingredients_sku", "ingredients", ["sku"], unique=True)

    # Recipe graph
    op.create_table(
        "menu_item_ingredients",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("menu_item_id", sa.Integer(), nullable=False),
        sa.Column("ingredient_id", sa.Integer(), sa.ForeignKey("ingredients.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("required_actual_amount", sa.Numeric(14, 3), nullable=True),
        sa.Column("required_display_amount", sa.Numeric(14, 3), nullable=True),
        sa.Column("recipe_unit", sa.String(20), nullable=True),
        sa.Column("is_optional", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("menu_item_id", "ingredient_id", name="uq_menu_item_ingredient"),
    )
    op.create_index("ix_menu_item_ingredients_menu_item_id", "menu_item_ingredients", ["menu_item_id"])
    op.create_index("ix_menu_item_ingredients_ingredient_id", "menu_item_ingredients", ["ingredient_id"])

    # Order lines (written by the ordering app)
    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("menu_item_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("customizations", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
    op.create_index("ix_order_items_menu_item_id", "order_items", ["menu_item_id"])

    # Deduction queue
    op.create_table(
        "deduction_queue",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.String(64), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(100), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_deduction_queue_status", "deduction_queue", ["status"])

    # Stock adjustment ledger
    op.create_table(
        "stock_adjustments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("ingredient_id", sa.Integer(), sa.ForeignKey("ingredients.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("delta", sa.Numeric(14, 3), nullable=False),
        sa.Column("reason", sa.String(30), nullable=False),
        sa.Column("reference_id", sa.String(64), nullable=True),
        sa.Column("quantity_before", sa.Numeric(14, 3), nullable=False),
        sa.Column("quantity_after", sa.Numeric(14, 3), nullable=False),
        sa.Column("note", sa.String(500), nullable=True),
        sa.Column("performed_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("ingredient_id", "reason", "reference_id", name="uq_adjustment_reference"),
    )
    op.create_index("ix_stock_adjustments_ingredient_id", "stock_adjustments", ["ingredient_id"])
    op.create_index("ix_stock_adjustments_reason", "stock_adjustments", ["reason"])
    op.create_index("ix_stock_adjustments_reference_id", "stock_adjustments", ["reference_id"])
    op.create_index("ix_stock_adjustments_created_at", "stock_adjustments", ["created_at"])

    # Low-stock alert de-duplication state
    op.create_table(
        "low_stock_alert_states",
        sa.Column("ingredient_id", sa.Integer(), sa.ForeignKey("ingredients.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="ok"),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_alerted_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("low_stock_alert_states")
    op.drop_table("stock_adjustments")
    op.drop_table("deduction_queue")
    op.drop_table("order_items")
    op.drop_table("menu_item_ingredients")
    op.drop_table("ingredients")
