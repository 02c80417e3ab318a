"""Append-only audit ledger of stock changes."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from brewledger.db.base import Base


class AdjustmentReason(str, Enum):
    """Why an ingredient's quantity changed."""

    ORDER_DEDUCTION = "order_deduction"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    RESTOCK = "restock"
    ORDER_REVERSAL = "order_reversal"  # Cancelled order handed its stock back


class StockAdjustment(Base):
    """One signed change to one ingredient."""

    __tablename__ = "stock_adjustments"
    __table_args__ = (
        UniqueConstraint("ingredient_id", "reason", "reference_id", name="uq_adjustment_reference"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    ingredient_id: Mapped[int] = mapped_column(
        ForeignKey("ingredients.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    delta: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    reason: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    quantity_before: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    quantity_after: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    performed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
