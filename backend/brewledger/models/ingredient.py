"""Ingredient model: the stock ledger's rows."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from brewledger.db.base import Base, TimestampMixin


class Ingredient(Base, TimestampMixin):
    """An ingredient tracked in its actual (canonical) unit.

    ``actual_quantity`` is written only by ``StockLedger``; every change is
    recorded as a ``StockAdjustment`` so that
    ``initial_quantity + sum(delta) == actual_quantity`` holds.
    """

    __tablename__ = "ingredients"

    id: Mapped[int] = mapped_column(primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    actual_unit: Mapped[str] = mapped_column(String(20), nullable=False)  # ml, g, L, kg, pcs
    display_unit: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # shot, pump, cup
    # Actual units per display unit, e.g. 30 when 1 scoop = 30 g
    conversion_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 6), nullable=True)
    initial_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=0, nullable=False)
    actual_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=0, nullable=False)
    reorder_level: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=0, nullable=False)
    cost_per_actual_unit: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=0, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    visible_in_customization: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Ingredient {self.id} {self.sku} {self.actual_quantity} {self.actual_unit}>"
