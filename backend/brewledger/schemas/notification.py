"""Payloads sent to the Notification Service.

Field names are camelCase on the wire, snake_case in Python.
"""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class LowStockItem(_CamelModel):
    ingredient_id: int
    name: str
    quantity: Decimal
    unit: str
    reorder_level: Decimal
    category: Optional[str] = None
    status: str  # low | critical


class LowStockBatch(_CamelModel):
    """Every low-stock transition found by one sweep."""

    items: List[LowStockItem] = Field(default_factory=list)
    critical_count: int = 0
    low_stock_count: int = 0

    @property
    def total_count(self) -> int:
        return len(self.items)


class JobFailureAlert(_CamelModel):
    """A deduction job that ended ``failed`` or ``dead_letter``."""

    order_id: str
    reason: str
    status: str
    error_code: Optional[str] = None
    attempts: int = 0


class StockClampedAlert(_CamelModel):
    """Permissive policy clamped a deduction at zero."""

    order_id: str
    ingredient_id: int
    name: str
    requested: Decimal
    deducted: Decimal
    unit: str
