"""Request/response schemas for the inventory engine ops routes."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class DeductionJobResponse(BaseModel):
    id: int
    order_id: str
    status: str
    attempts: int
    last_error: Optional[str] = None
    available_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CancelResponse(BaseModel):
    order_id: str
    status: str
    reversed: bool = False


class QueueStatusResponse(BaseModel):
    counts: Dict[str, int]
    total: int
    recent: List[DeductionJobResponse]


class RetryFailedRequest(BaseModel):
    include_dead_letter: bool = True


class CountResponse(BaseModel):
    count: int


class StockAdjustmentRequest(BaseModel):
    """Manual adjustment or restock of one ingredient."""

    delta: Decimal
    reason: Literal["manual_adjustment", "restock"] = "manual_adjustment"
    reference_id: Optional[str] = Field(default=None, max_length=64)
    note: Optional[str] = Field(default=None, max_length=500)
    performed_by: Optional[str] = Field(default=None, max_length=100)


class StockAdjustmentResponse(BaseModel):
    id: int
    ingredient_id: int
    delta: Decimal
    reason: str
    reference_id: Optional[str] = None
    quantity_before: Decimal
    quantity_after: Decimal
    note: Optional[str] = None
    performed_by: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AdjustmentResultResponse(BaseModel):
    already_applied: bool
    adjustment: Optional[StockAdjustmentResponse] = None


class LowStockItemResponse(BaseModel):
    ingredient_id: int
    name: str
    quantity: Decimal
    unit: str
    reorder_level: Decimal
    category: Optional[str] = None
    status: str


class SweepResponse(BaseModel):
    checked: int
    transitions: int
    critical_count: int
    low_stock_count: int
    recovered: int


class ReconciliationRowResponse(BaseModel):
    ingredient_id: int
    name: str
    initial_quantity: Decimal
    adjustments_total: Decimal
    expected_quantity: Decimal
    actual_quantity: Decimal
    difference: Decimal


class ReconciliationResponse(BaseModel):
    checked: int
    balanced: bool
    discrepancies: List[ReconciliationRowResponse]


class IngredientUsageResponse(BaseModel):
    ingredient_id: int
    name: str
    quantity: Decimal
    unit: str
    reversed: bool = False


class OrderUsageResponse(BaseModel):
    order_id: str
    deducted: bool
    items: List[IngredientUsageResponse]


class PreviewLineItem(BaseModel):
    menu_item_id: int
    quantity: int = Field(default=1, ge=1)
    customizations: List[dict] = Field(default_factory=list)


class FulfillmentPreviewRequest(BaseModel):
    items: List[PreviewLineItem] = Field(min_length=1)


class PreviewLineResponse(BaseModel):
    ingredient_id: int
    name: str
    required: Decimal
    available: Decimal
    unit: str
    sufficient: bool


class FulfillmentPreviewResponse(BaseModel):
    can_fulfill: bool
    lines: List[PreviewLineResponse]
