"""SQLAlchemy models."""

from brewledger.models.ingredient import Ingredient
from brewledger.models.recipe import MenuItemIngredient
from brewledger.models.order import OrderItem
from brewledger.models.deduction_job import DeductionJob, JobStatus, TERMINAL_STATUSES
from brewledger.models.stock_adjustment import StockAdjustment, AdjustmentReason
from brewledger.models.low_stock_alert import LowStockAlertState, StockStatus

__all__ = [
    "Ingredient",
    "MenuItemIngredient",
    "OrderItem",
    "DeductionJob",
    "JobStatus",
    "TERMINAL_STATUSES",
    "StockAdjustment",
    "AdjustmentReason",
    "LowStockAlertState",
    "StockStatus",
]
