"""Error taxonomy for the inventory deduction engine.

Permanent errors (``retryable = False``) fail a deduction job immediately.
``TransientDbError`` is the only retryable error; the queue retries it with
backoff until the attempt ceiling and then dead-letters the job.
"""

from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Any, Dict, List, Optional


class InventoryEngineError(Exception):
    """Base exception for all engine errors."""

    retryable = False

    def __init__(self, message: str, error_code: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses and alerts."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ConversionError(InventoryEngineError):
    """No conversion path exists between two units for an ingredient."""

    def __init__(self, unit: str, ingredient_id: Optional[int] = None, to_unit: Optional[str] = None):
        self.unit = unit
        self.to_unit = to_unit
        self.ingredient_id = ingredient_id
        target = f" to '{to_unit}'" if to_unit else ""
        subject = f" for ingredient {ingredient_id}" if ingredient_id is not None else ""
        super().__init__(
            f"Cannot convert '{unit}'{target}{subject}",
            "UNIT_CONVERSION_ERROR",
            {"unit": unit, "to_unit": to_unit, "ingredient_id": ingredient_id},
        )


class RecipeResolutionError(InventoryEngineError):
    """A menu item's recipe cannot be resolved (missing or invalid mapping)."""

    def __init__(self, message: str, menu_item_id: Optional[int] = None,
                 ingredient_id: Optional[int] = None):
        self.menu_item_id = menu_item_id
        self.ingredient_id = ingredient_id
        super().__init__(
            message,
            "RECIPE_RESOLUTION_ERROR",
            {
                "menu_item_id": menu_item_id,
                "ingredient_id": ingredient_id,
                "requires_manual_review": True,
            },
        )


@dataclass
class StockShortage:
    """One ingredient that cannot cover its requirement."""

    ingredient_id: int
    name: str
    available: Decimal
    required: Decimal
    unit: str

    @property
    def shortfall(self) -> Decimal:
        return self.required - self.available


class InsufficientStockError(InventoryEngineError):
    """Stock cannot satisfy a deduction under the strict policy."""

    def __init__(self, shortages: List[StockShortage], order_id: Optional[str] = None):
        if not shortages:
            raise ValueError("InsufficientStockError needs at least one shortage")
        self.shortages = shortages
        self.order_id = order_id
        first = shortages[0]
        self.ingredient_id = first.ingredient_id
        self.available = first.available
        self.required = first.required

        subject = f" for order {order_id}" if order_id is not None else ""
        names = ", ".join(
            f"{s.name} (need {s.required} {s.unit}, have {s.available} {s.unit})"
            for s in shortages
        )
        super().__init__(
            f"Insufficient stock{subject}: {names}",
            "INSUFFICIENT_STOCK",
            {
                "order_id": order_id,
                "shortages": [
                    {**asdict(s), "available": str(s.available), "required": str(s.required),
                     "shortfall": str(s.shortfall)}
                    for s in shortages
                ],
            },
        )


class TransientDbError(InventoryEngineError):
    """Lock timeout, serialization failure or lost connection."""

    retryable = True

    def __init__(self, message: str, operation: Optional[str] = None):
        self.operation = operation
        super().__init__(message, "TRANSIENT_DB_ERROR", {"operation": operation})


class IngredientNotFoundError(InventoryEngineError):
    """Referenced ingredient does not exist."""

    def __init__(self, ingredient_id: int):
        self.ingredient_id = ingredient_id
        super().__init__(
            f"Ingredient {ingredient_id} not found",
            "INGREDIENT_NOT_FOUND",
            {"ingredient_id": ingredient_id},
        )


class InvalidAdjustmentError(InventoryEngineError):
    """A manual adjustment or restock request is malformed."""

    def __init__(self, message: str, ingredient_id: Optional[int] = None):
        self.ingredient_id = ingredient_id
        super().__init__(message, "INVALID_ADJUSTMENT", {"ingredient_id": ingredient_id})
