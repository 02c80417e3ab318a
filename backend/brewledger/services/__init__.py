# Services module

from brewledger.services.deduction_queue import CancelOutcome, DeductionQueue, ProcessOutcome
from brewledger.services.low_stock_monitor import LowStockMonitor, SweepResult
from brewledger.services.notification_service import AlertManagerNotifier, Notifier, get_notifier
from brewledger.services.recipe_resolver import RecipeResolver, RequiredIngredient
from brewledger.services.stock_ledger import DeductionResult, StockLedger

__all__ = [
    "AlertManagerNotifier",
    "CancelOutcome",
    "DeductionQueue",
    "DeductionResult",
    "LowStockMonitor",
    "Notifier",
    "ProcessOutcome",
    "RecipeResolver",
    "RequiredIngredient",
    "StockLedger",
    "SweepResult",
    "get_notifier",
]
