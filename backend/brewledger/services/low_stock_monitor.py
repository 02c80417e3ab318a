"""Low-Stock Monitor - threshold checks with de-duplicated, batched alerts.

Each ingredient is classified as ``critical`` (nothing left), ``low`` (at or
below its reorder level) or ``ok``. The last classification is stored in
``low_stock_alert_states`` and a notification goes out only when it changes
into ``low`` or ``critical``. All changes found in one pass are sent as a
single batch.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from brewledger.models.ingredient import Ingredient
from brewledger.models.low_stock_alert import LowStockAlertState, StockStatus
from brewledger.schemas.notification import LowStockBatch, LowStockItem
from brewledger.services.notification_service import Notifier, get_notifier

logger = logging.getLogger(__name__)

# One evaluation at a time per process; the timer and the workers share it
_evaluation_lock = threading.Lock()


def classify(quantity: Decimal, reorder_level: Decimal) -> StockStatus:
    if quantity <= 0:
        return StockStatus.CRITICAL
    if quantity <= reorder_level:
        return StockStatus.LOW
    return StockStatus.OK


@dataclass
class SweepResult:
    checked: int = 0
    recovered: int = 0
    batch: LowStockBatch = field(default_factory=LowStockBatch)

    @property
    def transitions(self) -> int:
        return self.batch.total_count


class LowStockMonitor:
    """Compares stock to reorder levels and notifies on state changes."""

    def __init__(self, db: Session, notifier: Optional[Notifier] = None):
        self.db = db
        self.notifier = notifier or get_notifier()

    def sweep(self) -> SweepResult:
        """Evaluate every available ingredient."""
        return self._run(None)

    def check_ingredients(self, ingredient_ids: Iterable[int]) -> SweepResult:
        """Evaluate only the given ingredients (after a deduction)."""
        ids = sorted(set(ingredient_ids))
        if not ids:
            return SweepResult()
        return self._run(ids)

    def list_low_stock(self) -> List[LowStockItem]:
        """Available ingredients currently at or below their reorder level."""
        ingredients = self.db.execute(
            select(Ingredient)
            .where(
                Ingredient.is_available.is_(True),
                Ingredient.actual_quantity <= Ingredient.reorder_level,
            )
            .order_by(Ingredient.actual_quantity, Ingredient.id)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return [
            self._item(i, classify(Decimal(i.actual_quantity), Decimal(i.reorder_level)))
            for i in ingredients
        ]

    def _run(self, ingredient_ids: Optional[List[int]]) -> SweepResult:
        with _evaluation_lock:
            try:
                return self._evaluate_and_notify(ingredient_ids)
            except IntegrityError:
                # Another process created a state row first
                self.db.rollback()
                logger.info("Low-stock state changed concurrently, re-evaluating")
                return self._evaluate_and_notify(ingredient_ids)

    def _evaluate_and_notify(self, ingredient_ids: Optional[List[int]]) -> SweepResult:
        """Alert state is committed only once the batch has been handed over."""
        result = self._evaluate(ingredient_ids)
        if result.batch.items:
            try:
                self.notifier.send_low_stock_batch(result.batch)
            except Exception:
                self.db.rollback()
                logger.exception(
                    f"Low-stock batch of {result.batch.total_count} items not delivered, "
                    f"will retry on the next pass"
                )
                raise
        self.db.commit()
        return result

    def _evaluate(self, ingredient_ids: Optional[List[int]]) -> SweepResult:
        query = select(Ingredient).where(Ingredient.is_available.is_(True)).order_by(Ingredient.id)
        if ingredient_ids is not None:
            query = query.where(Ingredient.id.in_(ingredient_ids))
        ingredients = self.db.execute(query.execution_options(populate_existing=True)).scalars().all()
        if not ingredients:
            return SweepResult()

        states = {
            s.ingredient_id: s
            for s in self.db.execute(
                select(LowStockAlertState)
                .where(LowStockAlertState.ingredient_id.in_([i.id for i in ingredients]))
                .execution_options(populate_existing=True)
            ).scalars().all()
        }

        now = datetime.now(timezone.utc)
        result = SweepResult(checked=len(ingredients))
        for ingredient in ingredients:
            status = classify(Decimal(ingredient.actual_quantity), Decimal(ingredient.reorder_level))
            state = states.get(ingredient.id)
            previous = StockStatus(state.status) if state is not None else StockStatus.OK
            if status == previous:
                continue

            if state is None:
                state = LowStockAlertState(ingredient_id=ingredient.id)
                self.db.add(state)
            state.status = status.value
            state.changed_at = now

            if status == StockStatus.OK:
                result.recovered += 1
                logger.info(
                    f"{ingredient.name} back above reorder level ({ingredient.actual_quantity} "
                    f"{ingredient.actual_unit})",
                    extra={"ingredient_id": ingredient.id, "previous_status": previous.value},
                )
                continue

            state.last_alerted_at = now
            result.batch.items.append(self._item(ingredient, status))
            if status == StockStatus.CRITICAL:
                result.batch.critical_count += 1
            else:
                result.batch.low_stock_count += 1
            logger.warning(
                f"{ingredient.name} is {status.value}: {ingredient.actual_quantity} "
                f"{ingredient.actual_unit} (reorder level {ingredient.reorder_level})",
                extra={"ingredient_id": ingredient.id, "status": status.value,
                       "previous_status": previous.value},
            )

        return result

    @staticmethod
    def _item(ingredient: Ingredient, status: StockStatus) -> LowStockItem:
        return LowStockItem(
            ingredient_id=ingredient.id,
            name=ingredient.name,
            quantity=ingredient.actual_quantity,
            unit=ingredient.actual_unit,
            reorder_level=ingredient.reorder_level,
            category=ingredient.category,
            status=status.value,
        )
