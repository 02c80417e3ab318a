"""Stock Ledger - the only writer of ``Ingredient.actual_quantity``.

Every mutation follows the same transaction protocol:

1. lock the involved ingredient rows in ascending id order
   (``SELECT ... FOR UPDATE``; on SQLite a no-op ``UPDATE`` takes the
   database write lock instead)
2. re-read quantities under the lock and check idempotency
3. write the new quantities plus one ``StockAdjustment`` per ingredient
4. commit, or roll back everything on any error

Database lock timeouts and connection failures surface as
``TransientDbError`` so the queue can retry them.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from brewledger.core.config import InventoryEngineSettings, settings
from brewledger.core.exceptions import (
    IngredientNotFoundError,
    InsufficientStockError,
    InvalidAdjustmentError,
    InventoryEngineError,
    StockShortage,
    TransientDbError,
)
from brewledger.db.session import is_sqlite
from brewledger.models.ingredient import Ingredient
from brewledger.models.stock_adjustment import AdjustmentReason, StockAdjustment
from brewledger.services.recipe_resolver import RequiredIngredient
from brewledger.services.unit_converter import quantize_quantity, to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class DeductionLine:
    ingredient_id: int
    name: str
    unit: str
    requested: Decimal
    deducted: Decimal
    quantity_before: Decimal
    quantity_after: Decimal
    clamped: bool = False


@dataclass
class DeductionResult:
    """Outcome of ``apply_deduction`` or ``reverse_deduction``."""

    order_id: str
    already_applied: bool = False
    lines: List[DeductionLine] = field(default_factory=list)

    @property
    def clamped_lines(self) -> List[DeductionLine]:
        return [line for line in self.lines if line.clamped]

    @property
    def ingredient_ids(self) -> List[int]:
        return [line.ingredient_id for line in self.lines]


@dataclass
class AdjustmentResult:
    adjustment: Optional[StockAdjustment]
    already_applied: bool = False


@dataclass
class ReconciliationRow:
    ingredient_id: int
    name: str
    initial_quantity: Decimal
    adjustments_total: Decimal
    actual_quantity: Decimal

    @property
    def expected_quantity(self) -> Decimal:
        return self.initial_quantity + self.adjustments_total

    @property
    def difference(self) -> Decimal:
        return self.actual_quantity - self.expected_quantity

    @property
    def balanced(self) -> bool:
        return self.difference == 0


@dataclass
class IngredientUsage:
    ingredient_id: int
    name: str
    quantity: Decimal
    unit: str
    reversed: bool = False


@dataclass
class PreviewLine:
    ingredient_id: int
    name: str
    required: Decimal
    available: Decimal
    unit: str

    @property
    def sufficient(self) -> bool:
        return self.available >= self.required


@dataclass
class FulfillmentPreview:
    lines: List[PreviewLine] = field(default_factory=list)

    @property
    def can_fulfill(self) -> bool:
        return all(line.sufficient for line in self.lines)


class StockLedger:
    """Transactional stock mutations on an ``Ingredient`` table."""

    def __init__(self, db: Session, config: Optional[InventoryEngineSettings] = None):
        self.db = db
        self.config = config or settings.inventory

    # ===== CORE: ORDER DEDUCTION =====

    def apply_deduction(self, order_id: str, requirements: Iterable[RequiredIngredient]) -> DeductionResult:
        """Deduct every requirement of an order in one transaction.

        Returns ``already_applied=True`` without writing if the order was
        deducted before.

        Raises:
            InsufficientStockError: strict policy and a line would go negative.
            TransientDbError: lock timeout or lost connection.
        """
        order_id = str(order_id)
        amounts = self._merge(requirements)
        result = DeductionResult(order_id=order_id)

        try:
            ingredients = self._lock_ingredients(amounts.keys())

            if self._has_adjustment(AdjustmentReason.ORDER_DEDUCTION, order_id):
                self.db.rollback()
                logger.info(
                    f"Order {order_id} already deducted, skipping",
                    extra={"order_id": order_id},
                )
                result.already_applied = True
                return result

            shortages = []
            for ingredient in ingredients:
                requested = amounts[ingredient.id]
                before = Decimal(ingredient.actual_quantity)
                after = before - requested
                clamped = False

                if after < 0:
                    if self.config.strict:
                        shortages.append(StockShortage(
                            ingredient_id=ingredient.id,
                            name=ingredient.name,
                            available=before,
                            required=requested,
                            unit=ingredient.actual_unit,
                        ))
                        continue
                    after = before if before < 0 else ZERO
                    clamped = True

                result.lines.append(DeductionLine(
                    ingredient_id=ingredient.id,
                    name=ingredient.name,
                    unit=ingredient.actual_unit,
                    requested=requested,
                    deducted=before - after,
                    quantity_before=before,
                    quantity_after=after,
                    clamped=clamped,
                ))

            if shortages:
                raise InsufficientStockError(shortages, order_id=order_id)

            by_id = {ingredient.id: ingredient for ingredient in ingredients}
            for line in result.lines:
                by_id[line.ingredient_id].actual_quantity = line.quantity_after
                self.db.add(StockAdjustment(
                    ingredient_id=line.ingredient_id,
                    delta=-line.deducted,
                    reason=AdjustmentReason.ORDER_DEDUCTION.value,
                    reference_id=order_id,
                    quantity_before=line.quantity_before,
                    quantity_after=line.quantity_after,
                ))

            self.db.commit()

        except InventoryEngineError:
            self.db.rollback()
            raise
        except IntegrityError:
            self.db.rollback()
            if self._has_adjustment(AdjustmentReason.ORDER_DEDUCTION, order_id):
                logger.info(f"Order {order_id} deducted concurrently, skipping", extra={"order_id": order_id})
                return DeductionResult(order_id=order_id, already_applied=True)
            raise
        except (OperationalError, DBAPIError) as e:
            self.db.rollback()
            raise TransientDbError(
                f"Stock deduction for order {order_id} failed: {e.orig or e}",
                operation="apply_deduction",
            ) from e

        for line in result.clamped_lines:
            logger.warning(
                f"Clamped {line.name} at zero for order {order_id}: "
                f"requested {line.requested} {line.unit}, deducted {line.deducted} {line.unit}",
                extra={"order_id": order_id, "ingredient_id": line.ingredient_id},
            )
        logger.info(
            f"Deducted stock for order {order_id} ({len(result.lines)} ingredients)",
            extra={"order_id": order_id, "ingredient_ids": result.ingredient_ids},
        )
        return result

    # ===== ADMIN ADJUSTMENTS =====

    def adjust(
        self,
        ingredient_id: int,
        delta,
        reason: str = AdjustmentReason.MANUAL_ADJUSTMENT.value,
        reference_id: Optional[str] = None,
        note: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> AdjustmentResult:
        """Apply a manual adjustment or restock to one ingredient.

        A repeated ``reference_id`` for the same ingredient and reason is a
        no-op returning the original adjustment.
        """
        try:
            reason = AdjustmentReason(reason)
        except ValueError:
            raise InvalidAdjustmentError(f"Unknown adjustment reason '{reason}'", ingredient_id)
        if reason not in (AdjustmentReason.MANUAL_ADJUSTMENT, AdjustmentReason.RESTOCK):
            raise InvalidAdjustmentError(
                f"Reason '{reason.value}' is reserved for order processing", ingredient_id
            )

        try:
            delta = quantize_quantity(delta, self.config.quantity_precision)
        except ValueError as e:
            raise InvalidAdjustmentError(str(e), ingredient_id) from e
        if delta == 0:
            raise InvalidAdjustmentError("Adjustment delta must not be zero", ingredient_id)
        if reason == AdjustmentReason.RESTOCK and delta < 0:
            raise InvalidAdjustmentError("Restock delta must be positive", ingredient_id)
        reference_id = str(reference_id) if reference_id is not None else None

        try:
            locked = self._lock_ingredients([ingredient_id])
            if not locked:
                raise IngredientNotFoundError(ingredient_id)
            ingredient = locked[0]

            if reference_id is not None:
                existing = self._find_adjustment(ingredient_id, reason, reference_id)
                if existing is not None:
                    self.db.rollback()
                    return AdjustmentResult(adjustment=existing, already_applied=True)

            before = Decimal(ingredient.actual_quantity)
            after = before + delta
            if after < 0:
                raise InsufficientStockError([StockShortage(
                    ingredient_id=ingredient.id,
                    name=ingredient.name,
                    available=before,
                    required=-delta,
                    unit=ingredient.actual_unit,
                )])

            adjustment = StockAdjustment(
                ingredient_id=ingredient.id,
                delta=delta,
                reason=reason.value,
                reference_id=reference_id,
                quantity_before=before,
                quantity_after=after,
                note=note,
                performed_by=performed_by,
            )
            ingredient.actual_quantity = after
            self.db.add(adjustment)
            self.db.commit()

        except InventoryEngineError:
            self.db.rollback()
            raise
        except IntegrityError:
            self.db.rollback()
            existing = self._find_adjustment(ingredient_id, reason, reference_id)
            if existing is not None:
                return AdjustmentResult(adjustment=existing, already_applied=True)
            raise
        except (OperationalError, DBAPIError) as e:
            self.db.rollback()
            raise TransientDbError(
                f"Adjustment of ingredient {ingredient_id} failed: {e.orig or e}",
                operation="adjust",
            ) from e

        logger.info(
            f"{reason.value} {delta:+} {ingredient.actual_unit} on {ingredient.name} "
            f"({before} -> {after})",
            extra={"ingredient_id": ingredient.id, "reason": reason.value, "performed_by": performed_by},
        )
        return AdjustmentResult(adjustment=adjustment)

    def reverse_deduction(self, order_id: str, note: Optional[str] = None) -> DeductionResult:
        """Give back the stock an order consumed. Idempotent."""
        order_id = str(order_id)
        deductions = self._order_adjustments(AdjustmentReason.ORDER_DEDUCTION, order_id)
        result = DeductionResult(order_id=order_id)
        if not deductions:
            return result

        try:
            ingredients = {i.id: i for i in self._lock_ingredients([a.ingredient_id for a in deductions])}

            if self._has_adjustment(AdjustmentReason.ORDER_REVERSAL, order_id):
                self.db.rollback()
                result.already_applied = True
                return result

            for deduction in deductions:
                restored = -Decimal(deduction.delta)
                if restored == 0:
                    continue
                ingredient = ingredients[deduction.ingredient_id]
                before = Decimal(ingredient.actual_quantity)
                after = before + restored
                ingredient.actual_quantity = after
                self.db.add(StockAdjustment(
                    ingredient_id=ingredient.id,
                    delta=restored,
                    reason=AdjustmentReason.ORDER_REVERSAL.value,
                    reference_id=order_id,
                    quantity_before=before,
                    quantity_after=after,
                    note=note,
                ))
                result.lines.append(DeductionLine(
                    ingredient_id=ingredient.id,
                    name=ingredient.name,
                    unit=ingredient.actual_unit,
                    requested=restored,
                    deducted=-restored,
                    quantity_before=before,
                    quantity_after=after,
                ))
            self.db.commit()

        except InventoryEngineError:
            self.db.rollback()
            raise
        except IntegrityError:
            self.db.rollback()
            result.already_applied = True
            result.lines = []
            return result
        except (OperationalError, DBAPIError) as e:
            self.db.rollback()
            raise TransientDbError(
                f"Reversal for order {order_id} failed: {e.orig or e}",
                operation="reverse_deduction",
            ) from e

        logger.info(
            f"Reversed stock deduction for order {order_id} ({len(result.lines)} ingredients)",
            extra={"order_id": order_id, "ingredient_ids": result.ingredient_ids},
        )
        return result

    # ===== READS =====

    def has_deduction(self, order_id: str) -> bool:
        return self._has_adjustment(AdjustmentReason.ORDER_DEDUCTION, str(order_id))

    def order_usage(self, order_id: str) -> List[IngredientUsage]:
        """Ingredients an order consumed, in actual units."""
        order_id = str(order_id)
        reversed_ids = {
            a.ingredient_id for a in self._order_adjustments(AdjustmentReason.ORDER_REVERSAL, order_id)
        }
        rows = self.db.execute(
            select(StockAdjustment, Ingredient)
            .join(Ingredient, Ingredient.id == StockAdjustment.ingredient_id)
            .where(
                StockAdjustment.reason == AdjustmentReason.ORDER_DEDUCTION.value,
                StockAdjustment.reference_id == order_id,
            )
            .order_by(StockAdjustment.ingredient_id)
        ).all()
        return [
            IngredientUsage(
                ingredient_id=ingredient.id,
                name=ingredient.name,
                quantity=-Decimal(adjustment.delta),
                unit=ingredient.actual_unit,
                reversed=ingredient.id in reversed_ids,
            )
            for adjustment, ingredient in rows
        ]

    def reconcile(self, ingredient_ids: Optional[Iterable[int]] = None,
                  include_balanced: bool = False) -> List[ReconciliationRow]:
        """Check ``initial_quantity + sum(delta) == actual_quantity`` per ingredient."""
        totals = (
            select(
                StockAdjustment.ingredient_id.label("ingredient_id"),
                func.sum(StockAdjustment.delta).label("total"),
            )
            .group_by(StockAdjustment.ingredient_id)
            .subquery()
        )
        query = (
            select(Ingredient, totals.c.total)
            .outerjoin(totals, totals.c.ingredient_id == Ingredient.id)
            .order_by(Ingredient.id)
            .execution_options(populate_existing=True)
        )
        if ingredient_ids is not None:
            query = query.where(Ingredient.id.in_(list(ingredient_ids)))

        precision = self.config.quantity_precision
        rows = []
        for ingredient, total in self.db.execute(query).all():
            row = ReconciliationRow(
                ingredient_id=ingredient.id,
                name=ingredient.name,
                initial_quantity=quantize_quantity(ingredient.initial_quantity, precision),
                adjustments_total=quantize_quantity(total if total is not None else 0, precision),
                actual_quantity=quantize_quantity(ingredient.actual_quantity, precision),
            )
            if include_balanced or not row.balanced:
                rows.append(row)

        discrepancies = [r for r in rows if not r.balanced]
        if discrepancies:
            logger.error(
                f"Stock reconciliation found {len(discrepancies)} discrepancies",
                extra={"ingredient_ids": [r.ingredient_id for r in discrepancies]},
            )
        return rows

    def preview(self, requirements: Iterable[RequiredIngredient]) -> FulfillmentPreview:
        """Availability check without locking or writing."""
        amounts = self._merge(requirements)
        if not amounts:
            return FulfillmentPreview()
        ingredients = self.db.execute(
            select(Ingredient)
            .where(Ingredient.id.in_(list(amounts)))
            .order_by(Ingredient.id)
            .execution_options(populate_existing=True)
        ).scalars().all()
        found = {i.id for i in ingredients}
        missing = [i for i in amounts if i not in found]
        if missing:
            raise IngredientNotFoundError(missing[0])
        return FulfillmentPreview(lines=[
            PreviewLine(
                ingredient_id=i.id,
                name=i.name,
                required=amounts[i.id],
                available=Decimal(i.actual_quantity),
                unit=i.actual_unit,
            )
            for i in ingredients
        ])

    # ===== HELPERS =====

    def _merge(self, requirements: Iterable[RequiredIngredient]) -> Dict[int, Decimal]:
        amounts: Dict[int, Decimal] = {}
        for req in requirements:
            amounts[req.ingredient_id] = amounts.get(req.ingredient_id, ZERO) + to_decimal(req.amount)
        precision = self.config.quantity_precision
        return {
            ingredient_id: quantize_quantity(amount, precision)
            for ingredient_id, amount in sorted(amounts.items())
            if amount > 0
        }

    def _lock_ingredients(self, ingredient_ids: Iterable[int]) -> List[Ingredient]:
        """Lock rows in ascending id order and return them freshly loaded."""
        ids = sorted(set(ingredient_ids))
        if not ids:
            return []

        if is_sqlite(self.db.get_bind()):
            self.db.execute(
                update(Ingredient)
                .where(Ingredient.id.in_(ids))
                .values(actual_quantity=Ingredient.actual_quantity)
                .execution_options(synchronize_session=False)
            )
            ingredients = self.db.execute(
                select(Ingredient)
                .where(Ingredient.id.in_(ids))
                .order_by(Ingredient.id)
                .execution_options(populate_existing=True)
            ).scalars().all()
        else:
            ingredients = []
            for ingredient_id in ids:
                ingredient = self.db.execute(
                    select(Ingredient)
                    .where(Ingredient.id == ingredient_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                ).scalar_one_or_none()
                if ingredient is not None:
                    ingredients.append(ingredient)

        if len(ingredients) != len(ids):
            found = {i.id for i in ingredients}
            raise IngredientNotFoundError(next(i for i in ids if i not in found))
        return list(ingredients)

    def _has_adjustment(self, reason: AdjustmentReason, reference_id: str) -> bool:
        return self.db.execute(
            select(StockAdjustment.id)
            .where(
                StockAdjustment.reason == reason.value,
                StockAdjustment.reference_id == reference_id,
            )
            .limit(1)
        ).first() is not None

    def _find_adjustment(self, ingredient_id: int, reason: AdjustmentReason,
                         reference_id: Optional[str]) -> Optional[StockAdjustment]:
        if reference_id is None:
            return None
        return self.db.execute(
            select(StockAdjustment).where(
                StockAdjustment.ingredient_id == ingredient_id,
                StockAdjustment.reason == reason.value,
                StockAdjustment.reference_id == reference_id,
            )
        ).scalar_one_or_none()

    def _order_adjustments(self, reason: AdjustmentReason, order_id: str) -> List[StockAdjustment]:
        return list(self.db.execute(
            select(StockAdjustment)
            .where(
                StockAdjustment.reason == reason.value,
                StockAdjustment.reference_id == order_id,
            )
            .order_by(StockAdjustment.ingredient_id)
        ).scalars().all())
