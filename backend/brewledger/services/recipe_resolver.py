"""Recipe Resolver - expands order lines into ingredient requirements.

For each order line the resolver starts from the menu item's recipe rows,
applies the line's customizations (add / remove / substitute), converts every
amount into the ingredient's actual unit and multiplies by the line quantity.

Any data problem (no recipe, unknown ingredient, disabled ingredient, bad
customization) raises ``RecipeResolutionError`` before anything is deducted.
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from brewledger.core.config import InventoryEngineSettings, settings
from brewledger.core.exceptions import ConversionError, RecipeResolutionError
from brewledger.models.ingredient import Ingredient
from brewledger.models.recipe import MenuItemIngredient
from brewledger.schemas.customization import (
    AddCustomization,
    RemoveCustomization,
    SubstituteCustomization,
    customization_list_adapter,
)
from brewledger.services.unit_converter import UnitOverrides, convert, quantize_quantity

logger = logging.getLogger(__name__)


@dataclass
class RequiredIngredient:
    """Amount of one ingredient an order needs, in its actual unit."""

    ingredient_id: int
    amount: Decimal
    unit: str
    name: str = ""


def _legacy_extra(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Map an old-style ``{ingredientId, amount|quantity, unit}`` extra to an add."""
    ingredient_id = entry.get("ingredient_id", entry.get("ingredientId", entry.get("id")))
    amount = entry.get("amount", entry.get("quantity"))
    return {"type": "add", "ingredient_id": ingredient_id, "amount": amount, "unit": entry.get("unit")}


def parse_customizations(raw: Any, menu_item_id: Optional[int] = None) -> list:
    """Parse stored customizations into typed objects.

    Accepts a JSON string, a list of tagged objects, untagged legacy extras,
    or a legacy ``{"extras": [...]}`` wrapper.
    """
    if raw is None or raw == "" or raw == []:
        return []
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise RecipeResolutionError(
                f"Customizations are not valid JSON: {e}", menu_item_id=menu_item_id
            ) from e
    if isinstance(raw, dict):
        raw = raw.get("extras") or raw.get("extraIngredients") or []
    if not isinstance(raw, list):
        raise RecipeResolutionError(
            f"Customizations must be a list, got {type(raw).__name__}", menu_item_id=menu_item_id
        )

    entries = []
    for entry in raw:
        if isinstance(entry, dict) and "type" not in entry:
            entry = _legacy_extra(entry)
        entries.append(entry)

    try:
        return customization_list_adapter.validate_python(entries)
    except ValidationError as e:
        raise RecipeResolutionError(
            f"Invalid customization: {e.errors()[0].get('msg', str(e))}", menu_item_id=menu_item_id
        ) from e


class RecipeResolver:
    """Resolves order lines into per-ingredient requirements."""

    def __init__(self, db: Session, config: Optional[InventoryEngineSettings] = None):
        self.db = db
        self.config = config or settings.inventory
        self._ingredients: Dict[int, Ingredient] = {}

    def resolve(self, order_item) -> List[RequiredIngredient]:
        """Requirements for a single order line, sorted by ingredient id.

        ``order_item`` needs ``menu_item_id``, ``quantity`` and
        ``customizations`` attributes (an ``OrderItem`` or a preview line).
        """
        menu_item_id = order_item.menu_item_id
        quantity = order_item.quantity or 0
        if quantity < 1:
            raise RecipeResolutionError(
                f"Order line for menu item {menu_item_id} has quantity {quantity}",
                menu_item_id=menu_item_id,
            )

        rows = self.db.execute(
            select(MenuItemIngredient)
            .where(MenuItemIngredient.menu_item_id == menu_item_id)
            .order_by(MenuItemIngredient.id)
        ).scalars().all()
        if not rows:
            raise RecipeResolutionError(
                f"Menu item {menu_item_id} has no recipe", menu_item_id=menu_item_id
            )

        by_ingredient: Dict[int, MenuItemIngredient] = {}
        for row in rows:
            if row.ingredient is None:
                raise RecipeResolutionError(
                    f"Recipe row {row.id} references missing ingredient {row.ingredient_id}",
                    menu_item_id=menu_item_id,
                    ingredient_id=row.ingredient_id,
                )
            self._ingredients[row.ingredient_id] = row.ingredient
            by_ingredient[row.ingredient_id] = row

        selected: Set[int] = set()
        excluded: Set[int] = set()
        per_unit: Dict[int, Decimal] = {}

        for custom in parse_customizations(order_item.customizations, menu_item_id):
            if isinstance(custom, AddCustomization):
                self._check_customizable(self._ingredient(custom.ingredient_id, menu_item_id), menu_item_id)
                row = by_ingredient.get(custom.ingredient_id)
                if row is not None and row.is_optional:
                    selected.add(row.ingredient_id)
                if custom.amount is not None:
                    ingredient = self._ingredient(custom.ingredient_id, menu_item_id)
                    extra = self._to_actual(ingredient, custom.amount, custom.unit, menu_item_id)
                    per_unit[ingredient.id] = per_unit.get(ingredient.id, Decimal("0")) + extra
                elif row is None or not row.is_optional:
                    raise RecipeResolutionError(
                        f"Add for ingredient {custom.ingredient_id} has no amount and "
                        f"selects no optional recipe row",
                        menu_item_id=menu_item_id,
                        ingredient_id=custom.ingredient_id,
                    )

            elif isinstance(custom, RemoveCustomization):
                if custom.ingredient_id not in by_ingredient:
                    raise RecipeResolutionError(
                        f"Cannot remove ingredient {custom.ingredient_id}: "
                        f"not in the recipe of menu item {menu_item_id}",
                        menu_item_id=menu_item_id,
                        ingredient_id=custom.ingredient_id,
                    )
                excluded.add(custom.ingredient_id)

            elif isinstance(custom, SubstituteCustomization):
                row = by_ingredient.get(custom.ingredient_id)
                if row is None:
                    raise RecipeResolutionError(
                        f"Cannot substitute ingredient {custom.ingredient_id}: "
                        f"not in the recipe of menu item {menu_item_id}",
                        menu_item_id=menu_item_id,
                        ingredient_id=custom.ingredient_id,
                    )
                excluded.add(custom.ingredient_id)
                substitute = self._ingredient(custom.substitute_ingredient_id, menu_item_id)
                self._check_customizable(substitute, menu_item_id)
                if custom.amount is not None:
                    amount = self._to_actual(substitute, custom.amount, custom.unit, menu_item_id)
                else:
                    amount = self._convert(
                        substitute,
                        self._base_amount(row, menu_item_id),
                        row.ingredient.actual_unit,
                        menu_item_id,
                    )
                per_unit[substitute.id] = per_unit.get(substitute.id, Decimal("0")) + amount

        for row in rows:
            if row.ingredient_id in excluded:
                continue
            if row.is_optional and row.ingredient_id not in selected:
                continue
            base = self._base_amount(row, menu_item_id)
            per_unit[row.ingredient_id] = per_unit.get(row.ingredient_id, Decimal("0")) + base

        requirements = []
        for ingredient_id in sorted(per_unit):
            amount = quantize_quantity(per_unit[ingredient_id] * quantity, self.config.quantity_precision)
            if amount == 0:
                continue
            ingredient = self._ingredients[ingredient_id]
            if not ingredient.is_available:
                raise RecipeResolutionError(
                    f"Ingredient '{ingredient.name}' is disabled",
                    menu_item_id=menu_item_id,
                    ingredient_id=ingredient_id,
                )
            requirements.append(RequiredIngredient(
                ingredient_id=ingredient_id,
                amount=amount,
                unit=ingredient.actual_unit,
                name=ingredient.name,
            ))
        return requirements

    def resolve_order(self, order_items: Iterable) -> List[RequiredIngredient]:
        """Requirements for a whole order, aggregated per ingredient."""
        totals: Dict[int, RequiredIngredient] = {}
        line_count = 0
        for item in order_items:
            line_count += 1
            for req in self.resolve(item):
                if req.ingredient_id in totals:
                    totals[req.ingredient_id].amount += req.amount
                else:
                    totals[req.ingredient_id] = RequiredIngredient(
                        req.ingredient_id, req.amount, req.unit, req.name
                    )

        logger.debug(
            f"Resolved {line_count} order lines into {len(totals)} ingredients",
            extra={"line_count": line_count, "ingredient_count": len(totals)},
        )
        return [totals[k] for k in sorted(totals)]

    # ===== HELPERS =====

    def _ingredient(self, ingredient_id: int, menu_item_id: int) -> Ingredient:
        ingredient = self._ingredients.get(ingredient_id)
        if ingredient is None:
            ingredient = self.db.get(Ingredient, ingredient_id)
            if ingredient is None:
                raise RecipeResolutionError(
                    f"Ingredient {ingredient_id} does not exist",
                    menu_item_id=menu_item_id,
                    ingredient_id=ingredient_id,
                )
            self._ingredients[ingredient_id] = ingredient
        return ingredient

    @staticmethod
    def _check_customizable(ingredient: Ingredient, menu_item_id: int) -> None:
        if not ingredient.visible_in_customization:
            raise RecipeResolutionError(
                f"Ingredient '{ingredient.name}' is not offered as a customization",
                menu_item_id=menu_item_id,
                ingredient_id=ingredient.id,
            )

    def _base_amount(self, row: MenuItemIngredient, menu_item_id: int) -> Decimal:
        """Per-unit amount of a recipe row in the ingredient's actual unit."""
        if row.required_actual_amount is not None:
            return Decimal(row.required_actual_amount)
        if row.required_display_amount is not None:
            return self._to_actual(
                row.ingredient, Decimal(row.required_display_amount), row.recipe_unit, menu_item_id
            )
        raise RecipeResolutionError(
            f"Recipe row for ingredient {row.ingredient_id} has no amount",
            menu_item_id=menu_item_id,
            ingredient_id=row.ingredient_id,
        )

    def _to_actual(self, ingredient: Ingredient, amount: Decimal, unit: Optional[str],
                   menu_item_id: int) -> Decimal:
        """Convert an amount given in ``unit`` (default: display unit) to actual."""
        from_unit = unit or ingredient.display_unit or ingredient.actual_unit
        return self._convert(ingredient, amount, from_unit, menu_item_id)

    def _convert(self, ingredient: Ingredient, amount: Decimal, from_unit: str,
                 menu_item_id: int) -> Decimal:
        try:
            return convert(amount, from_unit, ingredient.actual_unit, UnitOverrides.for_ingredient(ingredient))
        except ConversionError:
            logger.warning(
                f"No conversion from '{from_unit}' to '{ingredient.actual_unit}' "
                f"for ingredient {ingredient.id} ({ingredient.name})",
                extra={"ingredient_id": ingredient.id, "menu_item_id": menu_item_id},
            )
            raise
