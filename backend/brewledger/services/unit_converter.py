"""Unit conversion between display units and actual (stock) units.

Resolution order for ``convert``:

1. same unit, returned unchanged
2. the ingredient's own override ratio (``Ingredient.conversion_rate`` for its
   ``display_unit``), usable in both directions
3. the semantic-measure table (shot, pump, cup, sprinkle)
4. the metric base tables (volume, weight, count)

Anything else raises ``ConversionError``; there is no fallback ratio of 1.
Results are exact ``Decimal`` values. Rounding happens once, in
``quantize_quantity``, right before a quantity is persisted.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Optional, Tuple, Union

from brewledger.core.config import settings
from brewledger.core.exceptions import ConversionError

Number = Union[Decimal, int, float, str]

VOLUME = "volume"
WEIGHT = "weight"
COUNT = "count"
MEASURE = "measure"

# Factor to the family's base unit
BASE_UNITS: Dict[str, Tuple[str, Decimal]] = {
    # Volume: base unit = ml
    "ml": (VOLUME, Decimal("1")),
    "cl": (VOLUME, Decimal("10")),
    "dl": (VOLUME, Decimal("100")),
    "l": (VOLUME, Decimal("1000")),
    "fl_oz": (VOLUME, Decimal("29.5735")),
    # Weight: base unit = g
    "mg": (WEIGHT, Decimal("0.001")),
    "g": (WEIGHT, Decimal("1")),
    "kg": (WEIGHT, Decimal("1000")),
    "oz": (WEIGHT, Decimal("28.3495")),
    "lb": (WEIGHT, Decimal("453.592")),
    # Count: base unit = pcs
    "pcs": (COUNT, Decimal("1")),
    "dozen": (COUNT, Decimal("12")),
}

FAMILY_BASE = {VOLUME: "ml", WEIGHT: "g", COUNT: "pcs"}

# Customer-facing measures, keyed by the base unit of the family they land in.
# A shot of syrup is 25 ml, a shot of ground coffee is 18 g.
SEMANTIC_MEASURES: Dict[str, Dict[str, Decimal]] = {
    "shot": {"ml": Decimal("25"), "g": Decimal("18")},
    "pump": {"ml": Decimal("15")},
    "cup": {"ml": Decimal("240")},
    "sprinkle": {"g": Decimal("0.5")},
}

# Convertible only through an ingredient's own ratio
OVERRIDE_ONLY_UNITS = frozenset({"dash", "serving"})

UNIT_ALIASES = {
    "milliliter": "ml", "millilitre": "ml", "milliliters": "ml", "millilitres": "ml", "mls": "ml",
    "centiliter": "cl", "centilitre": "cl",
    "deciliter": "dl", "decilitre": "dl",
    "liter": "l", "litre": "l", "liters": "l", "litres": "l", "ltr": "l",
    "fl oz": "fl_oz", "fl. oz": "fl_oz", "floz": "fl_oz",
    "milligram": "mg", "milligrams": "mg",
    "gram": "g", "grams": "g", "gr": "g",
    "kilogram": "kg", "kilograms": "kg", "kilo": "kg", "kilos": "kg", "kgs": "kg",
    "ounce": "oz", "ounces": "oz",
    "pound": "lb", "pounds": "lb", "lbs": "lb",
    "pc": "pcs", "piece": "pcs", "pieces": "pcs", "ea": "pcs", "each": "pcs", "unit": "pcs", "units": "pcs",
    "dozens": "dozen",
    "shots": "shot", "pumps": "pump", "cups": "cup", "sprinkles": "sprinkle",
    "dashes": "dash", "servings": "serving",
}


def normalize_unit(unit: Optional[str]) -> str:
    """Canonical lower-case unit name (``"Grams "`` -> ``"g"``)."""
    if unit is None:
        return ""
    key = " ".join(unit.strip().lower().split())
    return UNIT_ALIASES.get(key, key)


def unit_family(unit: Optional[str]) -> Optional[str]:
    """``volume``, ``weight``, ``count``, ``measure`` or None when unknown."""
    key = normalize_unit(unit)
    if key in BASE_UNITS:
        return BASE_UNITS[key][0]
    if key in SEMANTIC_MEASURES or key in OVERRIDE_ONLY_UNITS:
        return MEASURE
    return None


def is_supported_unit(unit: Optional[str]) -> bool:
    return unit_family(unit) is not None


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid quantity: {value!r}") from e


def quantize_quantity(value: Number, precision: Optional[int] = None) -> Decimal:
    """Round to the persisted precision (ROUND_HALF_UP)."""
    if precision is None:
        precision = settings.inventory.quantity_precision
    return to_decimal(value).quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class UnitOverrides:
    """An ingredient's own display->actual ratio.

    ``rate`` is the amount of ``actual_unit`` in one ``display_unit``.
    """

    ingredient_id: Optional[int] = None
    display_unit: Optional[str] = None
    actual_unit: Optional[str] = None
    rate: Optional[Decimal] = None

    @classmethod
    def for_ingredient(cls, ingredient) -> "UnitOverrides":
        rate = ingredient.conversion_rate
        return cls(
            ingredient_id=ingredient.id,
            display_unit=normalize_unit(ingredient.display_unit) or None,
            actual_unit=normalize_unit(ingredient.actual_unit) or None,
            rate=to_decimal(rate) if rate is not None and to_decimal(rate) > 0 else None,
        )

    @property
    def active(self) -> bool:
        return bool(self.display_unit and self.actual_unit and self.rate)

    def apply(self, quantity: Decimal, src: str, dst: str) -> Optional[Decimal]:
        if not self.active:
            return None
        if src == self.display_unit:
            in_actual = quantity * self.rate
            if dst == self.actual_unit:
                return in_actual
            return _convert_base(in_actual, self.actual_unit, dst)
        if dst == self.display_unit:
            in_actual = quantity if src == self.actual_unit else _convert_base(quantity, src, self.actual_unit)
            if in_actual is None:
                return None
            return in_actual / self.rate
        return None


def _convert_base(quantity: Decimal, src: str, dst: str) -> Optional[Decimal]:
    if src == dst:
        return quantity
    if src not in BASE_UNITS or dst not in BASE_UNITS:
        return None
    src_family, src_factor = BASE_UNITS[src]
    dst_family, dst_factor = BASE_UNITS[dst]
    if src_family != dst_family:
        return None
    return quantity * src_factor / dst_factor


def _convert_semantic(quantity: Decimal, src: str, dst: str) -> Optional[Decimal]:
    if src in SEMANTIC_MEASURES and dst in SEMANTIC_MEASURES:
        common = set(SEMANTIC_MEASURES[src]) & set(SEMANTIC_MEASURES[dst])
        if not common:
            return None
        base = sorted(common)[0]
        return quantity * SEMANTIC_MEASURES[src][base] / SEMANTIC_MEASURES[dst][base]

    if src in SEMANTIC_MEASURES:
        family = unit_family(dst)
        ratio = SEMANTIC_MEASURES[src].get(FAMILY_BASE.get(family, ""))
        if ratio is None:
            return None
        return _convert_base(quantity * ratio, FAMILY_BASE[family], dst)

    if dst in SEMANTIC_MEASURES:
        family = unit_family(src)
        ratio = SEMANTIC_MEASURES[dst].get(FAMILY_BASE.get(family, ""))
        if ratio is None:
            return None
        in_base = _convert_base(quantity, src, FAMILY_BASE[family])
        return None if in_base is None else in_base / ratio

    return None


def convert(
    quantity: Number,
    from_unit: str,
    to_unit: str,
    overrides: Optional[UnitOverrides] = None,
) -> Decimal:
    """Convert ``quantity`` from ``from_unit`` to ``to_unit``.

    Raises:
        ConversionError: no conversion path exists for the pair.
    """
    qty = to_decimal(quantity)
    src = normalize_unit(from_unit)
    dst = normalize_unit(to_unit)
    ingredient_id = overrides.ingredient_id if overrides else None

    if not src or not dst:
        raise ConversionError(from_unit or "", ingredient_id, to_unit)

    if src == dst:
        return qty

    if overrides is not None:
        result = overrides.apply(qty, src, dst)
        if result is not None:
            return result

    result = _convert_semantic(qty, src, dst)
    if result is not None:
        return result

    result = _convert_base(qty, src, dst)
    if result is not None:
        return result

    raise ConversionError(from_unit, ingredient_id, to_unit)
