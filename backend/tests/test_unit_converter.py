"""Tests for unit conversion."""

from decimal import Decimal
from itertools import permutations

import pytest

from brewledger.core.exceptions import ConversionError
from brewledger.services.unit_converter import (
    BASE_UNITS,
    UnitOverrides,
    convert,
    is_supported_unit,
    normalize_unit,
    quantize_quantity,
    unit_family,
)


class TestNormalizeUnit:
    """Unit name normalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("ML", "ml"),
        (" grams ", "g"),
        ("Kilogram", "kg"),
        ("litre", "l"),
        ("L", "l"),
        ("pieces", "pcs"),
        ("Shots", "shot"),
        ("pumps", "pump"),
        ("fl oz", "fl_oz"),
    ])
    def test_aliases(self, raw, expected):
        assert normalize_unit(raw) == expected

    def test_none_is_empty(self):
        assert normalize_unit(None) == ""

    def test_families(self):
        assert unit_family("ml") == "volume"
        assert unit_family("kg") == "weight"
        assert unit_family("pcs") == "count"
        assert unit_family("shot") == "measure"
        assert unit_family("dash") == "measure"
        assert unit_family("handful") is None

    def test_supported(self):
        assert is_supported_unit("Grams")
        assert is_supported_unit("serving")
        assert not is_supported_unit("bucket")


class TestConvert:
    """Conversion resolution order and results."""

    def test_same_unit_unchanged(self):
        assert convert(Decimal("12.5"), "ml", "ml") == Decimal("12.5")

    def test_same_unknown_unit_unchanged(self):
        assert convert(3, "bucket", "bucket") == Decimal("3")

    def test_volume_base_table(self):
        assert convert(Decimal("1.5"), "L", "ml") == Decimal("1500")
        assert convert(25, "cl", "ml") == Decimal("250")

    def test_weight_base_table(self):
        assert convert(36, "g", "kg") == Decimal("0.036")
        assert convert(Decimal("500"), "mg", "g") == Decimal("0.5")

    def test_shot_of_liquid_is_25_ml(self):
        assert convert(1, "shot", "ml") == Decimal("25")

    def test_shot_of_beans_is_18_g(self):
        assert convert(2, "shots", "kg") == Decimal("0.036")

    def test_pump_cup_sprinkle(self):
        assert convert(2, "pump", "ml") == Decimal("30")
        assert convert(1, "cup", "l") == Decimal("0.24")
        assert convert(4, "sprinkle", "g") == Decimal("2")

    def test_actual_to_semantic(self):
        assert convert(75, "ml", "shot") == Decimal("3")

    def test_semantic_to_semantic_via_shared_base(self):
        assert convert(1, "cup", "pump") == Decimal("16")

    def test_override_takes_precedence(self):
        overrides = UnitOverrides(ingredient_id=7, display_unit="shot", actual_unit="ml", rate=Decimal("30"))
        assert convert(1, "shot", "ml", overrides) == Decimal("30")

    def test_override_both_directions(self):
        overrides = UnitOverrides(ingredient_id=5, display_unit="dash", actual_unit="g", rate=Decimal("5"))
        assert convert(2, "dash", "g", overrides) == Decimal("10")
        assert convert(10, "g", "dash", overrides) == Decimal("2")

    def test_override_chains_within_family(self):
        overrides = UnitOverrides(ingredient_id=5, display_unit="scoop", actual_unit="g", rate=Decimal("30"))
        assert convert(2, "scoop", "kg", overrides) == Decimal("0.06")

    def test_override_only_units_need_override(self):
        with pytest.raises(ConversionError):
            convert(1, "dash", "g")

    def test_incompatible_families(self):
        with pytest.raises(ConversionError) as exc_info:
            convert(1, "kg", "ml", UnitOverrides(ingredient_id=9))
        assert exc_info.value.ingredient_id == 9
        assert exc_info.value.error_code == "UNIT_CONVERSION_ERROR"

    def test_unknown_unit_never_defaults_to_one(self):
        with pytest.raises(ConversionError) as exc_info:
            convert(1, "handful", "g")
        assert exc_info.value.unit == "handful"

    def test_pump_has_no_weight(self):
        with pytest.raises(ConversionError):
            convert(1, "pump", "g")

    def test_for_ingredient_ignores_non_positive_rate(self):
        class Stub:
            id = 3
            display_unit = "dash"
            actual_unit = "g"
            conversion_rate = Decimal("0")

        overrides = UnitOverrides.for_ingredient(Stub())
        assert not overrides.active
        assert overrides.ingredient_id == 3


class TestRoundTrip:
    """convert(convert(q, A, B), B, A) is q within the persisted precision."""

    @pytest.mark.parametrize("family", ["volume", "weight", "count"])
    def test_round_trip_within_family(self, family):
        units = [u for u, (f, _) in BASE_UNITS.items() if f == family]
        for a, b in permutations(units, 2):
            for q in (Decimal("0.5"), Decimal("1"), Decimal("37.125")):
                back = convert(convert(q, a, b), b, a)
                assert quantize_quantity(back) == quantize_quantity(q), (a, b, q)

    def test_round_trip_semantic(self):
        for unit, target in (("shot", "ml"), ("shot", "g"), ("pump", "ml"), ("cup", "l"), ("sprinkle", "kg")):
            back = convert(convert(Decimal("3"), unit, target), target, unit)
            assert quantize_quantity(back) == Decimal("3.000")


class TestQuantize:
    def test_half_up(self):
        assert quantize_quantity(Decimal("0.0005")) == Decimal("0.001")
        assert quantize_quantity(Decimal("1.2344")) == Decimal("1.234")

    def test_precision_argument(self):
        assert quantize_quantity(Decimal("2.55"), 1) == Decimal("2.6")

    def test_float_input_goes_through_str(self):
        assert quantize_quantity(0.1 + 0.2) == Decimal("0.300")
