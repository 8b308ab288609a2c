import json
from decimal import Decimal

import pytest

from marketplace_engine.config import CategoryPricing, PricingTable, load_pricing_table
from marketplace_engine.core.exceptions import ConfigurationError, ValidationError
from marketplace_engine.services.pricing import PricingCalculator, compute_price, normalize_category


def test_compute_price_from_dimensions():
    # 100 x 50 x 80 cm = 0.4 m3; 0.4 * 150000 * 1.0 = 60000
    quote = compute_price("tables", {"width": 100, "depth": 50, "height": 80})
    assert quote.base_price == Decimal("60000")
    assert quote.selling_price == Decimal("72000")
    assert quote.markup_percent == Decimal("0.2000")


def test_category_minimum_applies_to_small_pieces():
    quote = compute_price("chairs", {"width": 10, "depth": 10, "height": 10})
    assert quote.base_price == Decimal("15000")
    assert quote.selling_price == Decimal("18000")


def test_category_names_are_normalized():
    assert normalize_category("Sculptural Art") == "sculptural-art"
    assert normalize_category(" sculptural_art ") == "sculptural-art"
    quote = compute_price("Sculptural Art", {"width": 100, "depth": 100, "height": 100})
    assert quote.base_price == Decimal("270000")


def test_admin_overrides():
    calc = PricingCalculator()
    quote = calc.compute_price("chairs", {"width": 50, "depth": 50, "height": 80},
                               override_base_price="40000", override_selling_price="40000")
    assert quote.base_price == Decimal("40000")
    assert quote.selling_price == Decimal("40000")
    assert quote.markup_percent == Decimal("0")


def test_wrapper_passes_selling_price_override():
    dimensions = {"width": 100, "depth": 50, "height": 80}
    quote = compute_price("tables", dimensions, override_selling_price="90000")
    assert quote.base_price == Decimal("60000")
    assert quote.selling_price == Decimal("90000")
    assert quote.markup_percent == Decimal("0.5000")


@pytest.mark.parametrize("dimensions", [
    {"width": 0, "depth": 50, "height": 80},
    {"width": 50, "depth": -1, "height": 80},
    {"width": 50, "depth": 50},
    {"width": "wide", "depth": 50, "height": 80},
])
def test_invalid_dimensions_rejected(dimensions):
    with pytest.raises(ValidationError):
        compute_price("chairs", dimensions)


def test_unknown_category_rejected():
    with pytest.raises(ValidationError) as excinfo:
        compute_price("spaceships", {"width": 1, "depth": 1, "height": 1})
    assert "chairs" in excinfo.value.details["known_categories"]


def test_injected_pricing_table():
    table = PricingTable(
        per_volume_rate=Decimal("1000"),
        margin_multiplier=Decimal("1.5"),
        price_quantum=Decimal("0.01"),
        categories={"lamps": CategoryPricing(multiplier=Decimal("2"), minimum=Decimal("10"))},
    )
    quote = compute_price("lamps", {"width": 100, "depth": 100, "height": 50}, table=table)
    assert quote.base_price == Decimal("1000.00")
    assert quote.selling_price == Decimal("1500.00")


def test_reprice_keeps_markup_percentage():
    calc = PricingCalculator()
    # 20000 -> 30000 is a 50% markup; it carries over to the new base
    quote = calc.reprice(Decimal("20000"), Decimal("30000"), "25000")
    assert quote.base_price == Decimal("25000")
    assert quote.selling_price == Decimal("37500")


def test_reprice_without_auto_markup_keeps_selling_price():
    calc = PricingCalculator()
    quote = calc.reprice(Decimal("20000"), Decimal("30000"), "25000", auto_apply_markup=False)
    assert quote.selling_price == Decimal("30000")
    assert quote.markup_percent == Decimal("0.2000")


def test_reprice_rejects_non_positive_base():
    with pytest.raises(ValidationError):
        PricingCalculator().reprice(Decimal("20000"), Decimal("30000"), "0")


def test_selling_below_base_is_not_listable():
    PricingCalculator.check_listable(Decimal("100"), Decimal("100"))
    with pytest.raises(ValidationError):
        PricingCalculator.check_listable(Decimal("100"), Decimal("99.99"))


def test_load_pricing_table_from_file(tmp_path):
    path = tmp_path / "pricing.json"
    path.write_text(json.dumps({
        "per_volume_rate": "2000",
        "categories": {"stools": {"multiplier": "1.1", "minimum": "500"}},
    }))
    table = load_pricing_table(str(path))
    assert table.per_volume_rate == Decimal("2000")
    assert list(table.categories) == ["stools"]


def test_load_pricing_table_rejects_bad_file(tmp_path):
    path = tmp_path / "pricing.json"
    path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_pricing_table(str(path))
