"""
Manufacturing base price and designer selling price calculation.

The per-category multipliers and floors come from an injected PricingTable
so each environment (and each test) can supply its own.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple, Union

import structlog

from marketplace_engine.config import CategoryPricing, PricingTable
from marketplace_engine.core.exceptions import ValidationError
from marketplace_engine.core.utils import to_decimal
from marketplace_engine.models.catalog import Dimensions, PriceQuote

logger = structlog.get_logger()

MARKUP_QUANTUM = Decimal("0.0001")


def normalize_category(category: str) -> str:
    """'Sculptural Art' -> 'sculptural-art'."""
    return "-".join((category or "").strip().lower().replace("_", " ").split())


class PricingCalculator:
    def __init__(self, table: Optional[PricingTable] = None):
        self.table = table or PricingTable()

    def category_pricing(self, category: str) -> Tuple[str, CategoryPricing]:
        key = normalize_category(category)
        pricing = self.table.categories.get(key)
        if pricing is None:
            raise ValidationError(f"Unknown category: {category}",
                                  details={"known_categories": sorted(self.table.categories)})
        return key, pricing

    def round_price(self, amount: Decimal) -> Decimal:
        return amount.quantize(self.table.price_quantum, rounding=ROUND_HALF_UP)

    @staticmethod
    def markup_percent(base_price: Decimal, selling_price: Decimal) -> Decimal:
        """Markup as a fraction of base price (0.2 == 20%)."""
        if base_price <= 0:
            return Decimal("0")
        return ((selling_price - base_price) / base_price).quantize(MARKUP_QUANTUM, rounding=ROUND_HALF_UP)

    @staticmethod
    def _validate_dimensions(dimensions: Union[Dimensions, dict]) -> Dimensions:
        if isinstance(dimensions, dict):
            values = {k: to_decimal(dimensions.get(k), k) for k in ("width", "depth", "height")}
            dimensions = Dimensions(**values)
        for name in ("width", "depth", "height"):
            if getattr(dimensions, name) <= 0:
                raise ValidationError(f"Dimension {name} must be positive",
                                      details={name: str(getattr(dimensions, name))})
        return dimensions

    @staticmethod
    def _positive(value, field: str) -> Decimal:
        amount = to_decimal(value, field)
        if amount <= 0:
            raise ValidationError(f"{field} must be positive", details={field: str(amount)})
        return amount

    def base_price(self, category: str, dimensions: Union[Dimensions, dict]) -> Decimal:
        """volume * per-volume rate * category multiplier, floored at the category minimum."""
        _, pricing = self.category_pricing(category)
        dimensions = self._validate_dimensions(dimensions)
        computed = self.round_price(dimensions.volume_cubic_metres * self.table.per_volume_rate * pricing.multiplier)
        return max(computed, pricing.minimum)

    def compute_price(
        self,
        category: str,
        dimensions: Union[Dimensions, dict],
        override_base_price=None,
        override_selling_price=None,
    ) -> PriceQuote:
        """
        Suggested base and selling price for a design.

        Admin overrides replace the computed base price and/or the
        margin-derived selling price.
        """
        category_key, _ = self.category_pricing(category)
        dimensions = self._validate_dimensions(dimensions)

        if override_base_price is not None:
            base_price = self._positive(override_base_price, "override_base_price")
        else:
            base_price = self.base_price(category_key, dimensions)

        if override_selling_price is not None:
            selling_price = self._positive(override_selling_price, "override_selling_price")
        else:
            selling_price = self.round_price(base_price * self.table.margin_multiplier)

        quote = PriceQuote(
            base_price=base_price,
            selling_price=selling_price,
            markup_percent=self.markup_percent(base_price, selling_price),
        )
        logger.debug("Price computed", category=category_key,
                     volume_m3=str(dimensions.volume_cubic_metres),
                     base_price=str(quote.base_price), selling_price=str(quote.selling_price))
        return quote

    def reprice(
        self,
        base_price: Decimal,
        selling_price: Decimal,
        new_base_price,
        auto_apply_markup: bool = True,
        new_selling_price=None,
    ) -> PriceQuote:
        """
        Apply an admin base-price edit.

        With auto-apply the previous markup percentage is preserved
        (new_base * (1 + markup)), not the absolute margin. Without it the
        selling price is left alone unless the admin sets one explicitly.
        """
        new_base = self._positive(new_base_price, "base_price")

        if new_selling_price is not None:
            new_selling = self._positive(new_selling_price, "selling_price")
        elif auto_apply_markup:
            if base_price > 0:
                markup = (selling_price - base_price) / base_price
            else:
                markup = self.table.default_markup
            new_selling = self.round_price(new_base * (1 + markup))
        else:
            new_selling = selling_price

        return PriceQuote(
            base_price=new_base,
            selling_price=new_selling,
            markup_percent=self.markup_percent(new_base, new_selling),
        )

    @staticmethod
    def check_listable(base_price: Decimal, selling_price: Decimal) -> None:
        """Selling price may equal base price (zero markup) but never go below it."""
        if selling_price < base_price:
            raise ValidationError(
                "Selling price cannot be below the manufacturing base price",
                details={"base_price": str(base_price), "selling_price": str(selling_price)},
            )


def compute_price(
    category: str,
    dimensions,
    override_base_price=None,
    override_selling_price=None,
    table: Optional[PricingTable] = None,
) -> PriceQuote:
    """Convenience wrapper using the given (or default) pricing table."""
    return PricingCalculator(table).compute_price(
        category,
        dimensions,
        override_base_price=override_base_price,
        override_selling_price=override_selling_price,
    )
