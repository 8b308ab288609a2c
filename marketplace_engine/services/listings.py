"""
Product listing lifecycle: creation with a suggested price, admin price
overrides, approval and rejection.
"""

from typing import Optional, Union

import structlog

from marketplace_engine.core.exceptions import ConflictError, NotFoundError
from marketplace_engine.core.utils import utc_now
from marketplace_engine.models.catalog import (
    Dimensions,
    ListingStatus,
    PricingHistoryEntry,
    ProductListing,
)
from marketplace_engine.services.pricing import PricingCalculator, normalize_category

logger = structlog.get_logger()


class ListingService:
    def __init__(self, store, calculator: Optional[PricingCalculator] = None):
        self._store = store
        self.calculator = calculator or PricingCalculator()

    @staticmethod
    def _load(tx, product_id: str) -> ProductListing:
        listing = tx.get_listing(product_id, for_update=True)
        if listing is None:
            raise NotFoundError(f"Product not found: {product_id}")
        return listing

    def create_listing(
        self,
        designer_id: str,
        category: str,
        dimensions: Union[Dimensions, dict],
        name: str = "",
        product_id: Optional[str] = None,
    ) -> ProductListing:
        """Create a pending listing priced from category and dimensions."""
        quote = self.calculator.compute_price(category, dimensions)
        if isinstance(dimensions, dict):
            dimensions = Dimensions(**dimensions)

        fields = dict(
            designer_id=designer_id,
            name=name,
            category=normalize_category(category),
            dimensions=dimensions,
            base_price=quote.base_price,
            selling_price=quote.selling_price,
        )
        if product_id:
            fields["id"] = product_id
        listing = ProductListing(**fields)

        with self._store.transaction() as tx:
            tx.insert_listing(listing)

        logger.info("Listing created", product_id=listing.id, designer_id=designer_id,
                    category=listing.category, base_price=str(listing.base_price),
                    selling_price=str(listing.selling_price))
        return listing

    def update_price(
        self,
        product_id: str,
        base_price,
        auto_apply_markup: bool = True,
        selling_price=None,
        changed_by: Optional[str] = None,
        reason: str = "admin_price_update",
    ) -> ProductListing:
        """
        Admin price override before approval.

        Raises:
            ConflictError: the listing is already approved; prices are frozen.
        """
        with self._store.transaction() as tx:
            listing = self._load(tx, product_id)
            if listing.status == ListingStatus.APPROVED:
                raise ConflictError("Prices cannot be edited after approval",
                                    details={"product_id": product_id})

            quote = self.calculator.reprice(
                listing.base_price,
                listing.selling_price,
                base_price,
                auto_apply_markup=auto_apply_markup,
                new_selling_price=selling_price,
            )
            updated = listing.model_copy(update={
                "base_price": quote.base_price,
                "selling_price": quote.selling_price,
                "updated_at": utc_now(),
            })
            tx.update_listing(updated)
            tx.insert_pricing_history(PricingHistoryEntry(
                product_id=product_id,
                old_base_price=listing.base_price,
                new_base_price=updated.base_price,
                old_selling_price=listing.selling_price,
                new_selling_price=updated.selling_price,
                reason=reason,
                changed_by=changed_by,
            ))

        logger.info("Listing price updated",
                    product_id=product_id,
                    auto_apply_markup=auto_apply_markup,
                    base_price=f"{listing.base_price} -> {updated.base_price}",
                    selling_price=f"{listing.selling_price} -> {updated.selling_price}",
                    markup_percent=str(quote.markup_percent))
        return updated

    def approve_listing(self, product_id: str) -> ProductListing:
        """Approve for sale; selling price must not be below base price."""
        with self._store.transaction() as tx:
            listing = self._load(tx, product_id)
            if listing.status == ListingStatus.APPROVED:
                return listing
            self.calculator.check_listable(listing.base_price, listing.selling_price)
            approved = listing.model_copy(update={"status": ListingStatus.APPROVED.value, "updated_at": utc_now()})
            tx.update_listing(approved)

        logger.info("Listing approved", product_id=product_id,
                    base_price=str(approved.base_price), selling_price=str(approved.selling_price))
        return approved

    def reject_listing(self, product_id: str) -> ProductListing:
        with self._store.transaction() as tx:
            listing = self._load(tx, product_id)
            if listing.status == ListingStatus.APPROVED:
                raise ConflictError("Approved listings cannot be rejected",
                                    details={"product_id": product_id})
            rejected = listing.model_copy(update={"status": ListingStatus.REJECTED.value, "updated_at": utc_now()})
            tx.update_listing(rejected)

        logger.info("Listing rejected", product_id=product_id)
        return rejected
