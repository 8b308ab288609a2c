"""
Sale ledger: the append-only source of truth for designer earnings.

Each sale is recorded in a single store transaction that reads the
listing's base price, resolves the designer's commission tier from the
volume recorded *before* the sale, and writes one immutable SaleRecord.
Cumulative sales are always derived from the ledger (SUM over records),
never kept in a mutable counter; the designer lock held for the duration
of the transaction serializes concurrent sales for the same designer.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog

from marketplace_engine import config
from marketplace_engine.core.exceptions import (
    ConflictError,
    LedgerArithmeticError,
    NotFoundError,
    ValidationError,
)
from marketplace_engine.core.utils import quantize_money, to_decimal
from marketplace_engine.models.catalog import ListingStatus
from marketplace_engine.models.ledger import (
    CommissionTier,
    DesignerEarningsSummary,
    SaleKind,
    SaleRecord,
)
from marketplace_engine.services.tiers import TierTable

logger = structlog.get_logger()

VOLUME_BASES = ("markup", "gross")


def compute_earnings(base_price: Decimal, sale_price: Decimal, commission_rate: Decimal):
    """
    Commission and designer earnings for one sale.

    Returns:
        (commission_amount, designer_earnings), both rounded half-up to the
        smallest currency unit.

    Raises:
        LedgerArithmeticError: earnings would be negative.
    """
    commission_amount = quantize_money(base_price * commission_rate)
    designer_earnings = quantize_money((sale_price - base_price) + commission_amount)
    if designer_earnings < 0:
        raise LedgerArithmeticError(
            "Designer earnings would be negative",
            details={
                "base_price": str(base_price),
                "sale_price": str(sale_price),
                "commission_rate": str(commission_rate),
                "designer_earnings": str(designer_earnings),
            },
        )
    return commission_amount, designer_earnings


class SaleLedger:
    def __init__(self, store, notifier=None, volume_basis: Optional[str] = None):
        """
        Args:
            store: relational store exposing transaction()
            notifier: receives on_sale_recorded after each commit
            volume_basis: "markup" counts sale_price - base_price towards
                tier volume; "gross" counts the full sale_price
        """
        self._store = store
        self._notifier = notifier
        self.volume_basis = volume_basis or config.SALES_VOLUME_BASIS
        if self.volume_basis not in VOLUME_BASES:
            raise ValueError(f"volume_basis must be one of {VOLUME_BASES}")

    def record_sale(
        self,
        product_id: str,
        sale_price,
        sale_reference: Optional[str] = None,
        sale_date: Optional[datetime] = None,
    ) -> SaleRecord:
        """
        Record one completed sale atomically.

        A repeated sale_reference returns the already-recorded sale instead
        of writing a second one, so callers can retry after a timeout.
        """
        sale_price = to_decimal(sale_price, "sale_price")
        if sale_price <= 0:
            raise ValidationError("sale_price must be positive", details={"sale_price": str(sale_price)})

        try:
            with self._store.transaction() as tx:
                listing = tx.get_listing(product_id, for_update=True)
                if listing is None:
                    raise NotFoundError(f"Product not found: {product_id}")
                if listing.status != ListingStatus.APPROVED:
                    raise ConflictError("Product is not approved for sale",
                                        details={"product_id": product_id, "status": listing.status})

                tx.lock_designer(listing.designer_id)

                if sale_reference:
                    existing = tx.find_sale_by_reference(sale_reference)
                    if existing is not None:
                        if existing.product_id != product_id:
                            raise ConflictError("Sale reference already used for another product",
                                                details={"sale_reference": sale_reference,
                                                         "product_id": existing.product_id})
                        logger.info("Sale already recorded for reference",
                                    sale_reference=sale_reference, record_id=existing.id)
                        return existing

                prior_volume = tx.designer_sales_volume(listing.designer_id, self.volume_basis)
                tier = TierTable.from_rows(tx.load_commission_tiers()).resolve(prior_volume)

                base_price = listing.base_price
                commission_amount, designer_earnings = compute_earnings(base_price, sale_price, tier.commission_rate)

                fields = dict(
                    product_id=product_id,
                    designer_id=listing.designer_id,
                    base_price_at_sale=base_price,
                    sale_price=sale_price,
                    commission_rate=tier.commission_rate,
                    commission_amount=commission_amount,
                    designer_earnings=designer_earnings,
                    tier_name=tier.tier_name,
                    sale_reference=sale_reference,
                )
                if sale_date is not None:
                    fields["sale_date"] = sale_date
                record = SaleRecord(**fields)
                tx.insert_sale_record(record)
        except LedgerArithmeticError as e:
            logger.critical("Ledger invariant violated, sale rejected",
                            product_id=product_id, details=e.details)
            raise

        logger.info("Sale recorded",
                    record_id=record.id,
                    product_id=product_id,
                    designer_id=record.designer_id,
                    tier=tier.tier_name,
                    prior_volume=str(prior_volume),
                    sale_price=str(sale_price),
                    commission_amount=str(commission_amount),
                    designer_earnings=str(designer_earnings))

        if self._notifier is not None:
            self._notifier.on_sale_recorded(record)
        return record

    def reverse_sale(self, record_id: str, reason: str = "") -> SaleRecord:
        """
        Write a compensating record that negates an earlier sale.

        Records are never edited; a reversal nets the sale out of cumulative
        volume and, if the sale was already paid, out of the next payout.
        """
        with self._store.transaction() as tx:
            # Designer lock before the row lock, the same order payouts take them
            original = tx.get_sale_record(record_id)
            if original is None:
                raise NotFoundError(f"Sale record not found: {record_id}")
            tx.lock_designer(original.designer_id)
            original = tx.get_sale_record(record_id, for_update=True)

            if original.kind != SaleKind.SALE:
                raise ConflictError("Reversal records cannot be reversed", details={"record_id": record_id})
            if tx.find_reversal_of(record_id) is not None:
                raise ConflictError("Sale has already been reversed", details={"record_id": record_id})

            reversal = SaleRecord(
                product_id=original.product_id,
                designer_id=original.designer_id,
                base_price_at_sale=-original.base_price_at_sale,
                sale_price=-original.sale_price,
                commission_rate=original.commission_rate,
                commission_amount=-original.commission_amount,
                designer_earnings=-original.designer_earnings,
                tier_name=original.tier_name,
                kind=SaleKind.REVERSAL,
                reverses_record_id=original.id,
            )
            tx.insert_sale_record(reversal)

        logger.info("Sale reversed", record_id=record_id, reversal_id=reversal.id,
                    designer_id=reversal.designer_id, reason=reason,
                    original_paid=original.paid)
        return reversal

    def cumulative_sales(self, designer_id: str) -> Decimal:
        with self._store.transaction() as tx:
            return tx.designer_sales_volume(designer_id, self.volume_basis)

    def current_tier(self, designer_id: str) -> CommissionTier:
        with self._store.transaction() as tx:
            volume = tx.designer_sales_volume(designer_id, self.volume_basis)
            return TierTable.from_rows(tx.load_commission_tiers()).resolve(volume)

    def designer_summary(self, designer_id: str) -> DesignerEarningsSummary:
        """Earnings dashboard figures for one designer."""
        with self._store.transaction() as tx:
            volume = tx.designer_sales_volume(designer_id, self.volume_basis)
            totals = tx.designer_totals(designer_id)
            table = TierTable.from_rows(tx.load_commission_tiers())

        current = table.resolve(volume)
        upcoming = table.next_tier(current)
        return DesignerEarningsSummary(
            designer_id=designer_id,
            sale_count=totals["sale_count"],
            cumulative_sales=volume,
            total_earnings=totals["total_earnings"],
            paid_out=totals["paid_out"],
            unpaid_balance=totals["unpaid_balance"],
            current_tier=current,
            next_tier=upcoming,
            sales_to_next_tier=(upcoming.min_sales - volume) if upcoming else None,
        )
