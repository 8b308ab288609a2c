"""
Pydantic models for commission tiers, the sale ledger and designer payouts.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from marketplace_engine.core.utils import new_id, utc_now


class CommissionTier(BaseModel):
    """A sales-volume bracket and the commission rate it grants on base price."""
    tier_name: str
    min_sales: Decimal = Field(..., description="Inclusive lower bound of cumulative sales")
    max_sales: Optional[Decimal] = Field(None, description="Exclusive upper bound, None for the top tier")
    commission_rate: Decimal = Field(..., description="Fraction of base price, 0 to 1")


class SaleKind(str, Enum):
    SALE = "sale"
    REVERSAL = "reversal"


class SaleRecord(BaseModel):
    """Immutable earnings breakdown of one completed sale (or its reversal)."""
    id: str = Field(default_factory=new_id)
    product_id: str
    designer_id: str
    sale_date: datetime = Field(default_factory=utc_now)
    base_price_at_sale: Decimal
    sale_price: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    designer_earnings: Decimal
    tier_name: str
    sale_reference: Optional[str] = Field(None, description="Caller's idempotency key, e.g. an order item id")
    kind: SaleKind = SaleKind.SALE
    reverses_record_id: Optional[str] = None
    paid: bool = False
    payout_batch_id: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)

    @property
    def designer_markup(self) -> Decimal:
        return self.sale_price - self.base_price_at_sale


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class PayoutBatch(BaseModel):
    """Settlement of one designer's unpaid sale records for a period."""
    id: str = Field(default_factory=new_id)
    designer_id: str
    period: str
    total_amount: Decimal
    record_ids: List[str]
    status: PayoutStatus = PayoutStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    paid_at: Optional[datetime] = None

    model_config = ConfigDict(use_enum_values=True)


class PayoutResultStatus(str, Enum):
    PAID = "paid"
    DEFERRED = "deferred"
    FAILED = "failed"


class PayoutBatchResult(BaseModel):
    """Outcome of the payout run for one designer."""
    designer_id: str
    status: PayoutResultStatus
    total_amount: Decimal = Decimal("0")
    record_count: int = 0
    batch: Optional[PayoutBatch] = None
    error: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)


class PayoutRun(BaseModel):
    """All per-designer results of one payout run."""
    period: str
    cutoff: datetime
    results: List[PayoutBatchResult] = Field(default_factory=list)

    @property
    def batches(self) -> List[PayoutBatch]:
        return [r.batch for r in self.results if r.batch is not None]


class DesignerEarningsSummary(BaseModel):
    """Earnings dashboard figures, all derived from the ledger."""
    designer_id: str
    sale_count: int
    cumulative_sales: Decimal
    total_earnings: Decimal
    paid_out: Decimal
    unpaid_balance: Decimal
    current_tier: CommissionTier
    next_tier: Optional[CommissionTier] = None
    sales_to_next_tier: Optional[Decimal] = None
