"""
Pydantic models for design submissions, product listings and their pricing.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from marketplace_engine.core.utils import new_id, utc_now


class SubmissionStatus(str, Enum):
    """Lifecycle of a design submission."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED_DUPLICATE = "rejected_duplicate"


class ListingStatus(str, Enum):
    """Admin review status of a product listing."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Dimensions(BaseModel):
    """Physical dimensions in centimetres."""
    width: Decimal
    depth: Decimal
    height: Decimal

    @property
    def volume_cubic_metres(self) -> Decimal:
        return self.width * self.depth * self.height / Decimal(1_000_000)


class PriceQuote(BaseModel):
    """Result of a pricing computation."""
    base_price: Decimal = Field(..., description="Manufacturing base price")
    selling_price: Decimal = Field(..., description="Designer selling price")
    markup_percent: Decimal = Field(..., description="(selling - base) / base")


class DesignSubmission(BaseModel):
    """A designer's image submission and its duplicate-gate outcome."""
    id: str = Field(default_factory=new_id)
    designer_id: str
    product_id: str
    image_reference: str
    fingerprint: str
    status: SubmissionStatus = SubmissionStatus.PENDING
    matches: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(use_enum_values=True)


class ProductListing(BaseModel):
    """A designer's product as listed (or awaiting listing) on the marketplace."""
    id: str = Field(default_factory=new_id)
    designer_id: str
    name: str = ""
    category: str
    dimensions: Dimensions
    base_price: Decimal
    selling_price: Decimal
    status: ListingStatus = ListingStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(use_enum_values=True)


class PricingHistoryEntry(BaseModel):
    """Audit row for an admin price change."""
    id: str = Field(default_factory=new_id)
    product_id: str
    old_base_price: Decimal
    new_base_price: Decimal
    old_selling_price: Decimal
    new_selling_price: Decimal
    reason: str = "admin_price_update"
    changed_by: Optional[str] = None
    changed_at: datetime = Field(default_factory=utc_now)
