"""
Request and response bodies for the HTTP API.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from marketplace_engine.models.catalog import Dimensions


class PriceQuoteRequest(BaseModel):
    category: str = Field(..., description="Furniture category, e.g. chairs or sculptural-art")
    dimensions: Dimensions
    override_base_price: Optional[Decimal] = None
    override_selling_price: Optional[Decimal] = None


class CreateListingRequest(BaseModel):
    designer_id: str
    category: str
    dimensions: Dimensions
    name: str = ""
    product_id: Optional[str] = Field(None, description="Reuse the product id of an accepted submission")


class PriceUpdateRequest(BaseModel):
    base_price: Decimal
    auto_apply_markup: bool = Field(True, description="Keep the previous markup percentage on the new base")
    selling_price: Optional[Decimal] = None
    changed_by: Optional[str] = None
    reason: str = "admin_price_update"


class RecordSaleRequest(BaseModel):
    product_id: str
    sale_price: Decimal
    sale_reference: Optional[str] = Field(None, description="Idempotency key, e.g. the order item id")
    sale_date: Optional[datetime] = None


class ReverseSaleRequest(BaseModel):
    reason: str = ""


class PayoutRunRequest(BaseModel):
    period: str = Field(..., description="YYYY-MM or YYYY-MM-DD")


class ErrorResponse(BaseModel):
    """Error response model."""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Overall service status")
    version: str = Field(..., description="API version")
    components: Dict[str, Any] = Field(..., description="Component health status")
