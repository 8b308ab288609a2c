"""
Pydantic models for duplicate-gate matches and results.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class FingerprintMatch(BaseModel):
    """An accepted design whose fingerprint is close to the candidate's."""
    product_id: str = Field(..., description="Product the matched fingerprint belongs to")
    similarity: float = Field(..., ge=0.0, le=1.0, description="1 - hamming_distance / total_bits")


class DuplicateCheckResult(BaseModel):
    """Outcome of checking one candidate image against the fingerprint index."""
    is_duplicate: bool
    matches: List[FingerprintMatch] = Field(default=[], description="Matches above the threshold, best first")
    fingerprint: str = Field(..., description="64-bit difference hash as hex")
    threshold: float
    index_checked: bool = Field(default=True, description="False only when the index was skipped in fail-open mode")
    indexed_product_id: Optional[str] = Field(None, description="Product the fingerprint was stored under, if any")
