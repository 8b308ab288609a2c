"""
Designer Marketplace Engine - Earnings & Submission Integrity

Duplicate-design gating, listing pricing, tiered commissions, the append-only
sale ledger and periodic designer payouts for the furniture marketplace.
"""

__version__ = "1.0.0"
__author__ = "Designer Marketplace Team"
__description__ = "Designer earnings and submission-integrity engine"
