"""
Engine services: duplicate gate, pricing, listings, commission tiers, sale ledger and payouts.
"""
