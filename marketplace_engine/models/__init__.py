"""
Pydantic models for catalog, ledger and duplicate-gate data structures.
"""
