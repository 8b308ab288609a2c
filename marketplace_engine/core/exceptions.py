"""
Exception hierarchy for the marketplace engine.

- ValidationError / ConflictError: expected outcomes surfaced to the caller
- NotFoundError: unknown product, designer, record or image reference
- StorageError: backing store unreachable or a transaction failed (retryable)
- ConfigurationError: tier table or pricing table is empty or malformed
- LedgerArithmeticError: a computed ledger invariant was violated (fatal for that sale)
"""

from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """Base exception for the marketplace engine."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(EngineError):
    """Malformed input: unreadable image, non-positive dimensions, unknown category."""
    pass


class NotFoundError(EngineError):
    """Referenced entity does not exist."""
    pass


class ConflictError(EngineError):
    """Operation conflicts with current state."""
    pass


class DuplicateDesignError(ConflictError):
    """Submitted design is too similar to an already accepted design."""

    def __init__(self, message: str, matches: List[Dict[str, Any]]):
        self.matches = matches
        super().__init__(message, details={"matches": matches})


class StorageError(EngineError):
    """Backing store unreachable or transaction failed."""
    pass


class ConfigurationError(EngineError):
    """Reference data (tiers, pricing) is missing or malformed."""
    pass


class LedgerArithmeticError(EngineError, ArithmeticError):
    """
    A ledger invariant such as non-negative designer earnings was violated.

    Never caught and ignored: it points at a pricing or tier-resolution bug
    upstream. The offending sale is rejected as a whole.
    """
    pass
