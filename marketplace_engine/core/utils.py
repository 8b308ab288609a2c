import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Callable, TypeVar

import structlog

from marketplace_engine import config
from marketplace_engine.core.exceptions import StorageError, ValidationError

logger = structlog.get_logger()

T = TypeVar("T")


def new_id() -> str:
    """Generate a new unique identifier."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """Coerce a number or numeric string to Decimal, rejecting floats' binary noise."""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"{field} is not a number", details={field: str(value)})
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite", details={field: str(value)})
    return result


def quantize_money(amount: Decimal, quantum: Decimal = config.CURRENCY_QUANTUM) -> Decimal:
    """Round to the smallest currency unit, half-up."""
    return amount.quantize(quantum, rounding=ROUND_HALF_UP)


def retry_storage(
    fn: Callable[..., T],
    *args,
    attempts: int = config.STORAGE_RETRY_ATTEMPTS,
    backoff: float = config.STORAGE_RETRY_BACKOFF_SECONDS,
    **kwargs,
) -> T:
    """
    Call fn, retrying StorageError with exponential backoff.

    Other exceptions propagate immediately. The last StorageError is
    re-raised once attempts are exhausted.
    """
    for attempt in range(attempts):
        try:
            return fn(*args, **kwargs)
        except StorageError as e:
            if attempt >= attempts - 1:
                logger.error("Storage operation failed, retries exhausted",
                             operation=getattr(fn, "__name__", str(fn)),
                             attempts=attempts, error=str(e))
                raise
            wait_time = backoff * (2 ** attempt)
            logger.warning("Storage operation failed, retrying",
                           operation=getattr(fn, "__name__", str(fn)),
                           attempt=attempt + 1, attempts=attempts,
                           retry_in_seconds=wait_time, error=str(e))
            time.sleep(wait_time)
    raise StorageError("retry_storage called with no attempts")
