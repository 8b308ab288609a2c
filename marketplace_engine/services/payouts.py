"""
Periodic designer payout aggregation.

Each designer is settled in its own transaction: the designer lock is
taken, unpaid records dated before the period cutoff are re-read under
row locks, and either all of them are marked paid against a new batch or
none are. A failure for one designer never touches another designer's
committed batch.
"""

import re
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from typing import List, Optional

import structlog

from marketplace_engine import config
from marketplace_engine.core.exceptions import EngineError, ValidationError
from marketplace_engine.core.utils import quantize_money, retry_storage, utc_now
from marketplace_engine.models.ledger import (
    PayoutBatch,
    PayoutBatchResult,
    PayoutResultStatus,
    PayoutRun,
    PayoutStatus,
)

logger = structlog.get_logger()

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
_DAY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


class PayoutPeriod:
    """A payout period label and the exclusive cutoff it settles up to."""

    def __init__(self, label: str, cutoff: datetime):
        self.label = label
        self.cutoff = cutoff

    @classmethod
    def parse(cls, period: str) -> "PayoutPeriod":
        """
        "2024-03" settles everything before 2024-04-01T00:00Z;
        "2024-03-15" settles everything before 2024-03-16T00:00Z.
        """
        text = (period or "").strip()
        try:
            match = _MONTH_RE.match(text)
            if match:
                year, month = int(match.group(1)), int(match.group(2))
                if month == 12:
                    cutoff = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
                else:
                    cutoff = datetime(year, month + 1, 1, tzinfo=timezone.utc)
                # validates the month itself
                datetime(year, month, 1)
                return cls(text, cutoff)

            match = _DAY_RE.match(text)
            if match:
                day = datetime(int(match.group(1)), int(match.group(2)), int(match.group(3)), tzinfo=timezone.utc)
                return cls(text, day + timedelta(days=1))
        except ValueError:
            pass

        raise ValidationError("Payout period must be YYYY-MM or YYYY-MM-DD", details={"period": period})

    def __repr__(self):
        return f"PayoutPeriod({self.label!r}, cutoff={self.cutoff.isoformat()})"


class PayoutAggregator:
    def __init__(self, store, notifier=None, minimum_payout=None):
        self._store = store
        self._notifier = notifier
        self.minimum_payout = Decimal(config.MINIMUM_PAYOUT if minimum_payout is None else minimum_payout)

    def run_payout_batch(self, period) -> PayoutRun:
        """
        Settle every designer with unpaid records dated before the cutoff.

        Designers whose unpaid total is below the minimum are deferred and
        roll over to the next run. Running again for the same period with no
        new sales creates no batches.
        """
        if not isinstance(period, PayoutPeriod):
            period = PayoutPeriod.parse(period)

        designers = retry_storage(self._eligible_designers, period.cutoff)
        logger.info("Payout run started", period=period.label,
                    cutoff=period.cutoff.isoformat(), designers=len(designers))

        results: List[PayoutBatchResult] = []
        for designer_id in designers:
            try:
                result = retry_storage(self._settle_designer, designer_id, period)
            except EngineError as e:
                logger.error("Payout failed for designer", designer_id=designer_id,
                             period=period.label, error=str(e))
                result = PayoutBatchResult(
                    designer_id=designer_id,
                    status=PayoutResultStatus.FAILED,
                    error=str(e),
                )
            results.append(result)

            if result.batch is not None and self._notifier is not None:
                self._notifier.on_payout_batch_created(result.batch)

        run = PayoutRun(period=period.label, cutoff=period.cutoff, results=results)
        logger.info("Payout run completed",
                    period=period.label,
                    batches=len(run.batches),
                    deferred=sum(1 for r in results if r.status == PayoutResultStatus.DEFERRED),
                    failed=sum(1 for r in results if r.status == PayoutResultStatus.FAILED),
                    total_paid=str(sum((b.total_amount for b in run.batches), Decimal("0"))))
        return run

    def _eligible_designers(self, cutoff: datetime) -> List[str]:
        with self._store.transaction() as tx:
            return tx.designers_with_unpaid_records(cutoff)

    def _settle_designer(self, designer_id: str, period: PayoutPeriod) -> PayoutBatchResult:
        with self._store.transaction() as tx:
            tx.lock_designer(designer_id)
            records = tx.unpaid_records(designer_id, period.cutoff)
            total = quantize_money(sum((r.designer_earnings for r in records), Decimal("0")))

            if not records or total < self.minimum_payout:
                logger.info("Payout deferred below minimum", designer_id=designer_id,
                            period=period.label, unpaid_total=str(total),
                            minimum_payout=str(self.minimum_payout), records=len(records))
                return PayoutBatchResult(
                    designer_id=designer_id,
                    status=PayoutResultStatus.DEFERRED,
                    total_amount=total,
                    record_count=len(records),
                )

            batch = PayoutBatch(
                designer_id=designer_id,
                period=period.label,
                total_amount=total,
                record_ids=[r.id for r in records],
            )
            tx.insert_payout_batch(batch)
            updated = tx.mark_records_paid(batch.record_ids, batch.id)
            if updated != len(records):
                # Rows are locked, so a mismatch means a concurrent writer bypassed the lock
                raise EngineError("Payout record count changed during settlement",
                                  details={"designer_id": designer_id, "expected": len(records), "updated": updated})
            paid_at = utc_now()
            tx.mark_batch_paid(batch.id, paid_at)
            batch = batch.model_copy(update={"status": PayoutStatus.PAID.value, "paid_at": paid_at})

        logger.info("Payout batch created", designer_id=designer_id, batch_id=batch.id,
                    period=period.label, total_amount=str(total), records=len(records))
        return PayoutBatchResult(
            designer_id=designer_id,
            status=PayoutResultStatus.PAID,
            total_amount=total,
            record_count=len(records),
            batch=batch,
        )


def run_payout_batch(store, period, notifier=None, minimum_payout: Optional[Decimal] = None) -> PayoutRun:
    """Module-level convenience for scheduled jobs."""
    return PayoutAggregator(store, notifier=notifier, minimum_payout=minimum_payout).run_payout_batch(period)
