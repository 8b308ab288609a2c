import io
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal

import numpy as np
import pytest
from PIL import Image

from marketplace_engine.core.exceptions import ConflictError, StorageError
from marketplace_engine.services.listings import ListingService
from marketplace_engine.services.tiers import DEFAULT_TIERS

KEYED_TABLES = ("fingerprints", "submissions", "listings", "sales", "batches")


class InMemorySession:
    """
    Same queries as the Postgres StoreSession.

    Reads see committed rows plus this transaction's own buffered writes, as
    under READ COMMITTED. Nothing serializes two sessions except the
    advisory-style locks taken through lock_designer and
    lock_fingerprint_index, which are held until the transaction ends.
    """

    def __init__(self, store):
        self._store = store
        self.writes = {table: {} for table in KEYED_TABLES}
        self.new_listing_ids = set()
        self.history = []
        self.held = []

    def _rows(self, table):
        rows = self._store.committed(table)
        rows.update(self.writes[table])
        return rows

    def _hold(self, lock):
        if lock not in self.held:
            lock.acquire()
            self.held.append(lock)

    def release(self):
        while self.held:
            self.held.pop().release()

    def lock_fingerprint_index(self):
        self._hold(self._store.index_lock)

    def list_fingerprints(self, exclude_product_id=None):
        rows = [(pid, fp) for pid, fp in self._rows("fingerprints").items() if pid != exclude_product_id]
        self._store.pause()
        return rows

    def upsert_fingerprint(self, product_id, fingerprint):
        self.writes["fingerprints"][product_id] = fingerprint

    def insert_submission(self, submission):
        self.writes["submissions"][submission.id] = submission

    def insert_listing(self, listing):
        if listing.id in self._rows("listings"):
            raise ConflictError(f"Conflicting write: duplicate key {listing.id}")
        self.new_listing_ids.add(listing.id)
        self.writes["listings"][listing.id] = listing

    def get_listing(self, product_id, for_update=False):
        return self._rows("listings").get(product_id)

    def update_listing(self, listing):
        self.writes["listings"][listing.id] = listing

    def insert_pricing_history(self, entry):
        self.history.append(entry)

    def load_commission_tiers(self):
        return sorted(self._store.committed_tiers(), key=lambda t: t.min_sales)

    def lock_designer(self, designer_id):
        if designer_id in self._store.failing_designers:
            raise StorageError(f"Transaction failed: could not lock designer {designer_id}")
        self._hold(self._store.designer_lock(designer_id))

    def insert_sale_record(self, record):
        self._store.check_unique_sale(record, self._rows("sales").values())
        self.writes["sales"][record.id] = record

    def get_sale_record(self, record_id, for_update=False):
        return self._rows("sales").get(record_id)

    def find_sale_by_reference(self, sale_reference):
        for record in self._rows("sales").values():
            if record.kind == "sale" and record.sale_reference == sale_reference:
                return record
        return None

    def find_reversal_of(self, record_id):
        for record in self._rows("sales").values():
            if record.reverses_record_id == record_id:
                return record
        return None

    def _designer_records(self, designer_id):
        return [r for r in self._rows("sales").values() if r.designer_id == designer_id]

    def designer_sales_volume(self, designer_id, basis="markup"):
        total = Decimal("0")
        for r in self._designer_records(designer_id):
            total += r.sale_price if basis == "gross" else r.sale_price - r.base_price_at_sale
        self._store.pause()
        return total

    def designer_totals(self, designer_id):
        records = self._designer_records(designer_id)
        return {
            "sale_count": sum(1 for r in records if r.kind == "sale"),
            "total_earnings": sum((r.designer_earnings for r in records), Decimal("0")),
            "paid_out": sum((r.designer_earnings for r in records if r.paid), Decimal("0")),
            "unpaid_balance": sum((r.designer_earnings for r in records if not r.paid), Decimal("0")),
        }

    def designers_with_unpaid_records(self, cutoff):
        return sorted({r.designer_id for r in self._rows("sales").values() if not r.paid and r.sale_date < cutoff})

    def unpaid_records(self, designer_id, cutoff):
        records = [r for r in self._designer_records(designer_id) if not r.paid and r.sale_date < cutoff]
        return sorted(records, key=lambda r: (r.sale_date, r.id))

    def insert_payout_batch(self, batch):
        self.writes["batches"][batch.id] = batch

    def mark_records_paid(self, record_ids, batch_id):
        sales = self._rows("sales")
        updated = 0
        for record_id in record_ids:
            record = sales.get(record_id)
            if record is not None and not record.paid:
                self.writes["sales"][record_id] = record.model_copy(update={"paid": True, "payout_batch_id": batch_id})
                updated += 1
        return updated

    def mark_batch_paid(self, batch_id, paid_at):
        batch = self._rows("batches")[batch_id]
        self.writes["batches"][batch_id] = batch.model_copy(update={"status": "paid", "paid_at": paid_at})


class InMemoryStore:
    """
    Transactional test double for PostgresStore.

    Writes are buffered per transaction and applied when the block exits
    cleanly; unique constraints are checked again at commit. Locks are
    released only after the commit is visible.
    """

    def __init__(self, tiers=None):
        self._mutex = threading.Lock()
        self._designer_locks = {}
        self.index_lock = threading.Lock()
        self.data = {
            "fingerprints": {},
            "submissions": {},
            "listings": {},
            "pricing_history": [],
            "tiers": list(DEFAULT_TIERS if tiers is None else tiers),
            "sales": {},
            "batches": {},
        }
        self.unavailable = False
        self.failing_designers = set()
        # Seconds each volume or index read waits before returning, to widen races
        self.read_delay = 0

    @contextmanager
    def transaction(self):
        if self.unavailable:
            raise StorageError("Database unreachable: connection refused")
        session = InMemorySession(self)
        try:
            yield session
            self._commit(session)
        finally:
            session.release()

    def _commit(self, session):
        with self._mutex:
            for record in session.writes["sales"].values():
                self.check_unique_sale(record, self.data["sales"].values())
            for listing_id in session.new_listing_ids:
                if listing_id in self.data["listings"]:
                    raise ConflictError(f"Conflicting write: duplicate key {listing_id}")
            for table, rows in session.writes.items():
                self.data[table].update(rows)
            self.data["pricing_history"].extend(session.history)

    @staticmethod
    def check_unique_sale(record, existing):
        for other in existing:
            if other.id == record.id:
                continue
            if (record.kind == "sale" and record.sale_reference and other.kind == "sale"
                    and other.sale_reference == record.sale_reference):
                raise ConflictError("Conflicting write: duplicate sale_reference")
            if record.reverses_record_id and other.reverses_record_id == record.reverses_record_id:
                raise ConflictError("Conflicting write: sale already reversed")

    def committed(self, table):
        with self._mutex:
            return dict(self.data[table])

    def committed_tiers(self):
        with self._mutex:
            return list(self.data["tiers"])

    def designer_lock(self, designer_id):
        with self._mutex:
            return self._designer_locks.setdefault(designer_id, threading.Lock())

    def pause(self):
        if self.read_delay:
            threading.Event().wait(self.read_delay)

    def check_connection(self):
        return not self.unavailable

    # Committed-state helpers for assertions
    @property
    def sales(self):
        return list(self.data["sales"].values())

    @property
    def batches(self):
        return list(self.data["batches"].values())

    @property
    def submissions(self):
        return list(self.data["submissions"].values())


def image_bytes(pixels, fmt="PNG"):
    """Encode a 2-D uint8 array as an image file."""
    buffer = io.BytesIO()
    Image.fromarray(np.asarray(pixels, dtype=np.uint8)).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr("marketplace_engine.core.utils.time.sleep", lambda seconds: None)


@pytest.fixture
def horizontal_gradient():
    """Brightness rises left to right: every dHash bit set."""
    return image_bytes(np.tile(np.arange(9) * 30, (8, 1)))


@pytest.fixture
def vertical_gradient():
    """Brightness rises top to bottom only: no dHash bit set."""
    return image_bytes(np.tile((np.arange(8) * 30).reshape(8, 1), (1, 9)))


@pytest.fixture
def design_image():
    """A larger structured image standing in for a design photo."""
    y, x = np.mgrid[0:160, 0:180]
    return image_bytes((np.sin(x / 12.0) * 60 + np.cos(y / 9.0) * 60 + 128).clip(0, 255))


@pytest.fixture
def approved_listing(store):
    """Factory: an approved listing with explicit base and selling prices."""
    service = ListingService(store)

    def make(designer_id="designer-1", base_price="50000", selling_price="75000", category="chairs"):
        listing = service.create_listing(designer_id, category, {"width": 50, "depth": 50, "height": 80})
        service.update_price(listing.id, base_price, selling_price=selling_price)
        return service.approve_listing(listing.id)

    return make


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)
