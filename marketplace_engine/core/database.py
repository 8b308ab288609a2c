import psycopg2
import structlog
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Tuple
from psycopg2 import errors, extras
from psycopg2.pool import PoolError, SimpleConnectionPool

from marketplace_engine import config
from marketplace_engine.core.exceptions import ConflictError, StorageError
from marketplace_engine.models.catalog import DesignSubmission, PricingHistoryEntry, ProductListing
from marketplace_engine.models.ledger import CommissionTier, PayoutBatch, SaleRecord

logger = structlog.get_logger()

# Two-int advisory key; that key space is separate from the bigint designer locks
FINGERPRINT_INDEX_LOCK = (1, 0)

# Global connection pool
_connection_pool = None


def initialize_connection_pool(dsn: Optional[str] = None):
    """Initialize the Postgres connection pool."""
    global _connection_pool
    if _connection_pool is None:
        try:
            _connection_pool = SimpleConnectionPool(
                config.DB_MIN_CONNECTIONS,
                config.DB_MAX_CONNECTIONS,
                dsn or config.DATABASE_DSN
            )
            logger.info("Postgres connection pool initialized",
                       min_connections=config.DB_MIN_CONNECTIONS,
                       max_connections=config.DB_MAX_CONNECTIONS)
        except psycopg2.Error as e:
            logger.error("Failed to initialize Postgres connection pool", error=str(e))
            raise StorageError(f"Database unreachable: {e}")


def close_connection_pool():
    global _connection_pool
    if _connection_pool is not None:
        _connection_pool.closeall()
        _connection_pool = None
        logger.info("Postgres connection pool closed")


@contextmanager
def get_db_connection():
    """Context manager for pooled database connections with automatic cleanup."""
    if _connection_pool is None:
        initialize_connection_pool()

    conn = None
    try:
        conn = _connection_pool.getconn()
    except (psycopg2.Error, PoolError) as e:
        logger.error("Failed to acquire database connection", error=str(e))
        raise StorageError(f"Database unreachable: {e}")

    try:
        yield conn
    finally:
        _connection_pool.putconn(conn)


class PostgresStore:
    """Relational store backing every engine component."""

    @contextmanager
    def transaction(self) -> Iterator["StoreSession"]:
        """
        Run a unit of work in one database transaction.

        Commits when the block exits normally and rolls back otherwise.
        Unique violations surface as ConflictError. Other driver errors
        surface as StorageError so callers can retry.
        """
        with get_db_connection() as conn:
            try:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    yield StoreSession(cur)
                conn.commit()
            except errors.UniqueViolation as e:
                conn.rollback()
                logger.warning("Write rejected by unique constraint", error=str(e))
                raise ConflictError(f"Conflicting write: {e}")
            except psycopg2.Error as e:
                conn.rollback()
                logger.error("Database transaction failed", error=str(e), pgcode=getattr(e, "pgcode", None))
                raise StorageError(f"Transaction failed: {e}")
            except Exception:
                conn.rollback()
                raise

    def check_connection(self) -> bool:
        """Check if the database connection is working."""
        try:
            with get_db_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    result = cur.fetchone()
            return result[0] == 1
        except (StorageError, psycopg2.Error) as e:
            logger.error("Database connection check failed", error=str(e))
            return False


class StoreSession:
    """Queries available inside a PostgresStore transaction."""

    def __init__(self, cur):
        self.cur = cur

    # Fingerprint index
    def lock_fingerprint_index(self) -> None:
        """Serialize index scans with their upserts until the transaction ends."""
        self.cur.execute("SELECT pg_advisory_xact_lock(%s, %s)", FINGERPRINT_INDEX_LOCK)

    def list_fingerprints(self, exclude_product_id: Optional[str] = None) -> List[Tuple[str, str]]:
        sql = "SELECT product_id, fingerprint FROM design_fingerprints"
        params = []
        if exclude_product_id:
            sql += " WHERE product_id != %s"
            params.append(exclude_product_id)
        self.cur.execute(sql, params)
        return [(row["product_id"], row["fingerprint"]) for row in self.cur.fetchall()]

    def upsert_fingerprint(self, product_id: str, fingerprint: str) -> None:
        self.cur.execute("""
            INSERT INTO design_fingerprints (product_id, fingerprint)
            VALUES (%s, %s)
            ON CONFLICT (product_id) DO UPDATE SET
                fingerprint = EXCLUDED.fingerprint,
                updated_at = NOW()
        """, (product_id, fingerprint))

    # Submissions
    def insert_submission(self, submission: DesignSubmission) -> None:
        self.cur.execute("""
            INSERT INTO design_submissions (
                id, designer_id, product_id, image_reference, fingerprint, status, matches, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            submission.id, submission.designer_id, submission.product_id,
            submission.image_reference, submission.fingerprint, submission.status,
            extras.Json(submission.matches), submission.created_at
        ))

    # Listings
    def insert_listing(self, listing: ProductListing) -> None:
        self.cur.execute("""
            INSERT INTO designer_products (
                id, designer_id, name, category, dimensions, base_price, selling_price,
                status, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            listing.id, listing.designer_id, listing.name, listing.category,
            extras.Json(listing.dimensions.model_dump(mode="json")),
            listing.base_price, listing.selling_price, listing.status,
            listing.created_at, listing.updated_at
        ))

    def get_listing(self, product_id: str, for_update: bool = False) -> Optional[ProductListing]:
        sql = """
            SELECT id, designer_id, name, category, dimensions, base_price, selling_price,
                   status, created_at, updated_at
            FROM designer_products
            WHERE id = %s
        """
        if for_update:
            sql += " FOR UPDATE"
        self.cur.execute(sql, (product_id,))
        row = self.cur.fetchone()
        return ProductListing(**row) if row else None

    def update_listing(self, listing: ProductListing) -> None:
        self.cur.execute("""
            UPDATE designer_products
            SET base_price = %s, selling_price = %s, status = %s, updated_at = %s
            WHERE id = %s
        """, (listing.base_price, listing.selling_price, listing.status, listing.updated_at, listing.id))

    def insert_pricing_history(self, entry: PricingHistoryEntry) -> None:
        self.cur.execute("""
            INSERT INTO product_pricing_history (
                id, product_id, old_base_price, new_base_price, old_selling_price,
                new_selling_price, reason, changed_by, changed_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            entry.id, entry.product_id, entry.old_base_price, entry.new_base_price,
            entry.old_selling_price, entry.new_selling_price, entry.reason,
            entry.changed_by, entry.changed_at
        ))

    # Commission tiers
    def load_commission_tiers(self) -> List[CommissionTier]:
        self.cur.execute("""
            SELECT tier_name, min_sales, max_sales, commission_rate
            FROM commission_tiers
            ORDER BY min_sales
        """)
        return [CommissionTier(**row) for row in self.cur.fetchall()]

    # Sale ledger
    def lock_designer(self, designer_id: str) -> None:
        """Serialize ledger writes for one designer until the transaction ends."""
        self.cur.execute("SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))", (designer_id,))

    def insert_sale_record(self, record: SaleRecord) -> None:
        self.cur.execute("""
            INSERT INTO sale_records (
                id, product_id, designer_id, sale_date, base_price_at_sale, sale_price,
                commission_rate, commission_amount, designer_earnings, tier_name,
                sale_reference, kind, reverses_record_id, paid, payout_batch_id
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            record.id, record.product_id, record.designer_id, record.sale_date,
            record.base_price_at_sale, record.sale_price, record.commission_rate,
            record.commission_amount, record.designer_earnings, record.tier_name,
            record.sale_reference, record.kind, record.reverses_record_id,
            record.paid, record.payout_batch_id
        ))

    def _fetch_sale_record(self, where: str, params: tuple, for_update: bool = False) -> Optional[SaleRecord]:
        sql = f"SELECT * FROM sale_records WHERE {where}"
        if for_update:
            sql += " FOR UPDATE"
        self.cur.execute(sql, params)
        row = self.cur.fetchone()
        return SaleRecord(**row) if row else None

    def get_sale_record(self, record_id: str, for_update: bool = False) -> Optional[SaleRecord]:
        return self._fetch_sale_record("id = %s", (record_id,), for_update)

    def find_sale_by_reference(self, sale_reference: str) -> Optional[SaleRecord]:
        return self._fetch_sale_record("sale_reference = %s AND kind = 'sale'", (sale_reference,))

    def find_reversal_of(self, record_id: str) -> Optional[SaleRecord]:
        return self._fetch_sale_record("reverses_record_id = %s", (record_id,))

    def designer_sales_volume(self, designer_id: str, basis: str = "markup") -> Decimal:
        """Cumulative sales volume derived from the ledger."""
        expression = "sale_price" if basis == "gross" else "sale_price - base_price_at_sale"
        self.cur.execute(
            f"SELECT COALESCE(SUM({expression}), 0) AS volume FROM sale_records WHERE designer_id = %s",
            (designer_id,)
        )
        return Decimal(self.cur.fetchone()["volume"])

    def designer_totals(self, designer_id: str) -> Dict[str, Decimal]:
        self.cur.execute("""
            SELECT
                COUNT(*) FILTER (WHERE kind = 'sale') AS sale_count,
                COALESCE(SUM(designer_earnings), 0) AS total_earnings,
                COALESCE(SUM(designer_earnings) FILTER (WHERE paid), 0) AS paid_out,
                COALESCE(SUM(designer_earnings) FILTER (WHERE NOT paid), 0) AS unpaid_balance
            FROM sale_records
            WHERE designer_id = %s
        """, (designer_id,))
        return dict(self.cur.fetchone())

    # Payouts
    def designers_with_unpaid_records(self, cutoff: datetime) -> List[str]:
        self.cur.execute("""
            SELECT DISTINCT designer_id
            FROM sale_records
            WHERE paid = FALSE AND sale_date < %s
            ORDER BY designer_id
        """, (cutoff,))
        return [row["designer_id"] for row in self.cur.fetchall()]

    def unpaid_records(self, designer_id: str, cutoff: datetime) -> List[SaleRecord]:
        self.cur.execute("""
            SELECT * FROM sale_records
            WHERE designer_id = %s AND paid = FALSE AND sale_date < %s
            ORDER BY sale_date, id
            FOR UPDATE
        """, (designer_id, cutoff))
        return [SaleRecord(**row) for row in self.cur.fetchall()]

    def insert_payout_batch(self, batch: PayoutBatch) -> None:
        self.cur.execute("""
            INSERT INTO payout_batches (
                id, designer_id, period, total_amount, record_ids, status, created_at, paid_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            batch.id, batch.designer_id, batch.period, batch.total_amount,
            batch.record_ids, batch.status, batch.created_at, batch.paid_at
        ))

    def mark_records_paid(self, record_ids: List[str], batch_id: str) -> int:
        self.cur.execute("""
            UPDATE sale_records
            SET paid = TRUE, payout_batch_id = %s
            WHERE id = ANY(%s) AND paid = FALSE
        """, (batch_id, record_ids))
        return self.cur.rowcount

    def mark_batch_paid(self, batch_id: str, paid_at: datetime) -> None:
        self.cur.execute("""
            UPDATE payout_batches SET status = 'paid', paid_at = %s WHERE id = %s
        """, (paid_at, batch_id))
