#!/usr/bin/env python3
"""
Database initialization script for the Designer Marketplace Engine.
Creates the schema and seeds the default commission tiers.
"""

import sys
import psycopg2
from pathlib import Path

# Add the parent directory to Python path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

import structlog

from marketplace_engine import config
from marketplace_engine.services.tiers import DEFAULT_TIERS, TierTable

# Configure basic logging for the script
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

SCHEMA_FILE = Path(__file__).parent.parent / "schema.sql"


def run_sql_file(cursor, filepath):
    """Execute SQL commands from a file."""
    with open(filepath, 'r') as f:
        sql_content = f.read()
    logger.info("Executing SQL file", path=str(filepath))
    cursor.execute(sql_content)


def seed_commission_tiers(cursor, tiers=DEFAULT_TIERS):
    """Insert the tier table unless one is already configured."""
    cursor.execute("SELECT COUNT(*) FROM commission_tiers")
    if cursor.fetchone()[0]:
        logger.info("Commission tiers already present, leaving them untouched")
        return

    # Fails with ConfigurationError before anything is written
    table = TierTable(tiers)
    for tier in table.tiers:
        cursor.execute("""
            INSERT INTO commission_tiers (tier_name, min_sales, max_sales, commission_rate)
            VALUES (%s, %s, %s, %s)
        """, (tier.tier_name, tier.min_sales, tier.max_sales, tier.commission_rate))
        logger.info("Seeded commission tier", tier=tier.tier_name,
                    min_sales=str(tier.min_sales), max_sales=str(tier.max_sales),
                    rate=str(tier.commission_rate))


def initialize_database(dsn=None):
    """Create tables and seed reference data in one transaction."""
    if not SCHEMA_FILE.exists():
        logger.error("Schema file not found", path=str(SCHEMA_FILE))
        return False

    try:
        conn = psycopg2.connect(dsn or config.DATABASE_DSN)
    except psycopg2.OperationalError as e:
        logger.error("Database connection failed", error=str(e))
        return False

    try:
        with conn:
            with conn.cursor() as cursor:
                cursor.execute("SELECT version();")
                logger.info("Connected to database", version=cursor.fetchone()[0])
                run_sql_file(cursor, SCHEMA_FILE)
                seed_commission_tiers(cursor)
        logger.info("Database initialization completed")
        return True
    except psycopg2.Error as e:
        logger.error("Database initialization failed", error=str(e))
        return False
    finally:
        conn.close()


if __name__ == "__main__":
    sys.exit(0 if initialize_database() else 1)
