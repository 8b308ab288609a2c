#!/usr/bin/env python3
"""
Development server runner for the Designer Marketplace Engine API.
Checks the environment and database before starting uvicorn with auto-reload.
"""

import importlib.util
import os
import sys
import uvicorn
from pathlib import Path

# Add the parent directory to Python path
sys.path.append(str(Path(__file__).parent.parent))

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()


def check_environment():
    """Check if all required environment variables are set."""
    required_vars = [
        "DATABASE_DSN",
    ]

    optional_vars = [
        "API_HOST",
        "API_PORT",
        "DEBUG",
        "DUPLICATE_SIMILARITY_THRESHOLD",
        "DUPLICATE_CHECK_FAIL_OPEN",
        "MINIMUM_PAYOUT",
        "SALES_VOLUME_BASIS",
        "PRICING_TABLE_PATH",
        "USE_GCS",
        "GCS_BUCKET_NAME",
        "NOTIFICATION_WEBHOOK_URL",
    ]

    missing_vars = [var for var in required_vars if not os.getenv(var)]
    if missing_vars:
        print(f"Missing required environment variables: {', '.join(missing_vars)}")
        print("Please check your .env file or environment configuration.")
        return False

    print("Required environment variables found")
    print("\nOptional configurations:")
    for var in optional_vars:
        print(f"  {var}: {os.getenv(var, 'Not set')}")
    return True


def check_dependencies():
    """Check if all required dependencies are available."""
    required_modules = [
        "fastapi",
        "uvicorn",
        "psycopg2",
        "pydantic",
        "PIL",  # Pillow imports as PIL
        "numpy",
        "requests",
        "structlog",
    ]

    missing_modules = [m for m in required_modules if importlib.util.find_spec(m) is None]
    if missing_modules:
        print(f"Missing required Python modules: {', '.join(missing_modules)}")
        print("Please run: pip install -e .")
        return False

    print("All required dependencies found")
    return True


def main():
    """Main entry point for development server."""
    print("Designer Marketplace Engine - Development Server")
    print("=" * 50)

    if not check_environment():
        sys.exit(1)

    if not check_dependencies():
        sys.exit(1)

    from marketplace_engine.core.database import PostgresStore
    if PostgresStore().check_connection():
        print("Database connection successful")
    else:
        print("Database connection failed")
        print("Please check DATABASE_DSN and run scripts/init_db.py")
        sys.exit(1)

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", 8000))
    debug = os.getenv("DEBUG", "true").lower() == "true"

    print(f"\nStarting development server...")
    print(f"   Host: {host}")
    print(f"   Port: {port}")
    print(f"   Debug: {debug}")
    print(f"   Docs: http://{host}:{port}/docs")
    print("=" * 50)

    try:
        uvicorn.run(
            "marketplace_engine.main:app",
            host=host,
            port=port,
            reload=debug,
            log_level="debug" if debug else "info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\nServer stopped by user")


if __name__ == "__main__":
    main()
