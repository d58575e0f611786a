#!/usr/bin/env python3
"""
Initialize the status store schema.

Creates the ``files`` table (and its indexes) in the configured database
if it does not exist yet, then lists the tables found.

Usage:
    python scripts/init_schema.py [--database-url sqlite:///ingest.db]
"""

import argparse
import sys
from typing import Optional

from loguru import logger
from sqlalchemy import inspect

from app.utils.config import get_settings
from app.utils.database import DatabaseClient


def verify_schema(client: DatabaseClient) -> list[str]:
    """Verify schema setup by listing tables and their indexes."""
    inspector = inspect(client.engine)
    tables = inspector.get_table_names()

    logger.info("=== Tables ===")
    for table in tables:
        indexes = [index["name"] for index in inspector.get_indexes(table)]
        logger.info(f"  {table}: indexes={indexes}")

    return tables


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Create the file ingest schema.")
    parser.add_argument("--database-url", default=None, help="SQLAlchemy database URL")
    args = parser.parse_args(argv)

    url = args.database_url or get_settings().database_url
    logger.info(f"Initializing schema at {url}")

    client = DatabaseClient(url)
    try:
        client.create_schema()
        tables = verify_schema(client)
    except Exception as e:
        logger.error(f"Schema initialization failed: {e}")
        return 1
    finally:
        client.close()

    if "files" not in tables:
        logger.error("Table 'files' missing after initialization")
        return 1

    logger.success("Schema initialized")
    return 0


if __name__ == "__main__":
    sys.exit(main())
