#!/usr/bin/env python3
"""
Database initialization script for the photo library.

This script:
1. Verifies the database connection
2. Creates the images, image_analysis and image_metadata tables
3. Reads the schema back and reports tables and indexes, including
   the (original_name, file_size) index used for duplicate detection

Usage:
    python init_db.py [--verbose] [--check-only]
"""

import argparse
import logging
import sys

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from db.database import (
    dispose_engine,
    get_db_info,
    get_engine,
    init_db,
    verify_connection,
)
from db.models import Base

logger = logging.getLogger(__name__)

DUPLICATE_KEY_INDEX = "idx_images_duplicate_key"
DUPLICATE_KEY_COLUMNS = ["original_name", "file_size"]


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Initialize the photo library database"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show detailed output including connection info"
    )
    parser.add_argument(
        "--check-only",
        action="store_true",
        help="Only verify the connection and report the schema, don't create tables"
    )
    return parser


# ────────────────────────────────────────────────────────────────────────────────
# Schema report
# ────────────────────────────────────────────────────────────────────────────────

def describe_schema(engine: Engine) -> dict[str, list[str]]:
    """
    Read the live schema for the tables this project defines.

    Returns:
        Mapping of existing table name to its index descriptions, e.g.
        "idx_images_duplicate_key (original_name, file_size)".
    """
    inspector = inspect(engine)
    existing = set(inspector.get_table_names())

    schema: dict[str, list[str]] = {}
    for table in Base.metadata.sorted_tables:
        if table.name not in existing:
            continue
        schema[table.name] = [
            f"{index['name']} ({', '.join(c for c in index['column_names'] if c)})"
            for index in inspector.get_indexes(table.name)
        ]
    return schema


def has_duplicate_key_index(engine: Engine) -> bool:
    """True if images carries the index used for duplicate lookups."""
    inspector = inspect(engine)
    if "images" not in inspector.get_table_names():
        return False
    return any(
        index["name"] == DUPLICATE_KEY_INDEX and index["column_names"] == DUPLICATE_KEY_COLUMNS
        for index in inspector.get_indexes("images")
    )


def print_schema(engine: Engine) -> list[str]:
    """
    Print the schema report.

    Returns:
        Names of expected tables that are missing.
    """
    schema = describe_schema(engine)
    missing = [t.name for t in Base.metadata.sorted_tables if t.name not in schema]

    for name, indexes in schema.items():
        print(f"  - {name}")
        for index in indexes:
            print(f"      index {index}")
    for name in missing:
        print(f"  - {name} (missing)")

    if has_duplicate_key_index(engine):
        print(f"  Duplicate key index: {DUPLICATE_KEY_INDEX} ({', '.join(DUPLICATE_KEY_COLUMNS)})")
    else:
        print(f"  Duplicate key index: {DUPLICATE_KEY_INDEX} (missing)")
    return missing


# ────────────────────────────────────────────────────────────────────────────────
# Entry point
# ────────────────────────────────────────────────────────────────────────────────

def run(args: argparse.Namespace) -> int:
    print("=" * 60)
    print("Photo Library - Database Initialization")
    print("=" * 60)
    print()

    if args.verbose:
        print("Connection Settings:")
        for key, value in get_db_info().items():
            print(f"  {key}: {value}")
        print()

    print("[1/2] Verifying database connection...")
    if not verify_connection():
        print()
        print("ERROR: Could not connect to database!")
        print()
        print("Please check:")
        print("  1. The database server is running")
        print("  2. The target database exists")
        print("  3. .env has DATABASE_URL or DB_HOST/DB_NAME/DB_USER/DB_PASSWORD")
        return 1

    print("  -> Connection successful!")
    print()

    engine = get_engine()

    if args.check_only:
        print("Check-only mode: skipping table creation. Current schema:")
        print_schema(engine)
        return 0

    print("[2/2] Creating database tables...")
    if not init_db(engine):
        print()
        print("ERROR: Failed to create tables!")
        print("Check the logs above for details.")
        return 1

    print()
    print("Schema:")
    missing = print_schema(engine)
    print()
    if missing or not has_duplicate_key_index(engine):
        print("ERROR: Schema is incomplete after table creation.")
        return 1

    print("=" * 60)
    print("Database initialization complete!")
    print("=" * 60)
    print()
    print("Next steps:")
    print("  1. Run the ingestion pipeline: python run_pipeline.py /path/to/photos")
    print("  2. Or start the API: python -m web.app")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Initialize the database and report its schema."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        return run(args)
    finally:
        dispose_engine()


if __name__ == "__main__":
    sys.exit(main())
