"""
Utility script to load effective-dated SKU costs from a CSV export.

Expected columns: sku, cost, effective_from, effective_to (blank = open-ended).
Re-importing the same file is safe; rows are keyed by (sku, effective_from).

Usage:
    python -m storefront_ingest.utils.import_costs costs.csv
"""

import argparse
from pathlib import Path
from typing import List, Optional

from storefront_ingest.config import Config
from storefront_ingest.db.pool import close_pool, connection
from storefront_ingest.db.schema import ensure_schema
from storefront_ingest.errors import ConfigurationError
from storefront_ingest.transform.costs import read_cost_schedule_csv, upsert_cost_schedule
from storefront_ingest.utils.logging_utils import (
    log_error,
    log_section_complete,
    log_section_start,
)


def import_costs(path: Path) -> int:
    """
    Parse a cost CSV and upsert it.

    Args:
        path: CSV file path

    Returns:
        int: Number of cost rows written
    """
    log_section_start("Cost Import")
    rows = read_cost_schedule_csv(path)
    with connection() as conn:
        ensure_schema(conn)
        written = upsert_cost_schedule(conn, rows)
    log_section_complete("Cost Import", f"Upserted {written} cost rows")
    return written


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Import SKU cost schedules")
    parser.add_argument("csv_path", type=Path)
    args = parser.parse_args(argv)

    try:
        if not Config.DATABASE_URL and not Config.DB_SECRET_ARN:
            raise ConfigurationError("Missing required environment variable: DATABASE_URL")
        if not args.csv_path.exists():
            raise ConfigurationError(f"File not found: {args.csv_path}")
        import_costs(args.csv_path)
    except Exception as e:
        log_error("Cost Import", str(e))
        raise
    finally:
        close_pool()


if __name__ == "__main__":
    main()
