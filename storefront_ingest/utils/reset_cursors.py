"""
Utility script to reset per-store ingestion state.

Clears pagination cursors (and optionally the backfill flags and transform
watermarks), so the next run for each store starts again from its
date window.

Usage:
    python -m storefront_ingest.utils.reset_cursors [--store DOMAIN] [--backfill] [--watermarks]
"""

import argparse
from typing import Any, List, Optional

from storefront_ingest.config import Config
from storefront_ingest.db.pool import close_pool, connection
from storefront_ingest.db.schema import ensure_schema, get_or_create_channel_id
from storefront_ingest.errors import ConfigurationError
from storefront_ingest.stores import Store, configured_stores, select_stores
from storefront_ingest.utils.logging_utils import (
    log_error,
    log_progress,
    log_section_complete,
    log_section_start,
)
from storefront_ingest.utils.state import (
    backfill_key,
    clear_cursor,
    clear_transform_watermark,
)


def reset_cursors(
    conn: Any,
    channel_id: int,
    stores: List[Store],
    include_backfill: bool = False,
    include_watermarks: bool = False,
) -> int:
    """
    Clear cursors for the given stores.

    Args:
        conn: psycopg2 connection
        channel_id: Channel id
        stores: Stores to reset
        include_backfill: Also clear the backfill-complete flags
        include_watermarks: Also clear the per-store and all-stores transform watermarks

    Returns:
        int: Number of stores reset
    """
    log_section_start("Cursor Reset")
    for store in stores:
        clear_cursor(conn, channel_id, store.domain)
        if include_backfill:
            with conn.cursor() as cursor:
                cursor.execute(
                    "DELETE FROM sync_state WHERE channel_id = %s AND key = %s",
                    (channel_id, backfill_key(store.domain)),
                )
        if include_watermarks:
            clear_transform_watermark(conn, channel_id, store.domain)
        conn.commit()
        log_progress("Cursor Reset", f"Reset {store.domain}")

    if include_watermarks:
        clear_transform_watermark(conn, channel_id, None)
        conn.commit()

    log_section_complete("Cursor Reset", f"Reset {len(stores)} store(s)")
    return len(stores)


def main(argv: Optional[List[str]] = None) -> None:
    """
    Reset ingestion state for one store or every configured store.
    """
    parser = argparse.ArgumentParser(description="Reset storefront ingestion cursors")
    parser.add_argument("--store", help="Only reset this shop domain")
    parser.add_argument("--backfill", action="store_true", help="Also clear backfill flags")
    parser.add_argument(
        "--watermarks", action="store_true", help="Also clear transform watermarks"
    )
    args = parser.parse_args(argv)

    try:
        log_section_start("Configuration Validation")
        if not Config.DATABASE_URL and not Config.DB_SECRET_ARN:
            raise ConfigurationError("Missing required environment variable: DATABASE_URL")
        stores = select_stores(configured_stores(), args.store)
        if not stores:
            raise ConfigurationError(f"No configured store matches {args.store or '(all)'}")
        log_section_complete("Configuration Validation")

        with connection() as conn:
            ensure_schema(conn)
            channel_id = get_or_create_channel_id(conn, Config.CHANNEL_NAME)
            reset_cursors(conn, channel_id, stores, args.backfill, args.watermarks)
    except Exception as e:
        log_error("Cursor Reset", str(e))
        raise
    finally:
        close_pool()


if __name__ == "__main__":
    main()
