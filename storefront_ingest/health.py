"""
Health and diagnostics snapshot.

The cheap part (schedule index, cursor states, backfill flags) always comes
back. Aggregate counts are added unless ``light`` is requested; if those
queries fail the snapshot carries a ``degraded`` message instead.
"""

from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

import psycopg2

from storefront_ingest.staging.writer import (
    StagingCapabilities,
    count_staging_rows,
    resolve_capabilities,
)
from storefront_ingest.stores import Store
from storefront_ingest.utils.logging_utils import log_error
from storefront_ingest.utils.state import (
    get_cursor_state,
    get_schedule_index,
    is_backfill_complete,
)

UNKNOWN_STORE = "(unknown)"


def _iso(value: Any) -> Any:
    return value.isoformat() if hasattr(value, "isoformat") else value


def cursor_report(conn: Any, channel_id: int, stores: List[Store]) -> Dict[str, Dict[str, Any]]:
    """Cursor state and backfill flag per configured store."""
    report = {}
    for store in stores:
        state = get_cursor_state(conn, channel_id, store.domain)
        entry = state.to_dict()
        entry["backfill_done"] = is_backfill_complete(conn, channel_id, store.domain)
        report[store.domain] = entry
    return report


def _store_staging_rows(conn: Any, domain: str, capabilities: StagingCapabilities) -> Optional[int]:
    # Older staging tables carry no domain column to split by.
    if domain == UNKNOWN_STORE or not capabilities.has("domain"):
        return None
    return count_staging_rows(conn, domain, capabilities)


def aggregate_totals(conn: Any) -> Dict[str, Any]:
    """
    Whole-database and per-store counts.

    Per-store staging rows are None when the staging table has no domain
    column.

    Args:
        conn: psycopg2 connection

    Returns:
        Dict with ``totals`` and ``per_store``
    """
    with conn.cursor() as cursor:
        cursor.execute("SELECT count(*), max(placed_at) FROM orders")
        order_count, last_order_at = cursor.fetchone()
        cursor.execute("SELECT count(*) FROM order_items")
        item_count = cursor.fetchone()[0]

        cursor.execute(
            """
            SELECT COALESCE(NULLIF(shop_domain, ''), '(unknown)') AS shop_domain,
                   count(*) AS orders,
                   min(placed_at) AS first_order_at,
                   max(placed_at) AS last_order_at
            FROM orders
            GROUP BY 1
            ORDER BY 2 DESC
            """
        )
        order_rows = cursor.fetchall()
        cursor.execute(
            """
            SELECT COALESCE(NULLIF(o.shop_domain, ''), '(unknown)') AS shop_domain,
                   count(*) AS items
            FROM order_items oi
            JOIN orders o ON o.id = oi.order_id
            GROUP BY 1
            """
        )
        items_by_store = {domain: int(count) for domain, count in cursor.fetchall()}

    staging_rows = count_staging_rows(conn)
    capabilities = resolve_capabilities(conn)
    per_store = [
        {
            "shop_domain": domain,
            "orders": int(orders),
            "items": items_by_store.get(domain, 0),
            "staging_rows": _store_staging_rows(conn, domain, capabilities),
            "first_order_at": _iso(first_at),
            "last_order_at": _iso(last_at),
        }
        for domain, orders, first_at, last_at in order_rows
    ]
    return {
        "totals": {
            "orders": int(order_count),
            "items": int(item_count),
            "staging_rows": staging_rows,
            "last_order_at": _iso(last_order_at),
        },
        "per_store": per_store,
    }


def health_snapshot(conn: Any, channel_id: int, stores: List[Store], light: bool = False) -> Dict[str, Any]:
    """
    Build the diagnostics payload.

    Args:
        conn: psycopg2 connection
        channel_id: Channel id
        stores: Configured stores
        light: Skip aggregate queries

    Returns:
        Dict ready to serialize as JSON
    """
    snapshot: Dict[str, Any] = {
        "ok": True,
        "now": datetime.now(UTC).isoformat(),
        "schedule_index": get_schedule_index(conn, channel_id),
        "stores": [store.domain for store in stores],
        "cursors": cursor_report(conn, channel_id, stores),
        "light": light,
    }
    if light:
        return snapshot

    try:
        snapshot.update(aggregate_totals(conn))
    except psycopg2.Error as e:
        conn.rollback()
        log_error("Health", e)
        snapshot["totals"] = {"orders": 0, "items": 0, "staging_rows": 0, "last_order_at": None}
        snapshot["per_store"] = []
        snapshot["degraded"] = str(e).strip()
    return snapshot
