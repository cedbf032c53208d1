"""
Idempotent schema bootstrap for staging, sync state and the normalized model.

Every statement is safe to run on each invocation; existing deployments that
carry extra or missing optional staging columns are left alone (the staging
writer adapts to whatever columns exist).
"""

from typing import Any, List

import psycopg2

from storefront_ingest.stores import Store
from storefront_ingest.utils.logging_utils import log_progress

SCHEMA_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS channels (
        id SERIAL PRIMARY KEY,
        name TEXT UNIQUE NOT NULL,
        created_at TIMESTAMPTZ DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shops (
        id SERIAL PRIMARY KEY,
        channel_id INT NOT NULL REFERENCES channels(id),
        handle TEXT NOT NULL,
        domain TEXT NOT NULL,
        is_active BOOLEAN DEFAULT TRUE,
        created_at TIMESTAMPTZ DEFAULT now(),
        UNIQUE (channel_id, domain)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staging_raw (
        id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
        payload JSONB NOT NULL,
        received_at TIMESTAMPTZ DEFAULT clock_timestamp(),
        domain TEXT,
        channel_id INT,
        source TEXT,
        kind TEXT,
        external_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_staging_received ON staging_raw (received_at, id)",
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        channel_id INT NOT NULL,
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        updated_at TIMESTAMPTZ DEFAULT now(),
        PRIMARY KEY (channel_id, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS customers (
        id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT,
        last_name TEXT,
        first_seen TIMESTAMPTZ,
        last_seen TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
        channel_id INT,
        shop_domain TEXT NOT NULL DEFAULT '',
        external_id TEXT NOT NULL,
        order_number TEXT,
        name TEXT,
        placed_at TIMESTAMPTZ NOT NULL,
        currency TEXT,
        subtotal NUMERIC(18,2),
        shipping NUMERIC(18,2),
        tax NUMERIC(18,2),
        discounts NUMERIC(18,2),
        total NUMERIC(18,2),
        financial_status TEXT,
        fulfillment_status TEXT,
        customer_email TEXT REFERENCES customers(email),
        updated_at TIMESTAMPTZ DEFAULT now(),
        UNIQUE (shop_domain, external_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
        order_id UUID NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        shop_domain TEXT NOT NULL DEFAULT '',
        order_external_id TEXT NOT NULL,
        external_item_id TEXT NOT NULL,
        sku TEXT,
        external_product_id TEXT,
        title TEXT,
        qty INT NOT NULL DEFAULT 0,
        unit_price NUMERIC(18,2),
        allocated_unit_cost NUMERIC(18,4),
        allocated_cost NUMERIC(18,4),
        UNIQUE (shop_domain, order_external_id, external_item_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sku_costs (
        sku TEXT NOT NULL,
        cost NUMERIC(18,4) NOT NULL,
        effective_from DATE NOT NULL,
        effective_to DATE,
        created_at TIMESTAMPTZ DEFAULT now(),
        PRIMARY KEY (sku, effective_from)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_placed_at ON orders (placed_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_items_order_id ON order_items (order_id)",
    "CREATE INDEX IF NOT EXISTS idx_sku_costs_range ON sku_costs (sku, effective_from, effective_to)",
]


def ensure_schema(conn: Any) -> None:
    """
    Create any missing tables and indexes, then commit.

    ``pgcrypto`` is requested for gen_random_uuid() on older servers; managed
    Postgres roles that may not create extensions are tolerated.

    Args:
        conn: psycopg2 connection
    """
    with conn.cursor() as cursor:
        cursor.execute("SAVEPOINT ensure_pgcrypto")
        try:
            cursor.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")
            cursor.execute("RELEASE SAVEPOINT ensure_pgcrypto")
        except psycopg2.Error as e:
            cursor.execute("ROLLBACK TO SAVEPOINT ensure_pgcrypto")
            log_progress("Schema", f"pgcrypto unavailable, relying on built-in gen_random_uuid(): {e}")

        for statement in SCHEMA_STATEMENTS:
            cursor.execute(statement)
    conn.commit()


def get_or_create_channel_id(conn: Any, name: str) -> int:
    """
    Return the id of the named channel, creating the row on first use.

    Args:
        conn: psycopg2 connection
        name: Channel name (e.g. 'shopify')

    Returns:
        int: channels.id
    """
    with conn.cursor() as cursor:
        cursor.execute(
            "INSERT INTO channels (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
            (name,),
        )
        cursor.execute("SELECT id FROM channels WHERE name = %s ORDER BY id LIMIT 1", (name,))
        row = cursor.fetchone()
    conn.commit()
    return int(row[0])


def register_shop(conn: Any, channel_id: int, store: Store) -> None:
    """Record a configured shop in the shops table (no-op when present)."""
    with conn.cursor() as cursor:
        cursor.execute(
            """
            INSERT INTO shops (channel_id, handle, domain)
            VALUES (%s, %s, %s)
            ON CONFLICT (channel_id, domain) DO NOTHING
            """,
            (channel_id, store.handle, store.domain),
        )
    conn.commit()
