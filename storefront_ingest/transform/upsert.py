"""
Staging to normalized model transform.

Reads staged rows in (received_at, id) order, starting a short trailing
window before the scope's watermark. It normalizes them in bounded batches
and upserts customers, orders and order items by their natural keys. Each
batch commits together with its watermark advance, so an interrupted
transform resumes at the last committed batch.

Every upsert only rewrites a row when a column actually changed, which makes
folding the same staging content twice a no-op.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from psycopg2.extras import execute_values

from storefront_ingest.config import Config
from storefront_ingest.staging.writer import STAGING_TABLE, StagingCapabilities, resolve_capabilities
from storefront_ingest.transform.costs import load_cost_book
from storefront_ingest.transform.normalize import (
    NormalizedBatch,
    StagedRecord,
    allocate_costs,
    normalize_records,
    required_skus,
)
from storefront_ingest.utils.logging_utils import (
    log_event,
    log_progress,
    log_section_complete,
    log_section_start,
)
from storefront_ingest.utils.state import (
    Watermark,
    get_transform_watermark,
    set_transform_watermark,
)

CUSTOMERS_UPSERT = """
    INSERT INTO customers (email, first_name, last_name, first_seen, last_seen)
    VALUES %s
    ON CONFLICT (email) DO UPDATE SET
        first_name = COALESCE(EXCLUDED.first_name, customers.first_name),
        last_name = COALESCE(EXCLUDED.last_name, customers.last_name),
        first_seen = LEAST(customers.first_seen, EXCLUDED.first_seen),
        last_seen = GREATEST(customers.last_seen, EXCLUDED.last_seen)
    WHERE (customers.first_name, customers.last_name, customers.first_seen, customers.last_seen)
        IS DISTINCT FROM (
            COALESCE(EXCLUDED.first_name, customers.first_name),
            COALESCE(EXCLUDED.last_name, customers.last_name),
            LEAST(customers.first_seen, EXCLUDED.first_seen),
            GREATEST(customers.last_seen, EXCLUDED.last_seen)
        )
    RETURNING (xmax = 0) AS inserted
"""
CUSTOMERS_TEMPLATE = "(%s::text, %s::text, %s::text, %s::timestamptz, %s::timestamptz)"

ORDERS_UPSERT = """
    INSERT INTO orders (
        channel_id, shop_domain, external_id, order_number, name, placed_at, currency,
        subtotal, shipping, tax, discounts, total, financial_status, fulfillment_status,
        customer_email
    )
    VALUES %s
    ON CONFLICT (shop_domain, external_id) DO UPDATE SET
        channel_id = EXCLUDED.channel_id,
        order_number = EXCLUDED.order_number,
        name = EXCLUDED.name,
        placed_at = EXCLUDED.placed_at,
        currency = EXCLUDED.currency,
        subtotal = EXCLUDED.subtotal,
        shipping = EXCLUDED.shipping,
        tax = EXCLUDED.tax,
        discounts = EXCLUDED.discounts,
        total = EXCLUDED.total,
        financial_status = EXCLUDED.financial_status,
        fulfillment_status = EXCLUDED.fulfillment_status,
        customer_email = EXCLUDED.customer_email,
        updated_at = now()
    WHERE (
        orders.channel_id, orders.order_number, orders.name, orders.placed_at, orders.currency,
        orders.subtotal, orders.shipping, orders.tax, orders.discounts, orders.total,
        orders.financial_status, orders.fulfillment_status, orders.customer_email
    ) IS DISTINCT FROM (
        EXCLUDED.channel_id, EXCLUDED.order_number, EXCLUDED.name, EXCLUDED.placed_at,
        EXCLUDED.currency, EXCLUDED.subtotal, EXCLUDED.shipping, EXCLUDED.tax,
        EXCLUDED.discounts, EXCLUDED.total, EXCLUDED.financial_status,
        EXCLUDED.fulfillment_status, EXCLUDED.customer_email
    )
    RETURNING (xmax = 0) AS inserted
"""
ORDERS_TEMPLATE = (
    "(%s::int, %s::text, %s::text, %s::text, %s::text, %s::timestamptz, %s::text, "
    "%s::numeric, %s::numeric, %s::numeric, %s::numeric, %s::numeric, %s::text, %s::text, "
    "%s::text)"
)

# Items resolve their parent order id through the orders natural key.
ITEMS_UPSERT = """
    INSERT INTO order_items (
        order_id, shop_domain, order_external_id, external_item_id, sku,
        external_product_id, title, qty, unit_price, allocated_unit_cost, allocated_cost
    )
    SELECT o.id, v.shop_domain, v.order_external_id, v.external_item_id, v.sku,
           v.external_product_id, v.title, v.qty, v.unit_price,
           v.allocated_unit_cost, v.allocated_cost
    FROM (VALUES %s) AS v (
        shop_domain, order_external_id, external_item_id, sku, external_product_id,
        title, qty, unit_price, allocated_unit_cost, allocated_cost
    ), orders o
    WHERE o.shop_domain = v.shop_domain AND o.external_id = v.order_external_id
    ON CONFLICT (shop_domain, order_external_id, external_item_id) DO UPDATE SET
        order_id = EXCLUDED.order_id,
        sku = EXCLUDED.sku,
        external_product_id = EXCLUDED.external_product_id,
        title = EXCLUDED.title,
        qty = EXCLUDED.qty,
        unit_price = EXCLUDED.unit_price,
        allocated_unit_cost = EXCLUDED.allocated_unit_cost,
        allocated_cost = EXCLUDED.allocated_cost
    WHERE (
        order_items.order_id, order_items.sku, order_items.external_product_id,
        order_items.title, order_items.qty, order_items.unit_price,
        order_items.allocated_unit_cost, order_items.allocated_cost
    ) IS DISTINCT FROM (
        EXCLUDED.order_id, EXCLUDED.sku, EXCLUDED.external_product_id, EXCLUDED.title,
        EXCLUDED.qty, EXCLUDED.unit_price, EXCLUDED.allocated_unit_cost,
        EXCLUDED.allocated_cost
    )
    RETURNING (xmax = 0) AS inserted
"""
ITEMS_TEMPLATE = (
    "(%s::text, %s::text, %s::text, %s::text, %s::text, %s::text, %s::int, "
    "%s::numeric, %s::numeric, %s::numeric)"
)


@dataclass
class UpsertCounts:
    """Rows sent to one upsert and what happened to them."""

    sent: int = 0
    inserted: int = 0
    updated: int = 0

    @property
    def unchanged(self) -> int:
        return self.sent - self.inserted - self.updated

    def add(self, other: "UpsertCounts") -> None:
        self.sent += other.sent
        self.inserted += other.inserted
        self.updated += other.updated

    def to_dict(self) -> Dict[str, int]:
        return {
            "sent": self.sent,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
        }


@dataclass
class TransformResult:
    scope: str
    full: bool = False
    batches: int = 0
    staged: int = 0
    skipped: int = 0
    superseded: int = 0
    customers: UpsertCounts = field(default_factory=UpsertCounts)
    orders: UpsertCounts = field(default_factory=UpsertCounts)
    items: UpsertCounts = field(default_factory=UpsertCounts)
    watermark: Optional[Watermark] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "full": self.full,
            "batches": self.batches,
            "staged": self.staged,
            "skipped": self.skipped,
            "superseded": self.superseded,
            "customers": self.customers.to_dict(),
            "orders": self.orders.to_dict(),
            "items": self.items.to_dict(),
            "watermark": (
                {
                    "received_at": self.watermark.received_at.isoformat(),
                    "id": self.watermark.staging_id,
                }
                if self.watermark
                else None
            ),
        }


def _upsert(cursor: Any, query: str, rows: List[Tuple[Any, ...]], template: str) -> UpsertCounts:
    if not rows:
        return UpsertCounts()
    returned = execute_values(cursor, query, rows, template=template, page_size=500, fetch=True)
    inserted = sum(1 for (was_inserted,) in returned if was_inserted)
    return UpsertCounts(sent=len(rows), inserted=inserted, updated=len(returned) - inserted)


def fetch_staged_batch(
    conn: Any,
    capabilities: StagingCapabilities,
    after: Optional[Watermark],
    domain: Optional[str],
    limit: int,
) -> List[StagedRecord]:
    """
    Read the next batch of staged rows after a keyset position.

    Args:
        conn: psycopg2 connection
        capabilities: Resolved staging columns
        after: Watermark to resume after, or None for the beginning
        domain: Restrict to one store (requires the domain column)
        limit: Batch size

    Returns:
        StagedRecords in (received_at, id) order
    """
    domain_expr = "domain" if capabilities.has("domain") else "NULL::text"
    kind_expr = "kind" if capabilities.has("kind") else "NULL::text"
    clauses = ["received_at IS NOT NULL"]
    params: List[Any] = []
    if after is not None:
        clauses.append("(received_at, id::text) > (%s, %s)")
        params.extend([after.received_at, after.staging_id])
    if domain and capabilities.has("domain"):
        clauses.append("domain = %s")
        params.append(domain)
    params.append(limit)

    query = f"""
        SELECT id::text, {domain_expr}, {kind_expr}, payload, received_at
        FROM {STAGING_TABLE}
        WHERE {' AND '.join(clauses)}
        ORDER BY received_at, id::text
        LIMIT %s
    """
    with conn.cursor() as cursor:
        cursor.execute(query, params)
        rows = cursor.fetchall()
    return [
        StagedRecord(
            staging_id=staging_id,
            tenant_domain=tenant or "",
            kind=kind,
            payload=payload,
            received_at=received_at,
        )
        for staging_id, tenant, kind, payload, received_at in rows
    ]


def apply_batch(conn: Any, channel_id: int, batch: NormalizedBatch) -> Dict[str, UpsertCounts]:
    """
    Upsert one normalized batch: customers, then orders, then items (caller commits).

    Args:
        conn: psycopg2 connection
        channel_id: Channel id stamped on orders
        batch: Normalized rows

    Returns:
        Dict of UpsertCounts keyed by entity
    """
    customers = [
        (c.email, c.first_name, c.last_name, c.first_seen, c.last_seen) for c in batch.customers
    ]
    orders = [
        (
            channel_id,
            o.tenant_domain,
            o.external_id,
            o.order_number,
            o.name,
            o.placed_at,
            o.currency,
            o.subtotal,
            o.shipping,
            o.tax,
            o.discounts,
            o.total,
            o.financial_status,
            o.fulfillment_status,
            o.customer_email,
        )
        for o in batch.orders
    ]
    items = [
        (
            i.tenant_domain,
            i.order_external_id,
            i.external_item_id,
            i.sku,
            i.external_product_id,
            i.title,
            i.quantity,
            i.unit_price,
            i.allocated_unit_cost,
            i.allocated_cost,
        )
        for i in batch.items
    ]
    with conn.cursor() as cursor:
        return {
            "customers": _upsert(cursor, CUSTOMERS_UPSERT, customers, CUSTOMERS_TEMPLATE),
            "orders": _upsert(cursor, ORDERS_UPSERT, orders, ORDERS_TEMPLATE),
            "items": _upsert(cursor, ITEMS_UPSERT, items, ITEMS_TEMPLATE),
        }


def _keyset(watermark: Watermark) -> Tuple[Any, str]:
    return (watermark.received_at, watermark.staging_id)


def overlap_start(watermark: Optional[Watermark]) -> Optional[Watermark]:
    """
    Position the next read a trailing window before ``watermark``.

    received_at is stamped at insert time, so a page transaction that commits
    late can land rows behind a watermark that already moved past them.
    Re-reading Config.TRANSFORM_OVERLAP_SECONDS before the stored position
    picks those rows up; already-folded rows in the window upsert as unchanged.

    Args:
        watermark: Stored watermark, or None

    Returns:
        Watermark to read after, or None to read from the beginning
    """
    if watermark is None or Config.TRANSFORM_OVERLAP_SECONDS <= 0:
        return watermark
    return Watermark(
        received_at=watermark.received_at - timedelta(seconds=Config.TRANSFORM_OVERLAP_SECONDS),
        staging_id="",
    )


def run_transform(
    conn: Any,
    channel_id: int,
    domain: Optional[str] = None,
    full: bool = False,
    batch_size: Optional[int] = None,
) -> TransformResult:
    """
    Fold staged rows into the normalized model.

    Args:
        conn: psycopg2 connection
        channel_id: Channel id
        domain: Restrict to one store, or None for all stores
        full: Ignore the stored watermark and re-fold everything
        batch_size: Rows per batch (defaults to Config.TRANSFORM_BATCH_SIZE)

    Returns:
        TransformResult with per-entity counts and the final watermark
    """
    batch_size = max(int(batch_size or Config.TRANSFORM_BATCH_SIZE), 1)
    capabilities = resolve_capabilities(conn)
    if domain and not capabilities.has("domain"):
        log_progress("Transform", f"{STAGING_TABLE} has no domain column, folding all stores")
        domain = None

    scope = domain or "*"
    section = f"Transform - {scope}"
    log_section_start(section)
    result = TransformResult(scope=scope, full=full)
    stored = None if full else get_transform_watermark(conn, channel_id, domain)
    result.watermark = stored
    watermark = overlap_start(stored)

    while True:
        records = fetch_staged_batch(conn, capabilities, watermark, domain, batch_size)
        if not records:
            break

        bundles, skipped, superseded = normalize_records(records)
        cost_book = load_cost_book(conn, required_skus(bundles))
        batch = allocate_costs(bundles, cost_book)
        counts = apply_batch(conn, channel_id, batch)

        last = records[-1]
        watermark = Watermark(received_at=last.received_at, staging_id=last.staging_id)
        # The stored position never moves back while the overlap is re-read.
        if stored is None or _keyset(watermark) > _keyset(stored):
            stored = watermark
        set_transform_watermark(conn, channel_id, domain, stored)
        conn.commit()

        result.batches += 1
        result.staged += len(records)
        result.skipped += skipped
        result.superseded += superseded
        result.customers.add(counts["customers"])
        result.orders.add(counts["orders"])
        result.items.add(counts["items"])
        result.watermark = stored
        log_event(
            "Transform",
            "transform:batch",
            scope=scope,
            batch=result.batches,
            staged=len(records),
            skipped=skipped,
            orders=counts["orders"].to_dict(),
            items=counts["items"].to_dict(),
        )
        if len(records) < batch_size:
            break

    log_section_complete(
        section,
        f"{result.staged} staged rows, {result.orders.inserted} orders inserted, "
        f"{result.orders.updated} updated",
    )
    return result
