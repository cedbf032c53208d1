"""
Backfill controller.

Repeats bounded runs for a store until its history window is walked:
a run that fetched fewer pages than the per-run cap, reached the last page
or staged no orders means the window is exhausted. A hard iteration
ceiling bounds the loop either way.
"""

from typing import Any, Callable, Dict, List, Optional

from storefront_ingest.config import Config
from storefront_ingest.db.schema import register_shop
from storefront_ingest.errors import ConfigurationError
from storefront_ingest.extract.shopify_client import ShopifyClient
from storefront_ingest.ingest import (
    ClientFactory,
    RunContext,
    StoreRunSummary,
    prepare_run,
    run_store_ingest,
)
from storefront_ingest.stores import Store, select_stores, validate_store
from storefront_ingest.utils.logging_utils import (
    log_event,
    log_section_complete,
    log_section_start,
)
from storefront_ingest.utils.state import clear_cursor, mark_backfill_complete

STOPPED_SHORT_RUN = "short_run"
STOPPED_NO_ORDERS = "no_orders"
STOPPED_MAX_ITERATIONS = "max_iterations"

RunOnce = Callable[[Store, int], StoreRunSummary]


def backfill_store(
    store: Store,
    days: int,
    run_once: RunOnce,
    max_iterations: int,
    per_run_cap: int,
) -> Dict[str, Any]:
    """
    Drive ``run_once`` for one store until a stop condition holds.

    Args:
        store: Store to backfill
        days: Days-back window
        run_once: Performs one bounded run and returns its summary
        max_iterations: Iteration ceiling
        per_run_cap: Pages a run fetches when more history remains

    Returns:
        Dict with iterations, pages, orders and stopped_by
    """
    iterations = 0
    pages = 0
    orders = 0
    stopped_by = STOPPED_MAX_ITERATIONS

    while iterations < max_iterations:
        iterations += 1
        result = run_once(store, days)
        pages += result.pages
        orders += result.orders_ingested
        log_event(
            "Backfill",
            "backfill:iteration",
            domain=store.domain,
            iterations=iterations,
            pagesThisRun=result.pages,
            ordersThisRun=result.orders_ingested,
        )
        # An exhausted cursor holds no token; another run would restart the window.
        if result.pages < per_run_cap or result.exhausted:
            stopped_by = STOPPED_SHORT_RUN
            break
        if result.orders_ingested == 0:
            stopped_by = STOPPED_NO_ORDERS
            break

    return {"iterations": iterations, "pages": pages, "orders": orders, "stopped_by": stopped_by}


def backfill(
    conn: Any,
    stores: List[Store],
    days: Optional[Any] = None,
    target: Optional[str] = None,
    hard_reset: bool = False,
    max_iterations: Optional[int] = None,
    client_factory: ClientFactory = ShopifyClient,
    run_once: Optional[RunOnce] = None,
) -> Dict[str, Any]:
    """
    Walk the full requested history of one store or all stores.

    Stores whose walk ended naturally get their backfill flag set; a store
    stopped by the iteration ceiling keeps its cursor so the next backfill or
    scheduled tick continues from there.

    Args:
        conn: psycopg2 connection
        stores: Configured stores
        days: Raw days-back window (defaults to Config.BACKFILL_DAYS)
        target: Optional domain to restrict to
        hard_reset: Clear each store's cursor first
        max_iterations: Ceiling per store (defaults to Config.BACKFILL_MAX_ITERATIONS)
        client_factory: Builds the HTTP client per store
        run_once: Override for the bounded run (defaults to run_store_ingest)

    Returns:
        Dict with days, hardReset, stores and perStoreSummary

    Raises:
        ConfigurationError: No stores, unknown target, bad domain or token
    """
    if not stores:
        raise ConfigurationError("No stores configured")
    selected = select_stores(stores, target)
    if not selected:
        raise ConfigurationError(f"Store not configured: {target}")
    for store in selected:
        validate_store(store)

    days = Config.clamp_days(days, Config.BACKFILL_DAYS)
    max_iterations = max_iterations or Config.BACKFILL_MAX_ITERATIONS
    per_run_cap = Config.MAX_PAGES_PER_RUN
    context: RunContext = prepare_run(conn)

    if run_once is None:
        def run_once(store: Store, window: int) -> StoreRunSummary:
            return run_store_ingest(conn, context, store, window, client_factory=client_factory)

    log_section_start(f"Backfill - {days} days")
    per_store: Dict[str, Dict[str, Any]] = {}
    for store in selected:
        register_shop(conn, context.channel_id, store)
        if hard_reset:
            clear_cursor(conn, context.channel_id, store.domain)
            log_event("Backfill", "backfill:reset", domain=store.domain)

        summary = backfill_store(store, days, run_once, max_iterations, per_run_cap)
        if summary["stopped_by"] != STOPPED_MAX_ITERATIONS:
            mark_backfill_complete(conn, context.channel_id, store.domain, days)
        per_store[store.domain] = summary

    log_section_complete(f"Backfill - {days} days", f"{len(selected)} store(s)")
    return {
        "days": days,
        "hardReset": bool(hard_reset),
        "stores": [store.domain for store in selected],
        "perStoreSummary": per_store,
    }
