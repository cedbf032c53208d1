"""
Bounded ingestion runs.

One run walks at most MAX_PAGES_PER_RUN pages per store, staging each page
and checkpointing its resume token in the same transaction. The round-robin
tick runs exactly one store per trigger and always advances the schedule
index, including when that store's run fails or is skipped.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import psycopg2

from storefront_ingest.config import Config
from storefront_ingest.db.pool import run_with_retry
from storefront_ingest.db.schema import ensure_schema, get_or_create_channel_id, register_shop
from storefront_ingest.errors import ClaimUnavailableError, ConfigurationError
from storefront_ingest.extract.shopify_client import ShopifyClient, iter_order_pages
from storefront_ingest.staging.writer import (
    StagingCapabilities,
    resolve_capabilities,
    write_staging_records,
)
from storefront_ingest.stores import Store, select_stores, validate_store
from storefront_ingest.utils.logging_utils import (
    log_error,
    log_event,
    log_section_complete,
    log_section_start,
)
from storefront_ingest.utils.state import (
    clear_cursor,
    get_cursor,
    get_schedule_index,
    set_cursor,
    set_schedule_index,
    store_claim,
)

ClientFactory = Callable[[Store], ShopifyClient]


@dataclass(frozen=True)
class RunContext:
    """Per-invocation facts resolved once: channel id and staging columns."""

    channel_id: int
    capabilities: StagingCapabilities


@dataclass
class StoreRunSummary:
    domain: str
    pages: int = 0
    orders_ingested: int = 0
    resumed: bool = False
    exhausted: bool = False
    next_page_info: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pages": self.pages,
            "ordersIngested": self.orders_ingested,
            "resumed": self.resumed,
            "exhausted": self.exhausted,
            "hasNext": bool(self.next_page_info),
        }


def prepare_run(conn: Any, channel_name: Optional[str] = None) -> RunContext:
    """
    Bootstrap the schema and resolve the run's channel and staging columns.

    Args:
        conn: psycopg2 connection
        channel_name: Channel to register (defaults to Config.CHANNEL_NAME)

    Returns:
        RunContext
    """
    ensure_schema(conn)
    channel_id = get_or_create_channel_id(conn, channel_name or Config.CHANNEL_NAME)
    return RunContext(channel_id=channel_id, capabilities=resolve_capabilities(conn))


def run_store_ingest(
    conn: Any,
    context: RunContext,
    store: Store,
    days: int,
    reset: bool = False,
    max_pages: Optional[int] = None,
    page_size: Optional[int] = None,
    client_factory: ClientFactory = ShopifyClient,
) -> StoreRunSummary:
    """
    Run one bounded ingestion for a single store.

    The store's claim is held for the whole run. Every page commits its
    staging rows together with the next resume token, so a failure on page N
    keeps pages 1..N-1 and the next run resumes at page N.

    Args:
        conn: psycopg2 connection
        context: Resolved run context
        store: Validated store
        days: History window used when no resume token exists
        reset: Clear the cursor before starting
        max_pages: Page ceiling (defaults to Config.MAX_PAGES_PER_RUN)
        page_size: Records per page (defaults to Config.PAGE_SIZE)
        client_factory: Builds the HTTP client for the store

    Returns:
        StoreRunSummary

    Raises:
        ClaimUnavailableError: Another invocation is ingesting this store
    """
    domain = store.domain
    channel_id = context.channel_id
    max_pages = max_pages or Config.MAX_PAGES_PER_RUN
    page_size = page_size or Config.PAGE_SIZE
    summary = StoreRunSummary(domain=domain)

    with store_claim(conn, channel_id, domain, Config.CLAIM_TTL_SECONDS):
        if reset:
            clear_cursor(conn, channel_id, domain)
        resume_token = get_cursor(conn, channel_id, domain)
        summary.resumed = bool(resume_token)
        log_event("Ingest", "ingest:start", domain=domain, days=days, resumeFromCursor=summary.resumed)

        with client_factory(store) as client:
            for page in iter_order_pages(client, days, resume_token, max_pages, page_size):
                write_staging_records(
                    conn, context.capabilities, page.orders, channel_id, domain
                )
                set_cursor(
                    conn,
                    channel_id,
                    domain,
                    page.next_page_info,
                    exhausted=not page.next_page_info,
                )
                conn.commit()

                summary.pages += 1
                summary.orders_ingested += page.count
                summary.next_page_info = page.next_page_info
                summary.exhausted = not page.next_page_info
                log_event(
                    "Ingest",
                    "ingest:page",
                    domain=domain,
                    page=summary.pages,
                    orders=page.count,
                    hasNext=bool(page.next_page_info),
                )

    log_event("Ingest", "ingest:done", domain=domain, pages=summary.pages, total=summary.orders_ingested)
    return summary


def run_ingest(
    conn: Any,
    stores: List[Store],
    target: Optional[str] = None,
    days: Optional[Any] = None,
    reset: bool = False,
    context: Optional[RunContext] = None,
    client_factory: ClientFactory = ShopifyClient,
) -> Dict[str, Any]:
    """
    One bounded pass over one store or all configured stores.

    Stores run one after another; the first failing store aborts the pass.

    Args:
        conn: psycopg2 connection
        stores: Configured stores
        target: Optional domain to restrict the pass to
        days: Raw days-back window (clamped to 1..365)
        reset: Clear each store's cursor first
        context: Already-resolved run context, if any
        client_factory: Builds the HTTP client per store

    Returns:
        Dict with the window and a per-domain summary

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

    days = Config.clamp_days(days)
    context = context or prepare_run(conn)
    section = f"Ingest - {len(selected)} store(s)"
    log_section_start(section)

    summary: Dict[str, Dict[str, Any]] = {}
    for store in selected:
        register_shop(conn, context.channel_id, store)
        result = run_store_ingest(conn, context, store, days, reset=reset, client_factory=client_factory)
        summary[store.domain] = result.to_dict()

    log_event(
        "Ingest",
        "ingest:summary",
        limit=Config.PAGE_SIZE,
        maxPages=Config.MAX_PAGES_PER_RUN,
        days=days,
        stores=[store.domain for store in selected],
    )
    log_section_complete(section)
    return {"days": days, "summary": summary}


def pick_store(stores: List[Store], index: int) -> Tuple[int, Store]:
    """
    Choose the store for a scheduler tick.

    Args:
        stores: Configured stores (non-empty)
        index: Persisted schedule index, possibly stale after a config change

    Returns:
        Tuple of (slot in [0, len(stores)), store)
    """
    slot = index % len(stores)
    return slot, stores[slot]


def _advance_schedule(conn: Any, channel_id: int, next_index: int) -> None:
    try:
        conn.rollback()
        set_schedule_index(conn, channel_id, next_index)
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
        # The run broke this connection; advance on a fresh one.
        log_error("Scheduler", e)
        run_with_retry(lambda fresh: set_schedule_index(fresh, channel_id, next_index))


def run_round_robin_tick(
    conn: Any,
    stores: List[Store],
    client_factory: ClientFactory = ShopifyClient,
) -> Dict[str, Any]:
    """
    Ingest exactly one store, chosen by the persisted schedule index.

    The index advances whatever the outcome, so a failing store cannot
    starve the others. Failures are reported in the result, not raised.

    Args:
        conn: psycopg2 connection
        stores: Configured stores
        client_factory: Builds the HTTP client

    Returns:
        Dict with the store, its slot, the next index, a status
        ('ok' | 'skipped' | 'error') and the run summary or error

    Raises:
        ConfigurationError: No stores configured
    """
    if not stores:
        raise ConfigurationError("No stores configured")

    context = prepare_run(conn)
    index = get_schedule_index(conn, context.channel_id)
    slot, store = pick_store(stores, index)
    next_index = (slot + 1) % len(stores)
    log_event("Scheduler", "cron:store", domain=store.domain, nextIdx=slot, totalStores=len(stores))

    outcome: Dict[str, Any] = {"store": store.domain, "slot": slot, "next_index": next_index}
    try:
        outcome["result"] = run_ingest(
            conn, [store], context=context, client_factory=client_factory
        )
        outcome["status"] = "ok"
    except ClaimUnavailableError as e:
        log_event("Scheduler", "cron:skipped", domain=store.domain, reason=str(e))
        outcome["status"] = "skipped"
    except Exception as e:
        log_error(f"Scheduler - {store.domain}", e)
        outcome["status"] = "error"
        outcome["error"] = str(e)

    _advance_schedule(conn, context.channel_id, next_index)
    return outcome
