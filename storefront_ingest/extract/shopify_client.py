"""
Storefront orders API client.

Calls the Shopify Admin REST orders endpoint for one store, following the
cursor pagination carried in the ``Link`` response header. Transient
responses (429/5xx, connection errors) are retried through the shared
RetryPolicy; everything else is fatal for the store's run.
"""

import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional
from urllib.parse import unquote

import requests

from storefront_ingest.config import Config
from storefront_ingest.errors import (
    FatalUpstreamError,
    MalformedResponseError,
    TransientUpstreamError,
)
from storefront_ingest.stores import Store
from storefront_ingest.utils.logging_utils import log_event
from storefront_ingest.utils.retry import RetryPolicy

_NEXT_LINK_RE = re.compile(r"<([^>]*)>\s*;\s*rel=\"?next\"?", re.IGNORECASE)
_PAGE_INFO_RE = re.compile(r"[?&]page_info=([^&]+)")


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, TransientUpstreamError)


HTTP_RETRY = RetryPolicy(
    max_retries=4, base_delay=0.5, max_delay=4.0, retryable=_is_transient, max_hint=10.0
)


@dataclass
class OrdersPage:
    """One page of raw orders plus the token for the next page (None = last page)."""

    orders: List[Dict[str, Any]]
    next_page_info: Optional[str]
    requested_with: Dict[str, Any] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.orders)


def window_start(days: int, now: Optional[datetime] = None) -> str:
    """
    ISO-8601 lower bound for the created_at filter of a first page.

    Args:
        days: History window length in days
        now: Reference time (defaults to current UTC time)

    Returns:
        str: Timestamp like '2025-01-01T00:00:00Z'
    """
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=days)
    return since.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_next_page_info(link_header: Optional[str]) -> Optional[str]:
    """
    Extract the page_info token of the rel="next" entry of a Link header.

    Args:
        link_header: Raw Link header, e.g.
            '<https://x/orders.json?limit=50&page_info=abc>; rel="next"'

    Returns:
        The decoded token, or None when there is no next page
    """
    if not link_header:
        return None
    for part in link_header.split(","):
        match = _NEXT_LINK_RE.search(part)
        if not match:
            continue
        token = _PAGE_INFO_RE.search(match.group(1))
        if token:
            return unquote(token.group(1))
    return None


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header (numeric form only)."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def parse_json_response(response: requests.Response) -> Dict[str, Any]:
    """
    Decode a JSON object body, refusing HTML error pages and truncated JSON.

    Args:
        response: Successful HTTP response

    Returns:
        Decoded JSON object

    Raises:
        MalformedResponseError: Body is not JSON or not a JSON object
    """
    content_type = response.headers.get("Content-Type") or response.headers.get("content-type") or ""
    text = response.text
    if "application/json" not in content_type.lower():
        raise MalformedResponseError(
            f"Non-JSON upstream response ({response.status_code}): {text[:400]}",
            response.status_code,
        )
    try:
        data = json.loads(text)
    except ValueError as e:
        raise MalformedResponseError(
            f"Invalid JSON from upstream: {e} :: {text[:400]}", response.status_code
        )
    if not isinstance(data, dict):
        raise MalformedResponseError(
            f"Unexpected upstream payload type: {type(data).__name__}", response.status_code
        )
    return data


class ShopifyClient:
    """
    Authenticated orders client for a single store.

    Use as a context manager so the underlying requests.Session is closed.
    """

    def __init__(
        self,
        store: Store,
        session: Optional[requests.Session] = None,
        retry_policy: RetryPolicy = HTTP_RETRY,
        timeout: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.url = Config.orders_url(store.domain)
        self.retry_policy = retry_policy
        self.timeout = timeout or Config.HTTP_TIMEOUT_SECONDS
        self._sleep = sleep
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "X-Shopify-Access-Token": store.token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    def __enter__(self) -> "ShopifyClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._session.close()

    @staticmethod
    def build_params(page_info: Optional[str], since: str, limit: int) -> Dict[str, Any]:
        """
        Query parameters for one page.

        The first page filters by creation date; continuation pages send only
        the token (Shopify rejects other filters alongside page_info).
        """
        if page_info:
            return {"limit": limit, "page_info": page_info}
        return {"limit": limit, "status": "any", "created_at_min": since}

    def _get_once(self, params: Dict[str, Any]) -> requests.Response:
        domain = self.store.domain
        try:
            response = self._session.get(self.url, params=params, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientUpstreamError(f"Shopify {domain} connection error: {e}")

        status = response.status_code
        if status == 429 or 500 <= status <= 599:
            raise TransientUpstreamError(
                f"Shopify {domain} {status}: {response.text[:200]}",
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if not 200 <= status < 300:
            raise FatalUpstreamError(f"Shopify {domain} {status}: {response.text[:400]}", status)
        return response

    def fetch_orders_page(
        self, since: str, page_info: Optional[str], limit: int
    ) -> OrdersPage:
        """
        Fetch one page of orders.

        Args:
            since: created_at_min for a first page
            page_info: Resume token, or None for the first page of the window
            limit: Page size (1..250)

        Returns:
            OrdersPage with raw order dicts and the next token
        """
        params = self.build_params(page_info, since, limit)
        response = self.retry_policy.call(
            lambda: self._get_once(params),
            section=f"Shopify - {self.store.domain}",
            sleep=self._sleep,
        )
        data = parse_json_response(response)
        orders = data.get("orders")
        if not isinstance(orders, list):
            orders = []
        link = response.headers.get("Link") or response.headers.get("link")
        return OrdersPage(
            orders=[order for order in orders if isinstance(order, dict)],
            next_page_info=parse_next_page_info(link),
            requested_with=params,
        )


def iter_order_pages(
    client: ShopifyClient,
    days: int,
    resume_token: Optional[str],
    max_pages: int,
    page_size: int,
) -> Iterator[OrdersPage]:
    """
    Walk at most ``max_pages`` pages starting at ``resume_token``.

    Pages are fetched strictly one after another: the generator is suspended
    at each yield, so the caller can persist the page and its token before
    the next request goes out.

    Args:
        client: Store client
        days: History window used when no token is present
        resume_token: Persisted cursor, or None
        max_pages: Per-run page ceiling
        page_size: Records per page

    Yields:
        OrdersPage objects
    """
    since = window_start(days)
    page_info = resume_token
    for page_number in range(1, max_pages + 1):
        page = client.fetch_orders_page(since=since, page_info=page_info, limit=page_size)
        log_event(
            "Fetcher",
            "shopify:page",
            domain=client.store.domain,
            page=page_number,
            orders=page.count,
            resumed=bool(page_info),
            has_next=bool(page.next_page_info),
        )
        yield page
        if not page.next_page_info or not page.orders:
            return
        page_info = page.next_page_info
