"""
Staged record to normalized entity mapping.

Staged payloads are semi-structured documents. They are first classified
into a tagged variant (an order document, or something this pipeline does
not fold), deduplicated per store and external order id by latest arrival,
then mapped by ``map_order`` into fixed relational shapes. Everything here is
pure: no database access.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd

from storefront_ingest.transform.costs import CostBook

# Column ranges of qty INT, money NUMERIC(18,2) and cost NUMERIC(18,4).
INT_MIN = -(2 ** 31)
INT_MAX = 2 ** 31 - 1
MONEY_PLACES = 2
COST_PLACES = 4


@dataclass(frozen=True)
class StagedRecord:
    """One row of staging_raw as read by the transform."""

    staging_id: str
    tenant_domain: str
    kind: Optional[str]
    payload: Any
    received_at: datetime


@dataclass(frozen=True)
class OrderPayload:
    """Staged document recognized as an upstream order."""

    external_id: str
    document: Dict[str, Any]
    kind: str = "order"


@dataclass(frozen=True)
class UnrecognizedPayload:
    """Staged document the transform skips (other kinds, debug rows, broken JSON)."""

    reason: str
    kind: str = "unrecognized"


StagedPayload = Union[OrderPayload, UnrecognizedPayload]


@dataclass(frozen=True)
class NormalizedCustomer:
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    first_seen: Optional[datetime]
    last_seen: Optional[datetime]


@dataclass(frozen=True)
class NormalizedOrder:
    tenant_domain: str
    external_id: str
    placed_at: datetime
    total: Optional[Decimal]
    customer_email: Optional[str]
    order_number: Optional[str] = None
    name: Optional[str] = None
    currency: Optional[str] = None
    subtotal: Optional[Decimal] = None
    shipping: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    discounts: Optional[Decimal] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None

    @property
    def order_date(self) -> date:
        # Store-local calendar date as reported upstream.
        return self.placed_at.date()


@dataclass(frozen=True)
class NormalizedOrderItem:
    tenant_domain: str
    order_external_id: str
    external_item_id: str
    sku: Optional[str]
    quantity: int
    unit_price: Optional[Decimal]
    title: Optional[str] = None
    external_product_id: Optional[str] = None
    allocated_unit_cost: Optional[Decimal] = None
    allocated_cost: Optional[Decimal] = None


@dataclass(frozen=True)
class OrderBundle:
    """Everything one staged order maps to."""

    order: NormalizedOrder
    items: Tuple[NormalizedOrderItem, ...]
    customer: Optional[NormalizedCustomer]
    staging_id: str
    received_at: datetime


@dataclass
class NormalizedBatch:
    customers: List[NormalizedCustomer] = field(default_factory=list)
    orders: List[NormalizedOrder] = field(default_factory=list)
    items: List[NormalizedOrderItem] = field(default_factory=list)
    skipped: int = 0
    superseded: int = 0


# --- Field coercion ---------------------------------------------------------


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _fits_numeric(number: Decimal, places: int) -> bool:
    # NUMERIC(18, places) after the server rounds to ``places``.
    limit = Decimal(10) ** (18 - places)
    if abs(number) >= limit:
        return False
    rounded = number.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    return abs(rounded) < limit


def _to_decimal(value: Any, places: int = MONEY_PLACES) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite() or not _fits_numeric(number, places):
        return None
    return number


def _to_int(value: Any, default: int = 0) -> int:
    try:
        number = int(Decimal(str(value)))
    except (InvalidOperation, ValueError, TypeError, OverflowError):
        return default
    return number if INT_MIN <= number <= INT_MAX else default


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = _clean_str(value)
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    # Offset-less timestamps are UTC.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _normalize_email(value: Any) -> Optional[str]:
    email = _clean_str(value)
    if not email or "@" not in email:
        return None
    return email.lower()


def _money_set_amount(document: Dict[str, Any], key: str) -> Optional[Decimal]:
    money_set = document.get(key)
    if isinstance(money_set, dict):
        shop_money = money_set.get("shop_money")
        if isinstance(shop_money, dict):
            return _to_decimal(shop_money.get("amount"))
    return None


# --- Classification ---------------------------------------------------------


def classify_payload(kind: Optional[str], payload: Any) -> StagedPayload:
    """
    Tag a staged document.

    Rows without a kind column (older deployments) are treated as orders when
    the document looks like one.

    Args:
        kind: Value of staging_raw.kind, if the column exists
        payload: Decoded JSON payload (or raw text)

    Returns:
        OrderPayload or UnrecognizedPayload
    """
    if kind not in (None, "", "order"):
        return UnrecognizedPayload(reason=f"kind={kind}")
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError:
            return UnrecognizedPayload(reason="payload is not JSON")
    if not isinstance(payload, dict):
        return UnrecognizedPayload(reason="payload is not an object")
    external_id = _clean_str(payload.get("id"))
    if not external_id:
        return UnrecognizedPayload(reason="missing id")
    if _parse_timestamp(payload.get("created_at")) is None:
        return UnrecognizedPayload(reason="missing or invalid created_at")
    return OrderPayload(external_id=external_id, document=payload)


# --- Mapping ----------------------------------------------------------------


def _map_customer(document: Dict[str, Any], placed_at: datetime) -> Optional[NormalizedCustomer]:
    customer = document.get("customer") if isinstance(document.get("customer"), dict) else {}
    email = (
        _normalize_email(document.get("email"))
        or _normalize_email(customer.get("email"))
        or _normalize_email(document.get("contact_email"))
    )
    if not email:
        return None
    return NormalizedCustomer(
        email=email,
        first_name=_clean_str(customer.get("first_name")),
        last_name=_clean_str(customer.get("last_name")),
        first_seen=placed_at,
        last_seen=placed_at,
    )


def _map_items(
    tenant_domain: str, order_external_id: str, document: Dict[str, Any]
) -> Tuple[NormalizedOrderItem, ...]:
    line_items = document.get("line_items")
    if not isinstance(line_items, list):
        return ()
    items: Dict[str, NormalizedOrderItem] = {}
    for position, line in enumerate(line_items):
        if not isinstance(line, dict):
            continue
        # Position-based key keeps reruns stable when upstream omits the line id.
        external_item_id = _clean_str(line.get("id")) or f"pos:{position}"
        items[external_item_id] = NormalizedOrderItem(
            tenant_domain=tenant_domain,
            order_external_id=order_external_id,
            external_item_id=external_item_id,
            sku=_clean_str(line.get("sku")),
            quantity=_to_int(line.get("quantity"), 0),
            unit_price=_to_decimal(line.get("price")),
            title=_clean_str(line.get("title")) or _clean_str(line.get("name")),
            external_product_id=_clean_str(line.get("product_id")),
        )
    return tuple(items.values())


def _shipping_total(document: Dict[str, Any]) -> Optional[Decimal]:
    amount = _money_set_amount(document, "total_shipping_price_set")
    if amount is not None:
        return amount
    lines = document.get("shipping_lines")
    if not isinstance(lines, list):
        return None
    prices = [_to_decimal(line.get("price")) for line in lines if isinstance(line, dict)]
    prices = [price for price in prices if price is not None]
    if not prices:
        return None
    total = sum(prices, Decimal("0"))
    return total if _fits_numeric(total, MONEY_PLACES) else None


def map_order(record: StagedRecord, payload: OrderPayload) -> OrderBundle:
    """
    Map one staged order document into normalized entities.

    Bad, missing or out-of-range optional fields degrade to None (or 0 for
    quantities); they never raise. Offset-less timestamps are read as UTC.

    Args:
        record: Staging row the document came from
        payload: Classified order payload

    Returns:
        OrderBundle
    """
    document = payload.document
    placed_at = _parse_timestamp(document.get("created_at"))
    customer = _map_customer(document, placed_at)
    order = NormalizedOrder(
        tenant_domain=record.tenant_domain or "",
        external_id=payload.external_id,
        placed_at=placed_at,
        total=_to_decimal(document.get("total_price")),
        customer_email=customer.email if customer else None,
        order_number=_clean_str(document.get("order_number")),
        name=_clean_str(document.get("name")),
        currency=_clean_str(document.get("currency")),
        subtotal=_to_decimal(document.get("subtotal_price")),
        shipping=_shipping_total(document),
        tax=_to_decimal(document.get("total_tax")),
        discounts=_to_decimal(document.get("total_discounts")),
        financial_status=_clean_str(document.get("financial_status")),
        fulfillment_status=_clean_str(document.get("fulfillment_status")),
    )
    return OrderBundle(
        order=order,
        items=_map_items(order.tenant_domain, order.external_id, document),
        customer=customer,
        staging_id=record.staging_id,
        received_at=record.received_at,
    )


# --- Dedup / batch assembly -------------------------------------------------


def latest_per_order(
    candidates: List[Tuple[StagedRecord, OrderPayload]]
) -> List[Tuple[StagedRecord, OrderPayload]]:
    """
    Keep the latest arrival per (store, external order id).

    Ties on received_at fall back to the staging id so the choice is stable.

    Args:
        candidates: Classified order rows

    Returns:
        Surviving rows in arrival order
    """
    if not candidates:
        return []
    df = pd.DataFrame(
        {
            "position": range(len(candidates)),
            "tenant": [record.tenant_domain or "" for record, _ in candidates],
            "external_id": [payload.external_id for _, payload in candidates],
            "received_at": pd.to_datetime(
                [record.received_at for record, _ in candidates], utc=True
            ),
            "staging_id": [record.staging_id for record, _ in candidates],
        }
    )
    df = df.sort_values(["received_at", "staging_id"], kind="mergesort")
    survivors = df.drop_duplicates(subset=["tenant", "external_id"], keep="last")
    return [candidates[position] for position in survivors["position"].tolist()]


def merge_customers(customers: List[NormalizedCustomer]) -> List[NormalizedCustomer]:
    """Collapse sightings of the same email: widest seen range, latest non-empty names."""
    merged: Dict[str, NormalizedCustomer] = {}
    for customer in customers:
        existing = merged.get(customer.email)
        if existing is None:
            merged[customer.email] = customer
            continue
        seen = [ts for ts in (existing.first_seen, customer.first_seen) if ts is not None]
        last = [ts for ts in (existing.last_seen, customer.last_seen) if ts is not None]
        merged[customer.email] = NormalizedCustomer(
            email=customer.email,
            first_name=customer.first_name or existing.first_name,
            last_name=customer.last_name or existing.last_name,
            first_seen=min(seen) if seen else None,
            last_seen=max(last) if last else None,
        )
    return list(merged.values())


def normalize_records(records: List[StagedRecord]) -> Tuple[List[OrderBundle], int, int]:
    """
    Classify, deduplicate and map a batch of staged rows.

    Args:
        records: Staged rows in arrival order

    Returns:
        Tuple of (bundles, skipped_count, superseded_count)
    """
    candidates: List[Tuple[StagedRecord, OrderPayload]] = []
    skipped = 0
    for record in records:
        payload = classify_payload(record.kind, record.payload)
        if isinstance(payload, OrderPayload):
            candidates.append((record, payload))
        else:
            skipped += 1
    survivors = latest_per_order(candidates)
    bundles = [map_order(record, payload) for record, payload in survivors]
    return bundles, skipped, len(candidates) - len(survivors)


def allocate_costs(bundles: List[OrderBundle], cost_book: CostBook) -> NormalizedBatch:
    """
    Attach effective-dated costs to every item and flatten into a batch.

    Items with no SKU or no covering cost row keep allocated costs unset.

    Args:
        bundles: Mapped orders
        cost_book: Cost schedules for the batch's SKUs

    Returns:
        NormalizedBatch ready to upsert
    """
    batch = NormalizedBatch()
    customers = []
    for bundle in bundles:
        batch.orders.append(bundle.order)
        if bundle.customer is not None:
            customers.append(bundle.customer)
        for item in bundle.items:
            unit_cost = cost_book.unit_cost(item.sku, bundle.order.order_date)
            if unit_cost is not None:
                allocated = unit_cost * item.quantity
                item = replace(
                    item,
                    allocated_unit_cost=unit_cost,
                    allocated_cost=allocated if _fits_numeric(allocated, COST_PLACES) else None,
                )
            batch.items.append(item)
    batch.customers = merge_customers(customers)
    return batch


def required_skus(bundles: List[OrderBundle]) -> List[str]:
    return sorted({item.sku for bundle in bundles for item in bundle.items if item.sku})
