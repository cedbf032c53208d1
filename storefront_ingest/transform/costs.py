"""
Effective-dated SKU costs.

A SKU can have several cost rows over time. An order line is valued with the
row in force on the order's own date: the latest ``effective_from`` on or
before that date whose ``effective_to`` is open or on/after it. Both bounds
are inclusive.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from psycopg2.extras import execute_values

from storefront_ingest.utils.logging_utils import log_progress

COST_CSV_COLUMNS = ["sku", "cost", "effective_from", "effective_to"]


@dataclass(frozen=True)
class CostScheduleRow:
    sku: str
    unit_cost: Decimal
    effective_from: date
    effective_to: Optional[date] = None

    def covers(self, day: date) -> bool:
        if day < self.effective_from:
            return False
        return self.effective_to is None or day <= self.effective_to


def resolve_unit_cost(rows: Iterable[CostScheduleRow], day: date) -> Optional[Decimal]:
    """
    Pick the per-unit cost in force on ``day``.

    Args:
        rows: Cost rows for a single SKU
        day: Order date

    Returns:
        Decimal cost, or None when no row covers the date
    """
    candidates = [row for row in rows if row.covers(day)]
    if not candidates:
        return None
    return max(candidates, key=lambda row: row.effective_from).unit_cost


class CostBook:
    """In-memory cost schedules keyed by SKU."""

    def __init__(self, rows: Iterable[CostScheduleRow] = ()) -> None:
        self._by_sku: Dict[str, List[CostScheduleRow]] = defaultdict(list)
        for row in rows:
            self._by_sku[row.sku].append(row)

    def __len__(self) -> int:
        return sum(len(rows) for rows in self._by_sku.values())

    def unit_cost(self, sku: Optional[str], day: date) -> Optional[Decimal]:
        if not sku:
            return None
        return resolve_unit_cost(self._by_sku.get(sku, ()), day)


def load_cost_book(conn: Any, skus: Iterable[str]) -> CostBook:
    """
    Read the cost rows for the given SKUs.

    Args:
        conn: psycopg2 connection
        skus: SKUs referenced by the batch being transformed

    Returns:
        CostBook
    """
    wanted = sorted({sku for sku in skus if sku})
    if not wanted:
        return CostBook()
    with conn.cursor() as cursor:
        cursor.execute(
            """
            SELECT sku, cost, effective_from, effective_to
            FROM sku_costs
            WHERE sku = ANY(%s)
            """,
            (wanted,),
        )
        rows = [
            CostScheduleRow(
                sku=sku,
                unit_cost=Decimal(str(cost)),
                effective_from=effective_from,
                effective_to=effective_to,
            )
            for sku, cost, effective_from, effective_to in cursor.fetchall()
        ]
    return CostBook(rows)


def read_cost_schedule_csv(path: Path) -> List[CostScheduleRow]:
    """
    Parse a cost export with columns sku, cost, effective_from, effective_to.

    Rows with a blank SKU, an unparsable cost or effective_from are dropped;
    a blank effective_to means open-ended.

    Args:
        path: CSV file path

    Returns:
        List of CostScheduleRow
    """
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    df.columns = [column.strip().lower() for column in df.columns]
    missing = [column for column in COST_CSV_COLUMNS[:3] if column not in df.columns]
    if missing:
        raise ValueError(f"Cost CSV missing columns: {', '.join(missing)}")
    if "effective_to" not in df.columns:
        df["effective_to"] = ""

    df["sku"] = df["sku"].str.strip()
    df["effective_from"] = pd.to_datetime(df["effective_from"].str.strip(), errors="coerce")
    df["effective_to"] = pd.to_datetime(df["effective_to"].str.strip(), errors="coerce")

    rows = []
    dropped = 0
    for record in df.to_dict("records"):
        try:
            cost = Decimal(str(record["cost"]).strip().lstrip("$").replace(",", ""))
        except InvalidOperation:
            cost = None
        if not record["sku"] or cost is None or pd.isna(record["effective_from"]):
            dropped += 1
            continue
        effective_to = record["effective_to"]
        rows.append(
            CostScheduleRow(
                sku=record["sku"],
                unit_cost=cost,
                effective_from=record["effective_from"].date(),
                effective_to=None if pd.isna(effective_to) else effective_to.date(),
            )
        )
    log_progress("Cost Import", f"Parsed {len(rows)} cost rows from {path} ({dropped} dropped)")
    return rows


def upsert_cost_schedule(conn: Any, rows: List[CostScheduleRow]) -> int:
    """
    Upsert cost rows keyed by (sku, effective_from) and commit.

    Args:
        conn: psycopg2 connection
        rows: Parsed cost rows

    Returns:
        int: Number of rows sent
    """
    if not rows:
        return 0
    # One statement may not touch the same key twice; the last row per key wins.
    latest = {(row.sku, row.effective_from): row for row in rows}
    values = [
        (row.sku, row.unit_cost, row.effective_from, row.effective_to) for row in latest.values()
    ]
    with conn.cursor() as cursor:
        execute_values(
            cursor,
            """
            INSERT INTO sku_costs (sku, cost, effective_from, effective_to)
            VALUES %s
            ON CONFLICT (sku, effective_from) DO UPDATE
                SET cost = EXCLUDED.cost, effective_to = EXCLUDED.effective_to
            """,
            values,
            template="(%s::text, %s::numeric, %s::date, %s::date)",
            page_size=1000,
        )
    conn.commit()
    return len(values)
