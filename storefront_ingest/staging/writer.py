"""
Staging tier writer.

Appends every fetched raw order to ``staging_raw``, tagged with the store,
channel and provenance. Deployments differ in which optional columns the
staging table carries, so the column set is resolved once per run into a
StagingCapabilities descriptor and the insert only names columns that exist.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from psycopg2.extras import execute_values

from storefront_ingest.errors import StagingSchemaError
from storefront_ingest.utils.logging_utils import log_progress

STAGING_TABLE = "staging_raw"
CAPABILITIES_VERSION = 1

# Insert order and cast for every column the writer knows how to fill.
WRITABLE_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("payload", "jsonb"),
    ("channel_id", "int"),
    ("source", "text"),
    ("kind", "text"),
    ("domain", "text"),
    ("external_id", "text"),
)


@dataclass(frozen=True)
class StagingCapabilities:
    """
    Which staging columns this deployment has.

    Attributes:
        version: Descriptor layout version
        columns: Every column found in the staging table
        insert_columns: Writable columns present, in insert order
    """

    version: int
    columns: FrozenSet[str]
    insert_columns: Tuple[str, ...]

    @classmethod
    def from_columns(cls, columns: List[str]) -> "StagingCapabilities":
        present = frozenset(columns)
        if "payload" not in present:
            raise StagingSchemaError(f"{STAGING_TABLE} has no payload column")
        insert_columns = tuple(name for name, _ in WRITABLE_COLUMNS if name in present)
        return cls(version=CAPABILITIES_VERSION, columns=present, insert_columns=insert_columns)

    def has(self, column: str) -> bool:
        return column in self.columns

    @property
    def template(self) -> str:
        casts = dict(WRITABLE_COLUMNS)
        return "(" + ", ".join(f"%s::{casts[name]}" for name in self.insert_columns) + ")"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "insert_columns": list(self.insert_columns),
            "omitted": [name for name, _ in WRITABLE_COLUMNS if name not in self.columns],
        }


def resolve_capabilities(conn: Any) -> StagingCapabilities:
    """
    Inspect information_schema for the staging table's columns.

    Args:
        conn: psycopg2 connection

    Returns:
        StagingCapabilities for this run
    """
    with conn.cursor() as cursor:
        cursor.execute(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_schema = current_schema() AND table_name = %s
            """,
            (STAGING_TABLE,),
        )
        columns = [row[0] for row in cursor.fetchall()]
    capabilities = StagingCapabilities.from_columns(columns)
    log_progress(
        "Staging Writer",
        f"Resolved staging columns v{capabilities.version}: {', '.join(capabilities.insert_columns)}",
    )
    return capabilities


def build_staging_row(
    capabilities: StagingCapabilities,
    record: Dict[str, Any],
    channel_id: int,
    domain: str,
    source: str = "shopify",
    kind: str = "order",
) -> Tuple[Any, ...]:
    """
    Values for one staging row, in the descriptor's insert order.

    Args:
        capabilities: Resolved staging columns
        record: Raw upstream record
        channel_id: Channel id
        domain: Store domain
        source: Provenance source tag
        kind: Record kind tag

    Returns:
        Tuple of values matching ``capabilities.insert_columns``
    """
    external_id = record.get("id")
    values: Dict[str, Any] = {
        "payload": json.dumps(record, default=str),
        "channel_id": channel_id,
        "source": source,
        "kind": kind,
        "domain": domain,
        "external_id": str(external_id) if external_id is not None else None,
    }
    return tuple(values[name] for name in capabilities.insert_columns)


def write_staging_records(
    conn: Any,
    capabilities: StagingCapabilities,
    records: List[Dict[str, Any]],
    channel_id: int,
    domain: str,
    kind: str = "order",
) -> int:
    """
    Append raw records to staging (caller commits).

    Re-fetched pages simply append again; the transform keeps the latest
    arrival per order.

    Args:
        conn: psycopg2 connection
        capabilities: Resolved staging columns
        records: Raw upstream records
        channel_id: Channel id
        domain: Store domain
        kind: Record kind tag

    Returns:
        int: Number of rows written
    """
    if not records:
        return 0

    rows = [
        build_staging_row(capabilities, record, channel_id, domain, kind=kind)
        for record in records
    ]
    query = (
        f"INSERT INTO {STAGING_TABLE} ({', '.join(capabilities.insert_columns)}) VALUES %s"
    )
    with conn.cursor() as cursor:
        execute_values(cursor, query, rows, template=capabilities.template, page_size=250)
    return len(rows)


def count_staging_rows(conn: Any, domain: Optional[str] = None, capabilities: Optional[StagingCapabilities] = None) -> int:
    """Number of staged rows, optionally for one store when the domain column exists."""
    with conn.cursor() as cursor:
        if domain and (capabilities is None or capabilities.has("domain")):
            cursor.execute(f"SELECT count(*) FROM {STAGING_TABLE} WHERE domain = %s", (domain,))
        else:
            cursor.execute(f"SELECT count(*) FROM {STAGING_TABLE}")
        return int(cursor.fetchone()[0])
