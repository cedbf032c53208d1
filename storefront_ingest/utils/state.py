"""
State store module for resumable ingestion.

Everything lives in the ``sync_state`` key/value table (composite key
channel_id + key, JSON text value):

- ``shopify:cursor:<domain>``          pagination token / exhausted marker
- ``shopify:schedule_idx``             round-robin pointer
- ``shopify:backfill_done:<domain>``   one-time backfill completion flag
- ``shopify:claim:<domain>``           expiring per-store claim
- ``shopify:transform_wm:<scope>``     transform watermark

Writes do not commit unless stated; callers commit at their checkpoints so a
page's staging rows and its new cursor land in the same transaction.
"""

import json
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, Iterator, Optional

import psycopg2

from storefront_ingest.errors import ClaimUnavailableError
from storefront_ingest.utils.logging_utils import log_error, log_event, log_progress

KEY_PREFIX = "shopify"
SCHEDULE_KEY = f"{KEY_PREFIX}:schedule_idx"
ALL_STORES_SCOPE = "*"


class CursorStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class CursorState:
    """Resume position of one store."""

    domain: str
    status: CursorStatus
    page_info: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "page_info": self.page_info,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class Watermark:
    """Keyset position (received_at, staging id) of the last folded staging row."""

    received_at: datetime
    staging_id: str


def cursor_key(domain: str) -> str:
    return f"{KEY_PREFIX}:cursor:{domain}"


def backfill_key(domain: str) -> str:
    return f"{KEY_PREFIX}:backfill_done:{domain}"


def claim_key(domain: str) -> str:
    return f"{KEY_PREFIX}:claim:{domain}"


def watermark_key(scope: Optional[str]) -> str:
    return f"{KEY_PREFIX}:transform_wm:{scope or ALL_STORES_SCOPE}"


def _decode(text: Any) -> Dict[str, Any]:
    if text is None:
        return {}
    if isinstance(text, dict):
        return text
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def _read_value(conn: Any, channel_id: int, key: str) -> Optional[Dict[str, Any]]:
    with conn.cursor() as cursor:
        cursor.execute(
            "SELECT value, updated_at FROM sync_state WHERE channel_id = %s AND key = %s LIMIT 1",
            (channel_id, key),
        )
        row = cursor.fetchone()
    if row is None:
        return None
    value = _decode(row[0])
    if row[1] is not None:
        value.setdefault("_updated_at", row[1].isoformat() if hasattr(row[1], "isoformat") else str(row[1]))
    return value


def _write_value(conn: Any, channel_id: int, key: str, value: Dict[str, Any]) -> None:
    with conn.cursor() as cursor:
        cursor.execute(
            """
            INSERT INTO sync_state (channel_id, key, value, updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (channel_id, key) DO UPDATE
                SET value = EXCLUDED.value, updated_at = now()
            """,
            (channel_id, key, json.dumps(value)),
        )


def _delete_value(conn: Any, channel_id: int, key: str) -> None:
    with conn.cursor() as cursor:
        cursor.execute(
            "DELETE FROM sync_state WHERE channel_id = %s AND key = %s",
            (channel_id, key),
        )


# --- Cursor -----------------------------------------------------------------


def get_cursor_state(conn: Any, channel_id: int, domain: str) -> CursorState:
    """
    Read the cursor state machine position for a store.

    Args:
        conn: psycopg2 connection
        channel_id: Channel id
        domain: Sanitized shop domain

    Returns:
        CursorState (NOT_STARTED when no row exists)
    """
    value = _read_value(conn, channel_id, cursor_key(domain))
    if value is None:
        return CursorState(domain=domain, status=CursorStatus.NOT_STARTED)
    page_info = value.get("page_info")
    updated_at = value.get("_updated_at")
    if isinstance(page_info, str) and page_info:
        return CursorState(domain, CursorStatus.IN_PROGRESS, page_info, updated_at)
    if value.get("exhausted_at"):
        return CursorState(domain, CursorStatus.EXHAUSTED, None, updated_at)
    return CursorState(domain=domain, status=CursorStatus.NOT_STARTED, updated_at=updated_at)


def get_cursor(conn: Any, channel_id: int, domain: str) -> Optional[str]:
    """Return the resume token for a store, or None to start from the window."""
    return get_cursor_state(conn, channel_id, domain).page_info


def set_cursor(
    conn: Any,
    channel_id: int,
    domain: str,
    page_info: Optional[str],
    exhausted: bool = False,
) -> None:
    """
    Persist the next resume token for a store (caller commits).

    A None token with ``exhausted`` records the Exhausted state; a None token
    without it removes the row (NotStarted).

    Args:
        conn: psycopg2 connection
        channel_id: Channel id
        domain: Sanitized shop domain
        page_info: Opaque continuation token from the Link header, or None
        exhausted: Whether the walk ended naturally
    """
    key = cursor_key(domain)
    if page_info:
        _write_value(conn, channel_id, key, {"page_info": page_info})
    elif exhausted:
        _write_value(
            conn,
            channel_id,
            key,
            {"page_info": None, "exhausted_at": datetime.now(UTC).isoformat()},
        )
    else:
        _delete_value(conn, channel_id, key)


def clear_cursor(conn: Any, channel_id: int, domain: str) -> None:
    """Reset a store to NotStarted and commit."""
    _delete_value(conn, channel_id, cursor_key(domain))
    conn.commit()
    log_event("State Store", "cursor:cleared", domain=domain)


# --- Schedule index ---------------------------------------------------------


def get_schedule_index(conn: Any, channel_id: int) -> int:
    """Read the round-robin pointer (0 when absent or unreadable)."""
    value = _read_value(conn, channel_id, SCHEDULE_KEY) or {}
    try:
        return max(int(value.get("idx", 0)), 0)
    except (TypeError, ValueError):
        return 0


def set_schedule_index(conn: Any, channel_id: int, index: int) -> None:
    """Persist the round-robin pointer and commit."""
    _write_value(conn, channel_id, SCHEDULE_KEY, {"idx": int(index)})
    conn.commit()


# --- Backfill flag ----------------------------------------------------------


def is_backfill_complete(conn: Any, channel_id: int, domain: str) -> bool:
    value = _read_value(conn, channel_id, backfill_key(domain)) or {}
    return bool(value.get("done"))


def mark_backfill_complete(conn: Any, channel_id: int, domain: str, days: int) -> None:
    """Record that a store's first full-history ingestion finished, and commit."""
    _write_value(
        conn,
        channel_id,
        backfill_key(domain),
        {"done": True, "days": days, "completed_at": datetime.now(UTC).isoformat()},
    )
    conn.commit()
    log_progress(f"State Store - {domain}", f"Backfill marked complete ({days} days)")


# --- Claims -----------------------------------------------------------------


def claim_store(conn: Any, channel_id: int, domain: str, owner: str, ttl_seconds: int) -> bool:
    """
    Try to take the expiring claim for a store, and commit.

    The upsert only overwrites an existing claim when it has expired or is
    already ours, so two concurrent callers cannot both succeed.

    Args:
        conn: psycopg2 connection
        channel_id: Channel id
        domain: Sanitized shop domain
        owner: Unique id of this invocation
        ttl_seconds: Claim lifetime; a crashed holder blocks others at most this long

    Returns:
        bool: True if the claim is now held by ``owner``
    """
    with conn.cursor() as cursor:
        cursor.execute(
            """
            INSERT INTO sync_state (channel_id, key, value, updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (channel_id, key) DO UPDATE
                SET value = EXCLUDED.value, updated_at = now()
                WHERE sync_state.updated_at < now() - make_interval(secs => %s)
                   OR sync_state.value = EXCLUDED.value
            RETURNING key
            """,
            (channel_id, claim_key(domain), json.dumps({"owner": owner}), ttl_seconds),
        )
        row = cursor.fetchone()
    conn.commit()
    return row is not None


def release_claim(conn: Any, channel_id: int, domain: str, owner: str) -> None:
    """Drop our claim for a store (no-op if someone else holds it), and commit."""
    with conn.cursor() as cursor:
        cursor.execute(
            "DELETE FROM sync_state WHERE channel_id = %s AND key = %s AND value = %s",
            (channel_id, claim_key(domain), json.dumps({"owner": owner})),
        )
    conn.commit()


@contextmanager
def store_claim(conn: Any, channel_id: int, domain: str, ttl_seconds: int) -> Iterator[str]:
    """
    Hold the per-store claim for the duration of the block.

    Yields:
        str: Owner id of this claim

    Raises:
        ClaimUnavailableError: Another invocation holds an unexpired claim
    """
    owner = uuid.uuid4().hex
    if not claim_store(conn, channel_id, domain, owner, ttl_seconds):
        raise ClaimUnavailableError(domain)
    try:
        yield owner
    finally:
        # A broken connection must not mask the error raised inside the block;
        # the claim then lapses after its TTL.
        try:
            conn.rollback()
            release_claim(conn, channel_id, domain, owner)
        except psycopg2.Error as e:
            log_error(f"State Store - {domain}", e)


# --- Transform watermark ----------------------------------------------------


def get_transform_watermark(conn: Any, channel_id: int, scope: Optional[str]) -> Optional[Watermark]:
    value = _read_value(conn, channel_id, watermark_key(scope))
    if not value or not value.get("received_at") or not value.get("id"):
        return None
    try:
        received_at = datetime.fromisoformat(value["received_at"])
    except (TypeError, ValueError):
        return None
    return Watermark(received_at=received_at, staging_id=str(value["id"]))


def set_transform_watermark(conn: Any, channel_id: int, scope: Optional[str], watermark: Watermark) -> None:
    """Persist the transform watermark (caller commits with the batch)."""
    _write_value(
        conn,
        channel_id,
        watermark_key(scope),
        {"received_at": watermark.received_at.isoformat(), "id": watermark.staging_id},
    )


def clear_transform_watermark(conn: Any, channel_id: int, scope: Optional[str]) -> None:
    _delete_value(conn, channel_id, watermark_key(scope))
