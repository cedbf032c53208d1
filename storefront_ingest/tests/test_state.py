"""
Unit tests for state management (cursors, schedule index, claims, watermarks).
"""

import json
from datetime import datetime, timezone

import psycopg2
import pytest

from storefront_ingest.errors import ClaimUnavailableError
from storefront_ingest.utils.state import (
    CursorStatus,
    SCHEDULE_KEY,
    claim_store,
    cursor_key,
    get_cursor,
    get_cursor_state,
    get_schedule_index,
    get_transform_watermark,
    is_backfill_complete,
    set_cursor,
    set_schedule_index,
    store_claim,
    watermark_key,
)

DOMAIN = "acme.myshopify.com"
UPDATED = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestKeys:
    def test_key_layout(self):
        assert cursor_key(DOMAIN) == "shopify:cursor:acme.myshopify.com"
        assert SCHEDULE_KEY == "shopify:schedule_idx"
        assert watermark_key(None) == "shopify:transform_wm:*"
        assert watermark_key(DOMAIN) == "shopify:transform_wm:acme.myshopify.com"


class TestCursorState:
    """Test the NotStarted -> InProgress -> Exhausted cursor states."""

    def test_no_row_is_not_started(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = None

        state = get_cursor_state(conn, 1, DOMAIN)

        assert state.status == CursorStatus.NOT_STARTED
        assert state.page_info is None
        assert cursor.execute.call_args[0][1] == (1, cursor_key(DOMAIN))

    def test_token_is_in_progress(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = (json.dumps({"page_info": "eyJsYXN0"}), UPDATED)

        state = get_cursor_state(conn, 1, DOMAIN)

        assert state.status == CursorStatus.IN_PROGRESS
        assert state.page_info == "eyJsYXN0"
        assert state.updated_at == UPDATED.isoformat()
        assert get_cursor(conn, 1, DOMAIN) == "eyJsYXN0"

    def test_exhausted_marker(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = (
            json.dumps({"page_info": None, "exhausted_at": "2025-06-01T00:00:00+00:00"}),
            UPDATED,
        )

        state = get_cursor_state(conn, 1, DOMAIN)

        assert state.status == CursorStatus.EXHAUSTED
        assert get_cursor(conn, 1, DOMAIN) is None

    def test_unreadable_value_is_not_started(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = ("not json", None)

        assert get_cursor_state(conn, 1, DOMAIN).status == CursorStatus.NOT_STARTED

    def test_set_cursor_upserts_token_without_commit(self, mock_conn):
        conn, cursor = mock_conn

        set_cursor(conn, 1, DOMAIN, "next-token")

        sql, params = cursor.execute.call_args[0]
        assert "ON CONFLICT (channel_id, key)" in sql
        assert params[1] == cursor_key(DOMAIN)
        assert json.loads(params[2]) == {"page_info": "next-token"}
        conn.commit.assert_not_called()

    def test_set_cursor_exhausted(self, mock_conn):
        conn, cursor = mock_conn

        set_cursor(conn, 1, DOMAIN, None, exhausted=True)

        value = json.loads(cursor.execute.call_args[0][1][2])
        assert value["page_info"] is None
        assert "exhausted_at" in value

    def test_set_cursor_none_deletes(self, mock_conn):
        conn, cursor = mock_conn

        set_cursor(conn, 1, DOMAIN, None)

        sql = cursor.execute.call_args[0][0]
        assert sql.startswith("DELETE FROM sync_state")


class TestScheduleIndex:
    def test_reads_index(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = (json.dumps({"idx": 3}), UPDATED)
        assert get_schedule_index(conn, 1) == 3

    def test_missing_or_bad_index_is_zero(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = None
        assert get_schedule_index(conn, 1) == 0

        cursor.fetchone.return_value = (json.dumps({"idx": "x"}), None)
        assert get_schedule_index(conn, 1) == 0

    def test_set_index_commits(self, mock_conn):
        conn, cursor = mock_conn

        set_schedule_index(conn, 1, 2)

        params = cursor.execute.call_args[0][1]
        assert params[1] == SCHEDULE_KEY
        assert json.loads(params[2]) == {"idx": 2}
        conn.commit.assert_called_once()


class TestBackfillFlag:
    def test_flag(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = (json.dumps({"done": True, "days": 365}), UPDATED)
        assert is_backfill_complete(conn, 1, DOMAIN) is True

        cursor.fetchone.return_value = None
        assert is_backfill_complete(conn, 1, DOMAIN) is False


class TestClaims:
    """Test the expiring per-store claim."""

    def test_claim_acquired(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = ("shopify:claim:acme.myshopify.com",)

        assert claim_store(conn, 1, DOMAIN, "owner-1", 600) is True

        sql, params = cursor.execute.call_args[0]
        assert "make_interval(secs => %s)" in sql
        assert params[-1] == 600
        conn.commit.assert_called_once()

    def test_claim_held_elsewhere(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = None

        assert claim_store(conn, 1, DOMAIN, "owner-1", 600) is False

    def test_store_claim_raises_when_held(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = None

        with pytest.raises(ClaimUnavailableError) as exc_info:
            with store_claim(conn, 1, DOMAIN, 600):
                pytest.fail("claim should not be granted")
        assert exc_info.value.domain == DOMAIN

    def test_store_claim_released_on_error(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = ("key",)

        with pytest.raises(RuntimeError):
            with store_claim(conn, 1, DOMAIN, 600) as owner:
                assert owner
                raise RuntimeError("page failed")

        release_sql = cursor.execute.call_args[0][0]
        assert release_sql.startswith("DELETE FROM sync_state")
        conn.rollback.assert_called_once()

    def test_broken_connection_keeps_original_error(self, mock_conn, capsys):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = ("key",)
        conn.rollback.side_effect = psycopg2.InterfaceError("connection already closed")

        with pytest.raises(RuntimeError, match="page failed"):
            with store_claim(conn, 1, DOMAIN, 600):
                raise RuntimeError("page failed")

        output = capsys.readouterr().out
        assert f"Error in State Store - {DOMAIN}" in output
        assert "InterfaceError: connection already closed" in output

    def test_failed_release_after_success_is_logged(self, mock_conn, capsys):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = ("key",)
        conn.commit.side_effect = [None, psycopg2.OperationalError("server closed the connection")]

        with store_claim(conn, 1, DOMAIN, 600) as owner:
            assert owner

        assert "OperationalError: server closed the connection" in capsys.readouterr().out


class TestWatermark:
    def test_reads_watermark(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = (
            json.dumps({"received_at": "2025-06-01T12:00:00+00:00", "id": "abc"}),
            UPDATED,
        )

        watermark = get_transform_watermark(conn, 1, None)

        assert watermark.received_at == UPDATED
        assert watermark.staging_id == "abc"

    def test_missing_watermark(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = None
        assert get_transform_watermark(conn, 1, DOMAIN) is None
