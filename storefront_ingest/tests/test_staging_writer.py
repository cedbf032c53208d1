"""
Unit tests for the staging writer and its column capabilities.
"""

import json
from unittest.mock import patch

import pytest

from storefront_ingest.errors import StagingSchemaError
from storefront_ingest.staging.writer import (
    CAPABILITIES_VERSION,
    StagingCapabilities,
    build_staging_row,
    count_staging_rows,
    resolve_capabilities,
    write_staging_records,
)

FULL_COLUMNS = ["id", "payload", "received_at", "domain", "channel_id", "source", "kind", "external_id"]


class TestStagingCapabilities:
    def test_full_table(self):
        caps = StagingCapabilities.from_columns(FULL_COLUMNS)

        assert caps.version == CAPABILITIES_VERSION
        assert caps.insert_columns == ("payload", "channel_id", "source", "kind", "domain", "external_id")
        assert caps.template == "(%s::jsonb, %s::int, %s::text, %s::text, %s::text, %s::text)"

    def test_minimal_table_omits_missing_columns(self):
        caps = StagingCapabilities.from_columns(["id", "payload", "received_at", "domain"])

        assert caps.insert_columns == ("payload", "domain")
        assert caps.template == "(%s::jsonb, %s::text)"
        assert caps.to_dict()["omitted"] == ["channel_id", "source", "kind", "external_id"]
        assert caps.has("domain")
        assert not caps.has("kind")

    def test_payload_is_required(self):
        with pytest.raises(StagingSchemaError):
            StagingCapabilities.from_columns(["id", "domain"])

    def test_resolved_from_information_schema(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchall.return_value = [(name,) for name in FULL_COLUMNS]

        caps = resolve_capabilities(conn)

        assert "information_schema.columns" in cursor.execute.call_args[0][0]
        assert caps.has("external_id")


class TestWriteStagingRecords:
    def test_row_follows_insert_order(self):
        caps = StagingCapabilities.from_columns(["payload", "kind", "domain"])

        row = build_staging_row(caps, {"id": 1001, "total_price": "5.00"}, 3, "a.myshopify.com")

        assert json.loads(row[0]) == {"id": 1001, "total_price": "5.00"}
        assert row[1:] == ("order", "a.myshopify.com")

    def test_external_id_is_text(self):
        caps = StagingCapabilities.from_columns(FULL_COLUMNS)
        row = build_staging_row(caps, {"id": 1001}, 3, "a.myshopify.com")
        assert row[-1] == "1001"
        assert row[1] == 3

    @patch("storefront_ingest.staging.writer.execute_values")
    def test_batch_insert(self, mock_execute_values, mock_conn):
        conn, cursor = mock_conn
        caps = StagingCapabilities.from_columns(["payload", "domain"])

        written = write_staging_records(conn, caps, [{"id": 1}, {"id": 2}], 3, "a.myshopify.com")

        assert written == 2
        args, kwargs = mock_execute_values.call_args
        assert args[0] is cursor
        assert args[1] == "INSERT INTO staging_raw (payload, domain) VALUES %s"
        assert len(args[2]) == 2
        assert kwargs["template"] == "(%s::jsonb, %s::text)"
        conn.commit.assert_not_called()

    @patch("storefront_ingest.staging.writer.execute_values")
    def test_empty_page_writes_nothing(self, mock_execute_values, mock_conn):
        conn, _ = mock_conn
        caps = StagingCapabilities.from_columns(["payload"])

        assert write_staging_records(conn, caps, [], 3, "a.myshopify.com") == 0
        mock_execute_values.assert_not_called()

    def test_count_by_domain(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchone.return_value = (7,)

        assert count_staging_rows(conn, "a.myshopify.com") == 7
        sql, params = cursor.execute.call_args[0]
        assert "WHERE domain = %s" in sql
        assert params == ("a.myshopify.com",)
