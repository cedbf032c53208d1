"""
Unit tests for the staging to normalized model transform.
"""

import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

from storefront_ingest.staging.writer import StagingCapabilities
from storefront_ingest.transform.costs import CostBook
from storefront_ingest.transform.normalize import (
    NormalizedBatch,
    NormalizedCustomer,
    NormalizedOrder,
    NormalizedOrderItem,
    StagedRecord,
)
from storefront_ingest.transform.upsert import (
    CUSTOMERS_UPSERT,
    ITEMS_UPSERT,
    ORDERS_UPSERT,
    UpsertCounts,
    apply_batch,
    fetch_staged_batch,
    run_transform,
)
from storefront_ingest.utils.state import Watermark

DOMAIN = "acme.myshopify.com"
T0 = datetime(2025, 6, 15, 18, 0, tzinfo=timezone.utc)
FULL_CAPS = StagingCapabilities.from_columns(["id", "payload", "received_at", "domain", "kind"])


def _split_top_level(text):
    parts, depth, current = [], 0, ""
    for char in text:
        if char == "," and depth == 0:
            parts.append(current)
            current = ""
            continue
        depth += {"(": 1, ")": -1}.get(char, 0)
        current += char
    parts.append(current)
    return [" ".join(part.split()) for part in parts]


def _change_guard(statement, table):
    """Split an upsert into its SET assignments, guarded columns and compared values."""
    update = statement.split("DO UPDATE SET", 1)[1]
    assignments, guard = update.split("\n    WHERE", 1)
    set_pairs = [
        (column, " ".join(expression.split()))
        for column, expression in re.findall(r"^\s+(\w+) = (.+?),?$", assignments, re.MULTILINE)
        if column != "updated_at"
    ]
    current, compared = guard.split("IS DISTINCT FROM", 1)
    guarded = re.findall(rf"\b{table}\.(\w+)", current)
    compared = compared.split("RETURNING", 1)[0].strip()[1:-1]
    return set_pairs, guarded, _split_top_level(compared)


def _staged(n, domain=DOMAIN):
    document = {
        "id": 1000 + n,
        "created_at": "2025-06-15T10:00:00Z",
        "total_price": "10.00",
        "line_items": [{"id": n, "sku": "MUG-01", "quantity": 1, "price": "10.00"}],
    }
    return StagedRecord(
        staging_id=f"s{n}",
        tenant_domain=domain,
        kind="order",
        payload=document,
        received_at=T0 + timedelta(seconds=n),
    )


class TestUpsertStatements:
    def test_natural_keys(self):
        assert "ON CONFLICT (email)" in CUSTOMERS_UPSERT
        assert "ON CONFLICT (shop_domain, external_id)" in ORDERS_UPSERT
        assert "ON CONFLICT (shop_domain, order_external_id, external_item_id)" in ITEMS_UPSERT

    def test_unchanged_rows_are_not_rewritten(self):
        for statement in (CUSTOMERS_UPSERT, ORDERS_UPSERT, ITEMS_UPSERT):
            assert "IS DISTINCT FROM" in statement
            assert "RETURNING (xmax = 0) AS inserted" in statement

    def test_counts(self):
        counts = UpsertCounts(sent=5, inserted=2, updated=1)
        counts.add(UpsertCounts(sent=1, inserted=1))
        assert counts.to_dict() == {"sent": 6, "inserted": 3, "updated": 1, "unchanged": 2}

    def test_change_guard_covers_every_assigned_column(self):
        for statement, table in (
            (CUSTOMERS_UPSERT, "customers"),
            (ORDERS_UPSERT, "orders"),
            (ITEMS_UPSERT, "order_items"),
        ):
            set_pairs, guarded, compared = _change_guard(statement, table)

            assert [column for column, _ in set_pairs] == guarded, table
            assert [expression for _, expression in set_pairs] == compared, table

    def test_only_the_update_timestamp_is_unguarded(self):
        update = ORDERS_UPSERT.split("DO UPDATE SET", 1)[1].split("\n    WHERE", 1)[0]
        assigned = re.findall(r"^\s+(\w+) = ", update, re.MULTILINE)
        _, guarded, _ = _change_guard(ORDERS_UPSERT, "orders")

        assert set(assigned) - set(guarded) == {"updated_at"}


class TestFetchStagedBatch:
    def test_first_batch(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchall.return_value = [("s1", DOMAIN, "order", {"id": 1}, T0)]

        records = fetch_staged_batch(conn, FULL_CAPS, None, None, 50)

        sql, params = cursor.execute.call_args[0]
        assert "ORDER BY received_at, id::text" in sql
        assert "(received_at, id::text) >" not in sql
        assert params == [50]
        assert records == [StagedRecord("s1", DOMAIN, "order", {"id": 1}, T0)]

    def test_after_watermark_for_one_store(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchall.return_value = []

        fetch_staged_batch(conn, FULL_CAPS, Watermark(T0, "s9"), DOMAIN, 50)

        sql, params = cursor.execute.call_args[0]
        assert "(received_at, id::text) > (%s, %s)" in sql
        assert "domain = %s" in sql
        assert params == [T0, "s9", DOMAIN, 50]

    def test_missing_optional_columns(self, mock_conn):
        conn, cursor = mock_conn
        cursor.fetchall.return_value = [("s1", None, None, "{}", T0)]
        caps = StagingCapabilities.from_columns(["id", "payload", "received_at"])

        records = fetch_staged_batch(conn, caps, None, DOMAIN, 10)

        sql = cursor.execute.call_args[0][0]
        assert "NULL::text" in sql
        assert "domain = %s" not in sql
        assert records[0].tenant_domain == ""


class TestApplyBatch:
    @patch("storefront_ingest.transform.upsert.execute_values")
    def test_counts_per_entity(self, mock_execute_values, mock_conn):
        conn, _ = mock_conn
        mock_execute_values.side_effect = [
            [(True,)],
            [(True,), (False,)],
            [],
        ]
        batch = NormalizedBatch(
            customers=[NormalizedCustomer("jane@example.com", "Jane", None, T0, T0)],
            orders=[
                NormalizedOrder(DOMAIN, "1001", T0, Decimal("10"), "jane@example.com"),
                NormalizedOrder(DOMAIN, "1002", T0, Decimal("20"), None),
            ],
            items=[NormalizedOrderItem(DOMAIN, "1001", "1", "MUG-01", 1, Decimal("10"))],
        )

        counts = apply_batch(conn, 3, batch)

        assert counts["customers"].inserted == 1
        assert counts["orders"].to_dict() == {"sent": 2, "inserted": 1, "updated": 1, "unchanged": 0}
        assert counts["items"].unchanged == 1
        order_rows = mock_execute_values.call_args_list[1][0][2]
        assert order_rows[0][:3] == (3, DOMAIN, "1001")
        assert mock_execute_values.call_args_list[1].kwargs["fetch"] is True
        conn.commit.assert_not_called()

    @patch("storefront_ingest.transform.upsert.execute_values")
    def test_empty_batch_sends_nothing(self, mock_execute_values, mock_conn):
        conn, _ = mock_conn

        counts = apply_batch(conn, 3, NormalizedBatch())

        mock_execute_values.assert_not_called()
        assert counts["orders"].sent == 0


@patch("storefront_ingest.transform.upsert.Config.TRANSFORM_OVERLAP_SECONDS", 300)
@patch("storefront_ingest.transform.upsert.set_transform_watermark")
@patch("storefront_ingest.transform.upsert.get_transform_watermark")
@patch("storefront_ingest.transform.upsert.apply_batch")
@patch("storefront_ingest.transform.upsert.load_cost_book")
@patch("storefront_ingest.transform.upsert.fetch_staged_batch")
@patch("storefront_ingest.transform.upsert.resolve_capabilities")
class TestRunTransform:
    def _apply(self, conn, channel_id, batch):
        return {
            "customers": UpsertCounts(),
            "orders": UpsertCounts(sent=len(batch.orders), inserted=len(batch.orders)),
            "items": UpsertCounts(sent=len(batch.items), inserted=len(batch.items)),
        }

    def test_batches_commit_with_watermark(
        self, mock_caps, mock_fetch, mock_costs, mock_apply, mock_get_wm, mock_set_wm
    ):
        conn = MagicMock()
        mock_caps.return_value = FULL_CAPS
        mock_get_wm.return_value = None
        mock_fetch.side_effect = [[_staged(1), _staged(2)], [_staged(3)]]
        mock_costs.return_value = CostBook([])
        mock_apply.side_effect = self._apply

        result = run_transform(conn, 3, batch_size=2)

        assert result.batches == 2
        assert result.staged == 3
        assert result.orders.inserted == 3
        assert conn.commit.call_count == 2
        assert [c.args[3].staging_id for c in mock_set_wm.call_args_list] == ["s2", "s3"]
        assert result.to_dict()["watermark"]["id"] == "s3"
        # Second read resumes after the first batch's last row.
        assert mock_fetch.call_args_list[1].args[2] == Watermark(_staged(2).received_at, "s2")

    def test_resumes_from_stored_watermark(
        self, mock_caps, mock_fetch, mock_costs, mock_apply, mock_get_wm, mock_set_wm
    ):
        conn = MagicMock()
        stored = Watermark(T0, "s5")
        mock_caps.return_value = FULL_CAPS
        mock_get_wm.return_value = stored
        mock_fetch.return_value = []

        result = run_transform(conn, 3, domain=DOMAIN, batch_size=10)

        mock_get_wm.assert_called_once_with(conn, 3, DOMAIN)
        # Reads start the trailing window before the stored position.
        assert mock_fetch.call_args.args[2] == Watermark(T0 - timedelta(seconds=300), "")
        assert result.batches == 0
        assert result.scope == DOMAIN
        assert result.watermark is stored
        mock_set_wm.assert_not_called()
        conn.commit.assert_not_called()

    def test_late_commit_behind_watermark_is_folded(
        self, mock_caps, mock_fetch, mock_costs, mock_apply, mock_get_wm, mock_set_wm
    ):
        """A row stamped before the watermark but committed after it still reaches the model."""
        conn = MagicMock()
        stored = Watermark(_staged(10).received_at, "s10")
        mock_caps.return_value = FULL_CAPS
        mock_get_wm.return_value = stored
        mock_fetch.side_effect = [[_staged(4), _staged(10)]]
        mock_costs.return_value = CostBook([])
        mock_apply.side_effect = self._apply

        result = run_transform(conn, 3, batch_size=10)

        folded = [order.external_id for order in mock_apply.call_args.args[2].orders]
        assert folded == ["1004", "1010"]
        assert result.orders.inserted == 2
        mock_set_wm.assert_called_once_with(conn, 3, None, stored)
        assert result.watermark == stored

    def test_overlap_never_moves_watermark_back(
        self, mock_caps, mock_fetch, mock_costs, mock_apply, mock_get_wm, mock_set_wm
    ):
        conn = MagicMock()
        stored = Watermark(_staged(10).received_at, "s10")
        mock_caps.return_value = FULL_CAPS
        mock_get_wm.return_value = stored
        mock_fetch.side_effect = [[_staged(8), _staged(9)], [_staged(10), _staged(11)], []]
        mock_costs.return_value = CostBook([])
        mock_apply.side_effect = self._apply

        result = run_transform(conn, 3, batch_size=2)

        assert [c.args[3] for c in mock_set_wm.call_args_list] == [
            stored,
            Watermark(_staged(11).received_at, "s11"),
        ]
        # Within a run reads continue after the last row read, not the stored position.
        assert mock_fetch.call_args_list[1].args[2] == Watermark(_staged(9).received_at, "s9")
        assert result.watermark.staging_id == "s11"

    def test_zero_overlap_reads_after_watermark(
        self, mock_caps, mock_fetch, mock_costs, mock_apply, mock_get_wm, mock_set_wm
    ):
        stored = Watermark(T0, "s5")
        mock_caps.return_value = FULL_CAPS
        mock_get_wm.return_value = stored
        mock_fetch.return_value = []

        # Applied in the body: a method-level @patch is entered before the
        # class-level one for the same attribute and would be overridden.
        with patch("storefront_ingest.transform.upsert.Config.TRANSFORM_OVERLAP_SECONDS", 0):
            run_transform(MagicMock(), 3, batch_size=10)

        assert mock_fetch.call_args.args[2] is stored

    def test_full_ignores_watermark(
        self, mock_caps, mock_fetch, mock_costs, mock_apply, mock_get_wm, mock_set_wm
    ):
        conn = MagicMock()
        mock_caps.return_value = FULL_CAPS
        mock_fetch.return_value = []

        result = run_transform(conn, 3, full=True, batch_size=10)

        mock_get_wm.assert_not_called()
        assert mock_fetch.call_args.args[2] is None
        assert result.full is True
        assert result.scope == "*"

    def test_domain_without_column_folds_all_stores(
        self, mock_caps, mock_fetch, mock_costs, mock_apply, mock_get_wm, mock_set_wm
    ):
        conn = MagicMock()
        mock_caps.return_value = StagingCapabilities.from_columns(["id", "payload", "received_at"])
        mock_get_wm.return_value = None
        mock_fetch.return_value = []

        result = run_transform(conn, 3, domain=DOMAIN, batch_size=10)

        assert result.scope == "*"
        mock_get_wm.assert_called_once_with(conn, 3, None)

    def test_rerun_of_same_content_is_counted_unchanged(
        self, mock_caps, mock_fetch, mock_costs, mock_apply, mock_get_wm, mock_set_wm
    ):
        conn = MagicMock()
        mock_caps.return_value = FULL_CAPS
        mock_fetch.side_effect = [[_staged(1)]]
        mock_costs.return_value = CostBook([])
        mock_apply.return_value = {
            "customers": UpsertCounts(),
            "orders": UpsertCounts(sent=1),
            "items": UpsertCounts(sent=1),
        }

        result = run_transform(conn, 3, full=True, batch_size=10)

        assert result.orders.unchanged == 1
        assert result.items.unchanged == 1
        mock_costs.assert_called_once_with(conn, ["MUG-01"])
