"""
Tests for the transaction scanner.

Tests cover:
- Filter translation (till, status, date range, amount, search)
- Paged reads concatenated newest first
- The scan ceiling: over-limit counts fail before any page is read
- Explorer listing and single-transaction lookup
"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from tillsms.errors import NotFound, ScanTooLarge, SchemaMismatch, UpstreamError
from tillsms.scanner import (
    TransactionFilter,
    count_transactions,
    get_transaction,
    list_transactions,
    resolve_filter_till,
    scan_transactions,
)
from tillsms.storage import reflect_table


@pytest.fixture
def transactions(db, add_transactions):
    add_transactions(
        {"id": "t1", "phone_number": "0711000001", "amount": 50, "status": "success", "till_number": "5001",
         "reference": "RCP-A", "created_at": "2025-01-14T09:00:00.000Z"},
        {"id": "t2", "phone_number": "0711000002", "amount": 100, "status": "failed", "till_number": "5001",
         "reference": "RCP-B", "created_at": "2025-01-15T09:00:00.000Z"},
        {"id": "t3", "phone_number": "0711000003", "amount": 100, "status": "success", "till_number": "5001",
         "reference": "XYZ-C", "created_at": "2025-01-16T09:00:00.000Z"},
        {"id": "t4", "phone_number": "0711000004", "amount": 100, "status": "pending", "till_number": "7002",
         "reference": "RCP-D", "created_at": "2025-01-17T09:00:00.000Z"},
    )
    return reflect_table(db, "transactions")


def _scan(db, table, filters, **kwargs):
    till = resolve_filter_till(db, table, filters)
    return scan_transactions(db, table, filters, till, **kwargs)


def _failing_execute(db, fail_on):
    """Wrap db.execute so the fail_on-th call raises a store error."""
    real = db.execute
    calls = []

    def execute(*args, **kwargs):
        calls.append(args)
        if len(calls) == fail_on:
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))
        return real(*args, **kwargs)

    return execute, calls


class TestFilters:
    """Filter translation."""

    def test_no_filter(self, db, transactions):
        assert count_transactions(db, transactions, TransactionFilter()) == 4

    def test_till(self, db, transactions):
        rows = _scan(db, transactions, TransactionFilter(till_id="5001"))
        assert [row["id"] for row in rows] == ["t3", "t2", "t1"]

    def test_status(self, db, transactions):
        rows = _scan(db, transactions, TransactionFilter(status="success"))
        assert {row["id"] for row in rows} == {"t1", "t3"}

    def test_inclusive_date_range(self, db, transactions):
        filters = TransactionFilter(start_date="2025-01-15T09:00:00.000Z", end_date="2025-01-16T09:00:00.000Z")
        assert {row["id"] for row in _scan(db, transactions, filters)} == {"t2", "t3"}

    def test_exclusive_end(self, db, transactions):
        filters = TransactionFilter(start_date="2025-01-15T00:00:00.000Z", end_before="2025-01-16T09:00:00.000Z")
        assert {row["id"] for row in _scan(db, transactions, filters)} == {"t2"}

    def test_amount(self, db, transactions):
        assert count_transactions(db, transactions, TransactionFilter(amount=100)) == 3

    def test_search_over_phone_and_reference(self, db, transactions):
        assert {row["id"] for row in _scan(db, transactions, TransactionFilter(search="rcp"))} == {"t1", "t2", "t4"}
        assert {row["id"] for row in _scan(db, transactions, TransactionFilter(search="000003"))} == {"t3"}

    def test_with_status_copies(self):
        original = TransactionFilter(till_id="5001", status="failed")
        copy = original.with_status(None)
        assert copy.status is None
        assert copy.till_id == "5001"
        assert original.status == "failed"

    def test_till_filter_needs_resolved_column(self, db, transactions):
        with pytest.raises(SchemaMismatch):
            scan_transactions(db, transactions, TransactionFilter(till_id="5001"), till=None)

    def test_till_resolved_only_when_filtering_by_till(self, db, transactions):
        assert resolve_filter_till(db, transactions, TransactionFilter(status="success")) is None


class TestScan:
    """Paged scan and the scan ceiling."""

    def test_pages_are_concatenated_newest_first(self, db, transactions):
        rows = _scan(db, transactions, TransactionFilter(), page_size=3)
        assert [row["id"] for row in rows] == ["t4", "t3", "t2", "t1"]
        assert set(rows[0]) == {"id", "phone_number", "status", "amount", "created_at"}

    def test_page_reads(self, db, transactions):
        with patch.object(db, "execute", wraps=db.execute) as spy:
            _scan(db, transactions, TransactionFilter(), page_size=2)
        # one count + two pages
        assert spy.call_count == 3

    def test_empty_match_reads_nothing(self, db, transactions):
        with patch.object(db, "execute", wraps=db.execute) as spy:
            assert _scan(db, transactions, TransactionFilter(till_id="9999")) == []
        # sample row for the till column + the count
        assert spy.call_count == 2

    def test_over_ceiling_reads_no_pages(self, db, transactions):
        with patch.object(db, "execute", wraps=db.execute) as spy:
            with pytest.raises(ScanTooLarge) as exc:
                scan_transactions(db, transactions, TransactionFilter(), max_rows=3)
        assert spy.call_count == 1
        assert exc.value.status_code == 413
        assert exc.value.total == 4
        assert exc.value.payload == {"total": 4, "maxScan": 3}

    def test_at_ceiling_is_allowed(self, db, transactions):
        assert len(_scan(db, transactions, TransactionFilter(), max_rows=4)) == 4

    def test_missing_columns(self, db, transactions):
        with pytest.raises(SchemaMismatch):
            _scan(db, transactions, TransactionFilter(), columns=("id", "msisdn"))

    def test_failed_page_read_aborts_scan(self, db, transactions):
        execute, calls = _failing_execute(db, fail_on=2)
        rows = None
        with patch.object(db, "execute", side_effect=execute):
            with pytest.raises(UpstreamError, match="disk I/O error") as exc:
                rows = scan_transactions(db, transactions, TransactionFilter(), page_size=2)
        assert exc.value.status_code == 400
        # the count, then the first page; no further pages are read
        assert len(calls) == 2
        assert rows is None

    def test_failed_count_reads_no_pages(self, db, transactions):
        execute, calls = _failing_execute(db, fail_on=1)
        with patch.object(db, "execute", side_effect=execute):
            with pytest.raises(UpstreamError) as exc:
                scan_transactions(db, transactions, TransactionFilter())
        assert exc.value.status_code == 400
        assert len(calls) == 1

    def test_session_usable_after_failure(self, db, transactions):
        execute, _ = _failing_execute(db, fail_on=2)
        with patch.object(db, "execute", side_effect=execute):
            with pytest.raises(UpstreamError):
                scan_transactions(db, transactions, TransactionFilter())
        assert len(scan_transactions(db, transactions, TransactionFilter())) == 4


class TestExplorer:
    """list_transactions / get_transaction."""

    def test_page(self, db, transactions):
        filters = TransactionFilter(till_id="5001")
        till = resolve_filter_till(db, transactions, filters)
        rows, total = list_transactions(db, transactions, filters, till, limit=2, offset=0)
        assert total == 3
        assert [row["id"] for row in rows] == ["t3", "t2"]
        assert rows[0]["reference"] == "XYZ-C"

    def test_get(self, db, transactions):
        assert get_transaction(db, transactions, "t2")["amount"] == 100

    def test_get_missing(self, db, transactions):
        with pytest.raises(NotFound):
            get_transaction(db, transactions, "nope")
