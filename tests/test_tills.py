"""
Tests for till column resolution and till listing.
"""

import pytest
from sqlalchemy import Column, MetaData, String, Table, insert

from tillsms.errors import ScanTooLarge, SchemaMismatch
from tillsms.storage import reflect_table
from tillsms.tills import ResolvedColumn, detect_till_column, list_tills, resolve_till_column


class TestResolveTillColumn:
    """Tests for resolve_till_column."""

    def test_override_matches_case_insensitively(self):
        sample = {"id": 1, "Store_Code": "5001", "till_number": "5001"}
        column = resolve_till_column(sample, override="store_code")
        assert column == ResolvedColumn(table="transactions", name="Store_Code")

    def test_override_missing_lists_available_columns(self):
        with pytest.raises(SchemaMismatch) as exc:
            resolve_till_column({"id": 1, "amount": 10}, override="till")
        assert "Available columns: id, amount" in exc.value.message

    def test_preference_order(self):
        sample = {"paybill": "1", "shortcode": "2", "till_number": "3", "id": 4}
        assert resolve_till_column(sample).name == "till_number"

    def test_preference_is_case_insensitive(self):
        assert resolve_till_column({"TillNumber": "5001"}).name == "TillNumber"

    def test_fuzzy_match(self):
        assert resolve_till_column({"id": 1, "merchant_till_ref": "5001"}).name == "merchant_till_ref"
        assert resolve_till_column({"org_paybill_code": "1"}).name == "org_paybill_code"

    def test_no_match(self):
        with pytest.raises(SchemaMismatch) as exc:
            resolve_till_column({"id": 1, "amount": 10})
        assert "Set TX_TILL_COLUMN" in exc.value.message
        assert exc.value.status_code == 500

    def test_deterministic(self):
        sample = {"shortcode": "1", "business_short_code": "2", "x_till": "3"}
        assert {resolve_till_column(sample).name for _ in range(5)} == {"shortcode"}

    def test_column_is_bound_to_its_table(self):
        column = resolve_till_column({"till_id": 1}, table="tills")
        assert column.table == "tills"
        assert str(column) == "till_id"


class TestDetectTillColumn:
    """Tests for detect_till_column over the database."""

    def test_from_sample_row(self, db, add_transactions):
        add_transactions({})
        column = detect_till_column(db, reflect_table(db, "transactions"))
        assert column == ResolvedColumn(table="transactions", name="till_number")

    def test_empty_table(self, db):
        with pytest.raises(SchemaMismatch) as exc:
            detect_till_column(db, reflect_table(db, "transactions"))
        assert "has no rows" in exc.value.message

    def test_missing_table(self, db):
        with pytest.raises(SchemaMismatch):
            reflect_table(db, "no_such_table")


class TestListTills:
    """Tests for list_tills."""

    def test_derived_from_transactions(self, db, add_transactions):
        add_transactions({"till_number": "7002"}, {"till_number": "5001"}, {"till_number": "7002"})
        tills, source = list_tills(db)
        assert source == "transactions"
        assert [till["till_number"] for till in tills] == ["5001", "7002"]
        assert tills[0]["till_name"] == "Till 5001"

    def test_derived_has_no_suspended_view(self, db, add_transactions):
        add_transactions({})
        assert list_tills(db, "suspended") == ([], "transactions")

    def test_derive_ceiling(self, db, add_transactions, monkeypatch):
        monkeypatch.setattr("tillsms.tills.DERIVE_MAX_SCAN", 2)
        add_transactions({}, {}, {})
        with pytest.raises(ScanTooLarge):
            list_tills(db)

    def test_from_tills_table(self, db):
        metadata = MetaData()
        tills = Table(
            "tills",
            metadata,
            Column("id", String, primary_key=True),
            Column("till_name", String),
            Column("status", String),
            Column("created_at", String),
        )
        metadata.create_all(bind=db.get_bind())
        try:
            db.execute(insert(tills), [
                {"id": "1", "till_name": "Main", "status": "active", "created_at": "2025-01-01T00:00:00.000Z"},
                {"id": "2", "till_name": "Old", "status": "suspended", "created_at": "2025-01-02T00:00:00.000Z"},
            ])
            db.commit()

            rows, source = list_tills(db, "all")
            assert source == "tills"
            assert [row["id"] for row in rows] == ["2", "1"]
            assert [row["id"] for row in list_tills(db, "active")[0]] == ["1"]
            assert [row["id"] for row in list_tills(db, "suspended")[0]] == ["2"]
        finally:
            db.close()
            metadata.drop_all(bind=db.get_bind())
