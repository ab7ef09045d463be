"""
Till column resolution and till listing.

The upstream transactions schema is owned by the payment system and differs
between deployments, so the column holding the till / shortcode is discovered
from a sample row on every request.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tillsms.config import settings
from tillsms.errors import ScanTooLarge, SchemaMismatch
from tillsms.storage import has_table, reflect_table, sample_row

logger = logging.getLogger(__name__)

PREFERRED_TILL_COLUMNS = (
    "till_id",
    "tillid",
    "till_number",
    "tillnumber",
    "till_no",
    "tillno",
    "till",
    "short_code",
    "shortcode",
    "business_short_code",
    "business_shortcode",
    "businessshortcode",
    "paybill",
    "paybill_number",
    "paybillnumber",
)

FUZZY_TILL_MARKERS = ("till", "shortcode", "paybill")

# Ceiling for deriving tills from transactions when there is no tills table
DERIVE_MAX_SCAN = 20000
DERIVE_PAGE_SIZE = 1000


@dataclass(frozen=True)
class ResolvedColumn:
    """A column name validated against a specific table's schema."""
    table: str
    name: str

    def __str__(self) -> str:
        return self.name


def resolve_till_column(sample: Mapping[str, Any], override: Optional[str] = None, table: str = "transactions") -> ResolvedColumn:
    """
    Pick the till column from the keys of a sample row.

    Order: explicit override (case-insensitive), the preference list, then any
    key containing "till", "shortcode" or "paybill".

    Raises:
        SchemaMismatch: the override is not a column, or nothing matched.
    """
    keys = list(sample.keys())
    by_lower = {key.lower(): key for key in keys}
    available = ", ".join(keys)

    override = (override or "").strip()
    if override:
        match = by_lower.get(override.lower())
        if match is None:
            raise SchemaMismatch(
                f"TX_TILL_COLUMN='{override}' not found on {table}. Available columns: {available}"
            )
        return ResolvedColumn(table=table, name=match)

    for candidate in PREFERRED_TILL_COLUMNS:
        match = by_lower.get(candidate)
        if match is not None:
            return ResolvedColumn(table=table, name=match)

    for key in keys:
        lowered = key.lower()
        if any(marker in lowered for marker in FUZZY_TILL_MARKERS):
            return ResolvedColumn(table=table, name=key)

    raise SchemaMismatch(f"Could not detect till column. Set TX_TILL_COLUMN. Available columns: {available}")


def detect_till_column(db: Session, table) -> ResolvedColumn:
    """Resolve the till column of a reflected transactions table from one sample row."""
    row = sample_row(db, table)
    if row is None:
        raise SchemaMismatch(f"{table.name} table has no rows; cannot query by till")
    column = resolve_till_column(row, settings.TX_TILL_COLUMN, table=table.name)
    logger.debug(f"Resolved till column: {column.table}.{column.name}")
    return column


def _is_suspended(row: Mapping[str, Any]) -> bool:
    return bool(row.get("is_suspended")) or str(row.get("status") or "").lower() == "suspended"


def list_tills(db: Session, view: str = "all") -> tuple[list[dict], str]:
    """
    List tills for the till picker.

    Reads the `tills` table when there is one, otherwise derives tills from
    the distinct till values found in transactions.

    Returns:
        (tills, source) where source is "tills" or "transactions"
    """
    view = (view or "all").lower()

    if has_table(db, "tills"):
        tills = reflect_table(db, "tills")
        stmt = select(tills)
        if "created_at" in tills.c:
            stmt = stmt.order_by(tills.c.created_at.desc())
        rows = [dict(row) for row in db.execute(stmt).mappings().all()]
        if view == "active":
            rows = [row for row in rows if not _is_suspended(row)]
        elif view == "suspended":
            rows = [row for row in rows if _is_suspended(row)]
        return rows, "tills"

    logger.info("No tills table; deriving tills from transactions")
    if view == "suspended":
        return [], "transactions"
    return _derive_tills(db), "transactions"


def _derive_tills(db: Session) -> list[dict]:
    transactions = reflect_table(db, "transactions")
    column = detect_till_column(db, transactions)
    till_col = transactions.c[column.name]

    total = db.execute(
        select(func.count()).select_from(transactions).where(till_col.is_not(None))
    ).scalar() or 0
    if total == 0:
        return []
    if total > DERIVE_MAX_SCAN:
        raise ScanTooLarge(
            total,
            DERIVE_MAX_SCAN,
            message=f"Too many transactions ({total}) to derive tills. Create a tills table or reduce data volume.",
        )

    unique: set[str] = set()
    for offset in range(0, total, DERIVE_PAGE_SIZE):
        stmt = (
            select(till_col)
            .where(till_col.is_not(None))
            .order_by(till_col)
            .offset(offset)
            .limit(DERIVE_PAGE_SIZE)
        )
        for value in db.execute(stmt).scalars():
            unique.add(str(value))

    return [
        {"id": value, "till_name": f"Till {value}", "till_number": value, "created_at": None}
        for value in sorted(unique)
    ]
