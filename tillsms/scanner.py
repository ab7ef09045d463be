"""
Filtered reads over the upstream transactions table.

scan_transactions is the only full read path: it counts first and refuses to
read anything when the count is above the caller's ceiling, so a broad filter
is rejected instead of being silently truncated.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Iterable, Optional

from sqlalchemy import Table, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tillsms.errors import NotFound, ScanTooLarge, SchemaMismatch, UpstreamError
from tillsms.tills import ResolvedColumn, detect_till_column

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1000

# Columns the segment pipeline reads from every matched transaction
SEGMENT_COLUMNS = ("id", "phone_number", "status", "amount", "created_at")

# Free-text search runs over these columns when the table has them
SEARCH_COLUMNS = ("phone_number", "reference")


@dataclass
class TransactionFilter:
    """
    A segment of the transactions table.

    start_date / end_date are inclusive bounds, end_before is exclusive;
    all compare against created_at. Empty values mean "no constraint".
    """
    till_id: Optional[str] = None
    status: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    end_before: Optional[str] = None
    amount: Optional[float] = None
    search: Optional[str] = None

    def with_status(self, status: Optional[str]) -> "TransactionFilter":
        values = asdict(self)
        values["status"] = status
        return TransactionFilter(**values)


def _store_error(e: SQLAlchemyError) -> UpstreamError:
    return UpstreamError(str(getattr(e, "orig", None) or e), status_code=400)


def resolve_filter_till(db: Session, table: Table, filters: TransactionFilter) -> Optional[ResolvedColumn]:
    """Resolve the till column only when the filter actually constrains by till."""
    if not filters.till_id:
        return None
    return detect_till_column(db, table)


def filter_clauses(table: Table, filters: TransactionFilter, till: Optional[ResolvedColumn] = None) -> list:
    """Translate a TransactionFilter into WHERE clauses for the given table."""
    c = table.c
    clauses = []

    if filters.till_id:
        if till is None or till.table != table.name:
            raise SchemaMismatch(f"Till column not resolved for {table.name}")
        clauses.append(c[till.name] == filters.till_id)
    if filters.status:
        clauses.append(c.status == filters.status)
    if filters.start_date:
        clauses.append(c.created_at >= filters.start_date)
    if filters.end_date:
        clauses.append(c.created_at <= filters.end_date)
    if filters.end_before:
        clauses.append(c.created_at < filters.end_before)
    if filters.amount is not None:
        clauses.append(c.amount == filters.amount)
    if filters.search:
        searchable = [c[name] for name in SEARCH_COLUMNS if name in c]
        if searchable:
            clauses.append(or_(*[col.ilike(f"%{filters.search}%") for col in searchable]))

    return clauses


def count_transactions(db: Session, table: Table, filters: TransactionFilter, till: Optional[ResolvedColumn] = None) -> int:
    """Count transactions matching the filter."""
    stmt = select(func.count()).select_from(table).where(*filter_clauses(table, filters, till))
    try:
        total = db.execute(stmt).scalar() or 0
    except SQLAlchemyError as e:
        db.rollback()
        raise _store_error(e) from e
    logger.debug(f"Counted {total} transactions for {filters}")
    return total


def _select_columns(table: Table, columns: Optional[Iterable[str]]):
    if columns is None:
        return [table]
    missing = [name for name in columns if name not in table.c]
    if missing:
        available = ", ".join(table.c.keys())
        raise SchemaMismatch(f"{table.name} is missing columns {missing}. Available columns: {available}")
    return [table.c[name] for name in columns]


def scan_transactions(
    db: Session,
    table: Table,
    filters: TransactionFilter,
    till: Optional[ResolvedColumn] = None,
    max_rows: int = 10000,
    page_size: int = DEFAULT_PAGE_SIZE,
    columns: Optional[Iterable[str]] = SEGMENT_COLUMNS,
) -> list[dict[str, Any]]:
    """
    Read every transaction matching the filter, newest first.

    Raises:
        ScanTooLarge: more than max_rows match; no page is read.
        UpstreamError: the count or a page read failed.
    """
    total = count_transactions(db, table, filters, till)
    if total == 0:
        return []
    if total > max_rows:
        logger.warning(f"Scan rejected: {total} rows match, ceiling is {max_rows}")
        raise ScanTooLarge(total, max_rows)

    selected = _select_columns(table, columns)
    clauses = filter_clauses(table, filters, till)
    order = [table.c.created_at.desc()]
    if "id" in table.c:
        order.append(table.c.id.desc())

    rows: list[dict[str, Any]] = []
    for offset in range(0, total, page_size):
        stmt = (
            select(*selected)
            .where(*clauses)
            .order_by(*order)
            .offset(offset)
            .limit(min(page_size, total - offset))
        )
        try:
            page = db.execute(stmt).mappings().all()
        except SQLAlchemyError as e:
            db.rollback()
            raise _store_error(e) from e
        rows.extend(dict(row) for row in page)

    logger.info(f"Scanned {len(rows)} transactions (count={total}, page_size={page_size})")
    return rows


def list_transactions(
    db: Session,
    table: Table,
    filters: TransactionFilter,
    till: Optional[ResolvedColumn] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[dict[str, Any]], int]:
    """One page of matching transactions, newest first, plus the total match count."""
    total = count_transactions(db, table, filters, till)
    stmt = (
        select(table)
        .where(*filter_clauses(table, filters, till))
        .order_by(table.c.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    try:
        rows = [dict(row) for row in db.execute(stmt).mappings().all()]
    except SQLAlchemyError as e:
        db.rollback()
        raise _store_error(e) from e
    return rows, total


def get_transaction(db: Session, table: Table, transaction_id: str) -> dict[str, Any]:
    row = db.execute(select(table).where(table.c.id == transaction_id)).mappings().first()
    if row is None:
        raise NotFound()
    return dict(row)
