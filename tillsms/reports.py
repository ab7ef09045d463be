"""
Read-only reports over a transaction segment: campaign preview, recipient
list with SMS history, and amount categories.
"""

import logging
import math
from dataclasses import asdict
from typing import Any, Optional

from sqlalchemy.orm import Session

from tillsms.errors import ScanTooLarge, ValidationError
from tillsms.scanner import TransactionFilter, count_transactions, resolve_filter_till, scan_transactions
from tillsms.segments import (
    TX_STATUSES,
    DayWindow,
    aggregate_recipients,
    bucket_by_amount,
    compute_amount_coverage,
    compute_coverage,
    count_amount_categories,
    count_statuses,
    day_window,
    lookup_history,
)
from tillsms.storage import reflect_table
from tillsms.utils import clamp, parse_int_safe

logger = logging.getLogger(__name__)

MIN_SCAN, MAX_SCAN = 100, 50000
PREVIEW_MAX_SCAN = 10000
RECIPIENTS_MAX_SCAN = 20000
AMOUNT_CATEGORIES_MAX_SCAN = 10000

# East Africa Time, in browser getTimezoneOffset() convention
DEFAULT_TZ_OFFSET_MIN = -180
MAX_TZ_OFFSET_MIN = 840


def clamp_scan(value: Any, default: int) -> int:
    return clamp(parse_int_safe(value, default), MIN_SCAN, MAX_SCAN)


def status_breakdown(db: Session, table, segment: TransactionFilter, till=None) -> dict[str, int]:
    """Transaction counts per status for a segment, ignoring its own status filter."""
    unfiltered = segment.with_status(None)
    breakdown = {"total": count_transactions(db, table, unfiltered, till)}
    for status in TX_STATUSES:
        breakdown[status] = count_transactions(db, table, unfiltered.with_status(status), till)
    return breakdown


def preview_segment(
    db: Session,
    segment: TransactionFilter,
    max_scan: Any = PREVIEW_MAX_SCAN,
    include_status_breakdown: bool = True,
) -> dict[str, Any]:
    """
    Coverage preview of a segment before a campaign is created from it.

    A ScanTooLarge raised here still carries the status breakdown in its
    payload so the dashboard can show why the segment is too broad.
    """
    max_scan = clamp_scan(max_scan, PREVIEW_MAX_SCAN)
    table = reflect_table(db, "transactions")
    till = resolve_filter_till(db, table, segment)

    breakdown = status_breakdown(db, table, segment, till) if include_status_breakdown else None

    try:
        rows = scan_transactions(db, table, segment, till, max_rows=max_scan)
    except ScanTooLarge as e:
        if breakdown is not None:
            e.payload["statusBreakdown"] = breakdown
        raise

    recipients = aggregate_recipients(rows)
    history = lookup_history(db, recipients.keys()) if recipients else {}
    coverage = compute_coverage(recipients.keys(), history)
    amount_coverage = compute_amount_coverage(bucket_by_amount(rows), history)

    logger.info(f"Preview: {len(rows)} transactions, {coverage.recipients_total} recipients")
    return {
        "statusBreakdown": breakdown,
        "preview": {
            "total_transactions": len(rows),
            "recipients_total": coverage.recipients_total,
            "coverage": asdict(coverage),
            "amountCoverage": [asdict(bucket) for bucket in amount_coverage],
        },
    }


def resolve_window(
    date: Optional[str],
    tz_offset_min: Any = DEFAULT_TZ_OFFSET_MIN,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> DayWindow:
    """
    The reporting window of the recipients report.

    Either a calendar day (date + tzOffsetMin) or an explicit
    [startDate, endDate) range.
    """
    if date:
        offset = clamp(parse_int_safe(tz_offset_min, DEFAULT_TZ_OFFSET_MIN), -MAX_TZ_OFFSET_MIN, MAX_TZ_OFFSET_MIN)
        window = day_window(date, offset)
        if window is None:
            raise ValidationError("Invalid date")
        return window
    if start_date and end_date:
        return DayWindow(start_iso=start_date, end_iso=end_date)
    raise ValidationError("date or startDate/endDate is required")


def _recipient_row(stats, history) -> dict[str, Any]:
    row = {
        "phone": stats.phone_local,
        "phone_e164": stats.phone_e164,
        "last_tx_at": stats.last_tx_at or None,
        "tx_count": stats.tx_count,
        "success_count": stats.success_count,
        "failed_count": stats.failed_count,
        "pending_count": stats.pending_count,
        "amount_sum": stats.amount_sum,
    }
    for prefix, counters in (("sms_ever", history.ever), ("sms_day", history.day)):
        row.update({
            f"{prefix}_count": counters.count,
            f"{prefix}_delivered": counters.delivered,
            f"{prefix}_sent": counters.sent,
            f"{prefix}_failed": counters.failed,
            f"{prefix}_last_status": counters.last_status,
            f"{prefix}_last_at": counters.last_at,
        })
    return row


def recipient_report(
    db: Session,
    segment: TransactionFilter,
    window: DayWindow,
    page: Any = 1,
    limit: Any = 50,
    max_scan: Any = RECIPIENTS_MAX_SCAN,
) -> dict[str, Any]:
    """
    Recipients of a segment inside a window, with their SMS history.

    Transactions are restricted to [window.start, window.end); the sms_day_*
    counters cover messages created in the same window.
    """
    max_scan = clamp_scan(max_scan, RECIPIENTS_MAX_SCAN)
    limit = clamp(parse_int_safe(limit, 50), 10, 200)

    scoped = TransactionFilter(
        till_id=segment.till_id,
        status=segment.status,
        start_date=window.start_iso,
        end_before=window.end_iso,
        amount=segment.amount,
        search=segment.search,
    )
    table = reflect_table(db, "transactions")
    till = resolve_filter_till(db, table, scoped)
    rows = scan_transactions(db, table, scoped, till, max_rows=max_scan)

    recipients = aggregate_recipients(rows)
    history = lookup_history(db, recipients.keys(), window)
    coverage = compute_coverage(recipients.keys(), history)
    statuses = count_statuses(rows)

    ordered = sorted(recipients.values(), key=lambda stats: stats.last_tx_at, reverse=True)
    pages = max(1, math.ceil(len(ordered) / limit))
    page = clamp(parse_int_safe(page, 1), 1, pages)
    start = (page - 1) * limit

    return {
        "window": {"start": window.start_iso, "end": window.end_iso},
        "summary": {
            "totalTx": len(rows),
            "txSuccess": statuses.get("success", 0),
            "txFailed": statuses.get("failed", 0),
            "txPending": statuses.get("pending", 0),
            "recipients": coverage.recipients_total,
            "recipientsMessagedEver": coverage.recipients_messaged,
            "recipientsNewEver": coverage.recipients_new,
        },
        "recipients": [_recipient_row(stats, history[stats.phone_e164]) for stats in ordered[start:start + limit]],
        "total": len(ordered),
        "page": page,
        "pages": pages,
        "limit": limit,
    }


def amount_categories(db: Session, segment: TransactionFilter, max_scan: Any = AMOUNT_CATEGORIES_MAX_SCAN) -> dict[str, Any]:
    """Transaction count per amount for one till."""
    if not segment.till_id:
        raise ValidationError("tillId is required")
    max_scan = clamp_scan(max_scan, AMOUNT_CATEGORIES_MAX_SCAN)

    table = reflect_table(db, "transactions")
    till = resolve_filter_till(db, table, segment)
    rows = scan_transactions(db, table, segment, till, max_rows=max_scan, columns=("amount",))
    return {"categories": count_amount_categories(rows), "totalTransactions": len(rows)}
