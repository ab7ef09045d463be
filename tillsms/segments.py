"""
Segment reconciliation: who is in a segment and what have we already sent them.

Pipeline:
    scanned transaction rows
        -> aggregate_recipients / bucket_by_amount   (dedupe by 254... phone)
        -> lookup_history                            (prior SMS outcomes per phone)
        -> compute_coverage / compute_amount_coverage

Everything here is request-scoped: plain dicts built from one scan, never cached.
Timestamps are compared as ISO-8601 strings, which order chronologically as long
as they share one fixed format.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tillsms.errors import UpstreamError
from tillsms.phone import to_international, to_local
from tillsms.storage import BATCH_SIZE, fetch_message_history
from tillsms.utils import pick_number

logger = logging.getLogger(__name__)

TX_STATUSES = ("success", "failed", "pending")

# Amount buckets returned by the preview
AMOUNT_COVERAGE_LIMIT = 100


def as_timestamp(value: Any) -> str:
    """Render a stored timestamp as a comparable ISO-8601 string ("" when missing)."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
    return str(value)


# =============================================================================
# Recipient Aggregator
# =============================================================================

@dataclass
class RecipientStats:
    phone_e164: str
    phone_local: str
    last_tx_at: str = ""
    tx_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    pending_count: int = 0
    amount_sum: float = 0.0
    # The transaction that set last_tx_at; linked onto campaign messages
    last_tx_id: Optional[str] = None
    last_tx_status: Optional[str] = None
    last_tx_amount: Optional[float] = None


def aggregate_recipients(rows: Iterable[Mapping[str, Any]]) -> dict[str, RecipientStats]:
    """
    Deduplicate transaction rows into recipients keyed by 254... phone.

    Rows whose phone does not normalize are skipped. Statuses outside
    success/failed/pending still count towards tx_count.
    """
    recipients: dict[str, RecipientStats] = {}

    for row in rows:
        phone = to_international(row.get("phone_number"))
        if not phone:
            continue

        status = str(row.get("status") or "").lower()
        created_at = as_timestamp(row.get("created_at"))
        amount = pick_number(row.get("amount"))

        stats = recipients.get(phone)
        if stats is None:
            stats = RecipientStats(phone_e164=phone, phone_local=to_local(phone), last_tx_at=created_at)
            recipients[phone] = stats
            _set_last_tx(stats, row, status, amount)
        elif created_at and (not stats.last_tx_at or created_at > stats.last_tx_at):
            stats.last_tx_at = created_at
            _set_last_tx(stats, row, status, amount)

        stats.tx_count += 1
        if status == "success":
            stats.success_count += 1
        elif status == "failed":
            stats.failed_count += 1
        elif status == "pending":
            stats.pending_count += 1
        if amount is not None:
            stats.amount_sum += amount

    return recipients


def _set_last_tx(stats: RecipientStats, row: Mapping[str, Any], status: str, amount: Optional[float]) -> None:
    tx_id = row.get("id")
    stats.last_tx_id = str(tx_id) if tx_id is not None else None
    stats.last_tx_status = status or None
    stats.last_tx_amount = amount


def count_statuses(rows: Iterable[Mapping[str, Any]]) -> Counter:
    """Transaction count per lower-cased status, over every row."""
    return Counter(str(row.get("status") or "").lower() for row in rows)


@dataclass
class AmountBucket:
    tx_count: int = 0
    phones: set = field(default_factory=set)


def bucket_by_amount(rows: Iterable[Mapping[str, Any]]) -> dict[float, AmountBucket]:
    """
    Group recipients by the amount they paid.

    A phone lands in every bucket it transacted at; rows without a usable phone
    or amount are ignored.
    """
    buckets: dict[float, AmountBucket] = defaultdict(AmountBucket)
    for row in rows:
        phone = to_international(row.get("phone_number"))
        if not phone:
            continue
        amount = pick_number(row.get("amount"))
        if amount is None:
            continue
        bucket = buckets[amount]
        bucket.tx_count += 1
        bucket.phones.add(phone)
    return dict(buckets)


def count_amount_categories(rows: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Transaction count per amount, highest amount first. Missing amounts count as 0."""
    counts: Counter = Counter()
    for row in rows:
        amount = pick_number(row.get("amount"))
        counts[amount if amount is not None else 0.0] += 1
    return [
        {"amount": amount, "count": count}
        for amount, count in sorted(counts.items(), key=lambda item: item[0], reverse=True)
    ]


# =============================================================================
# SMS History Joiner
# =============================================================================

@dataclass
class Counters:
    count: int = 0
    delivered: int = 0
    sent: int = 0
    failed: int = 0
    last_status: Optional[str] = None
    last_at: Optional[str] = None

    def add(self, status: str, at: Optional[str]) -> None:
        self.count += 1
        if status == "delivered":
            self.delivered += 1
        elif status == "sent":
            self.sent += 1
        elif status == "failed":
            self.failed += 1
        if at and (not self.last_at or at > self.last_at):
            self.last_at = at
            self.last_status = status


@dataclass
class HistoryStats:
    ever: Counters = field(default_factory=Counters)
    day: Counters = field(default_factory=Counters)


@dataclass(frozen=True)
class DayWindow:
    """Half-open [start_iso, end_iso) window."""
    start_iso: str
    end_iso: str

    def contains(self, at: Optional[str]) -> bool:
        return bool(at) and self.start_iso <= at < self.end_iso


def day_window(date: str, tz_offset_min: int = 0) -> Optional[DayWindow]:
    """
    The 24h window of a calendar day.

    tz_offset_min follows the browser convention (minutes to add to local time
    to get UTC, so East Africa Time is -180). Returns None for an invalid date.
    """
    try:
        start = datetime.strptime(date, "%Y-%m-%d")
    except (TypeError, ValueError):
        return None
    start = start + timedelta(minutes=tz_offset_min)
    return DayWindow(start_iso=as_timestamp(start), end_iso=as_timestamp(start + timedelta(days=1)))


def lookup_history(
    db: Session,
    phones: Iterable[str],
    window: Optional[DayWindow] = None,
    chunk_size: int = BATCH_SIZE,
) -> defaultdict:
    """
    Fold prior SMS outcomes for each phone.

    Every message counts in `ever`; messages created inside the window also
    count in `day`. Phones with no messages read as zero counters.
    """
    phones = list(dict.fromkeys(p for p in phones if p))
    history: defaultdict = defaultdict(HistoryStats)
    for phone in phones:
        history[phone] = HistoryStats()

    for start in range(0, len(phones), chunk_size):
        chunk = phones[start:start + chunk_size]
        try:
            rows = fetch_message_history(db, chunk)
        except SQLAlchemyError as e:
            db.rollback()
            raise UpstreamError(f"Failed to load SMS stats: {getattr(e, 'orig', None) or e}") from e

        for phone, status, created_at in rows:
            if not phone:
                continue
            status = str(status or "").lower()
            at = as_timestamp(created_at) or None
            entry = history[phone]
            entry.ever.add(status, at)
            if window is not None and window.contains(at):
                entry.day.add(status, at)

    logger.debug(f"Loaded SMS history for {len(phones)} phones")
    return history


# =============================================================================
# Segment Coverage Calculator
# =============================================================================

@dataclass
class Coverage:
    recipients_total: int = 0
    recipients_messaged: int = 0
    recipients_new: int = 0
    recipients_delivered: int = 0
    recipients_failed_only: int = 0
    recipients_sent_only: int = 0


@dataclass
class AmountCoverage:
    amount: float
    tx_count: int
    recipients_total: int
    recipients_new: int
    recipients_messaged: int


def _history_of(history: Mapping[str, HistoryStats], phone: str) -> HistoryStats:
    return history.get(phone) or HistoryStats()


def compute_coverage(recipients: Iterable[str], history: Mapping[str, HistoryStats]) -> Coverage:
    """
    How much of a recipient set has been messaged before.

    failed_only and sent_only are independent flags over the messaged but
    never-delivered recipients; one recipient can count in both.
    """
    coverage = Coverage()
    for phone in set(recipients):
        ever = _history_of(history, phone).ever
        coverage.recipients_total += 1
        if ever.count == 0:
            continue
        coverage.recipients_messaged += 1
        if ever.delivered > 0:
            coverage.recipients_delivered += 1
            continue
        if ever.failed > 0:
            coverage.recipients_failed_only += 1
        if ever.sent > 0:
            coverage.recipients_sent_only += 1

    coverage.recipients_new = coverage.recipients_total - coverage.recipients_messaged
    return coverage


def compute_amount_coverage(
    buckets: Mapping[float, AmountBucket],
    history: Mapping[str, HistoryStats],
    limit: int = AMOUNT_COVERAGE_LIMIT,
) -> list[AmountCoverage]:
    """Per-amount coverage, busiest amounts (by tx_count) first."""
    result = []
    for amount, bucket in buckets.items():
        messaged = sum(1 for phone in bucket.phones if _history_of(history, phone).ever.count > 0)
        result.append(
            AmountCoverage(
                amount=amount,
                tx_count=bucket.tx_count,
                recipients_total=len(bucket.phones),
                recipients_new=len(bucket.phones) - messaged,
                recipients_messaged=messaged,
            )
        )
    result.sort(key=lambda row: row.tx_count, reverse=True)
    return result[:limit]
