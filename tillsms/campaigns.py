"""
Campaign lifecycle: create, dispatch, refresh delivery status, resend.

Campaign counters (target/sent/delivered/failed) are only ever written by
recompute_counts, which derives them from the campaign's message rows.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tillsms.config import settings
from tillsms.errors import (
    DispatchInProgress,
    NoMatchingTransactions,
    NotFound,
    NoValidPhones,
    SmsGatewayError,
    UpstreamError,
    ValidationError,
)
from tillsms.fluxsms import FluxSmsClient
from tillsms.metrics import record_message_transitions
from tillsms.phone import is_kenyan_mobile, to_international, to_local
from tillsms.scanner import TransactionFilter, resolve_filter_till, scan_transactions
from tillsms.segments import aggregate_recipients
from tillsms.storage import (
    claim_campaign,
    count_messages_by_status,
    get_campaign,
    insert_campaign,
    insert_messages,
    mark_campaign_sending,
    reflect_table,
    requeue_failed_messages,
    select_messages_to_check,
    select_queued_messages,
    update_campaign,
    utc_now_iso,
)
from tillsms.utils import clamp, parse_int_safe, pick_string

logger = logging.getLogger(__name__)

MESSAGE_STATUSES = ("queued", "sent", "delivered", "failed")
MAX_MESSAGE_LENGTH = 1000
DEFAULT_SENDER_ID = "fluxsms"

DEFAULT_MAX_SCAN = 10000
MIN_SCAN, MAX_SCAN = 100, 50000

DEFAULT_DISPATCH_SIZE = 300
MAX_DISPATCH_SIZE = 1000

DEFAULT_REFRESH_SIZE = 20
MAX_REFRESH_SIZE = 50

# FluxSMS delivery-status code for a delivered message
DELIVERED_CODE = 32


def validate_message(message: Any) -> str:
    text = pick_string(message)
    if not text:
        raise ValidationError("message is required")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"message too long (max {MAX_MESSAGE_LENGTH} chars)")
    return text


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def is_send_success(response: Optional[dict]) -> bool:
    """A per-recipient send result counts as sent on code 200 or description "success"."""
    if not response:
        return False
    return (
        _as_int(response.get("response-code")) == 200
        or str(response.get("response-description") or "").lower() == "success"
    )


def map_delivery_status(code: Optional[int], description: Optional[str]) -> str:
    """Map a FluxSMS delivery report onto a message status."""
    if code == DELIVERED_CODE:
        return "delivered"
    text = (description or "").lower()
    if "delivered" in text:
        return "delivered"
    if "failed" in text or "undeliver" in text:
        return "failed"
    return "sent"


def _segment_audit(segment: TransactionFilter, total_transactions: int) -> dict[str, Any]:
    return {
        "tillId": segment.till_id,
        "status": segment.status,
        "startDate": segment.start_date,
        "endDate": segment.end_date,
        "amount": segment.amount,
        "search": segment.search,
        "totalTransactions": total_transactions,
    }


# =============================================================================
# Counters
# =============================================================================

def get_campaign_counts(db: Session, campaign_id: str) -> dict[str, int]:
    counts = count_messages_by_status(db, campaign_id)
    return {status: counts.get(status, 0) for status in MESSAGE_STATUSES}


def recompute_counts(db: Session, campaign_id: str, **stamps: str) -> dict[str, int]:
    """
    Rewrite a campaign's counters from its message rows.

    stamps are extra campaign columns to set in the same update
    (last_dispatch_at / last_refresh_at).
    """
    counts = get_campaign_counts(db, campaign_id)
    update_campaign(
        db,
        campaign_id,
        target_count=sum(counts.values()),
        sent_count=counts["sent"] + counts["delivered"],
        delivered_count=counts["delivered"],
        failed_count=counts["failed"],
        **stamps,
    )
    db.commit()
    logger.debug(f"Recomputed counts for campaign {campaign_id}: {counts}")
    return counts


def require_campaign(db: Session, campaign_id: str):
    campaign_id = pick_string(campaign_id)
    if not campaign_id:
        raise ValidationError("Invalid id")
    campaign = get_campaign(db, campaign_id)
    if campaign is None:
        raise NotFound()
    return campaign


# =============================================================================
# Create
# =============================================================================

def create_campaign(
    db: Session,
    message: Any,
    segment: TransactionFilter,
    name: Optional[str] = None,
    sender_id: Optional[str] = None,
    created_by: Optional[str] = None,
    max_scan: Any = DEFAULT_MAX_SCAN,
):
    """
    Create a draft campaign with one queued message per unique recipient.

    Raises:
        ValidationError: empty or over-long message
        ScanTooLarge: the segment matches more than max_scan transactions
        NoMatchingTransactions / NoValidPhones: nobody to message
    """
    text = validate_message(message)
    max_scan = clamp(parse_int_safe(max_scan, DEFAULT_MAX_SCAN), MIN_SCAN, MAX_SCAN)

    transactions = reflect_table(db, "transactions")
    till = resolve_filter_till(db, transactions, segment)
    rows = scan_transactions(db, transactions, segment, till, max_rows=max_scan)
    if not rows:
        raise NoMatchingTransactions()

    recipients = aggregate_recipients(rows)
    if not recipients:
        raise NoValidPhones()

    now = utc_now_iso()
    try:
        campaign = insert_campaign(
            db,
            created_at=now,
            name=pick_string(name) or f"Campaign {now}",
            sender_id=pick_string(sender_id) or DEFAULT_SENDER_ID,
            message=text,
            segment=_segment_audit(segment, len(rows)),
            created_by_email=created_by,
            status="draft",
            target_count=len(recipients),
        )
        insert_messages(
            db,
            [
                {
                    "campaign_id": campaign.id,
                    "created_at": now,
                    "phone": stats.phone_local,
                    "phone_normalized": stats.phone_e164,
                    "tx_id": stats.last_tx_id,
                    "tx_status": stats.last_tx_status,
                    "amount": stats.last_tx_amount,
                    "status": "queued",
                }
                for stats in recipients.values()
            ],
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise UpstreamError(f"Failed to create campaign: {getattr(e, 'orig', None) or e}") from e

    db.refresh(campaign)
    record_message_transitions("queued", len(recipients))
    logger.info(f"Campaign created: id={campaign.id}, recipients={len(recipients)}, transactions={len(rows)}")
    return campaign


# =============================================================================
# Dispatch
# =============================================================================

def _stale_lock_cutoff() -> str:
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=settings.DISPATCH_LOCK_SECONDS)
    return cutoff.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _apply_send_results(messages: list, bulk: dict[str, Any]) -> tuple[int, int]:
    """Set each message to sent/failed from the bulk response, matched by 254... phone."""
    by_mobile: dict[str, dict] = {}
    for response in bulk.get("responses") or []:
        if not isinstance(response, dict):
            continue
        mobile = to_international(response.get("mobile"))
        if mobile:
            by_mobile[mobile] = response

    sent = failed = 0
    for message in messages:
        phone = to_international(message.phone_normalized or message.phone)
        response = by_mobile.get(phone) if phone else None
        if is_send_success(response):
            message.status = "sent"
            sent += 1
        else:
            message.status = "failed"
            failed += 1
        message.flux_message_id = pick_string(response.get("messageid")) if response else None
        message.send_response = response or bulk
    return sent, failed


async def dispatch_campaign(
    db: Session,
    client: FluxSmsClient,
    campaign_id: str,
    max_recipients: Any = DEFAULT_DISPATCH_SIZE,
) -> dict[str, Any]:
    """
    Send the oldest queued messages of a campaign in one bulk call.

    The campaign is held in status "dispatching" for the duration so a second
    dispatch of the same campaign is refused (DispatchInProgress) rather than
    sending the same queued rows twice.
    """
    max_recipients = clamp(parse_int_safe(max_recipients, DEFAULT_DISPATCH_SIZE), 1, MAX_DISPATCH_SIZE)
    campaign = require_campaign(db, campaign_id)
    campaign_id = campaign.id

    text = pick_string(campaign.message)
    if not text:
        raise ValidationError("Campaign has no message")
    sender_id = pick_string(campaign.sender_id) or DEFAULT_SENDER_ID

    previous_status = campaign.status
    if not claim_campaign(db, campaign_id, previous_status, utc_now_iso(), _stale_lock_cutoff()):
        raise DispatchInProgress("Dispatch already in progress for this campaign")
    final_status = previous_status if previous_status != "dispatching" else "sending"

    recipients: list = []
    bulk: Optional[dict[str, Any]] = None
    sent = failed = 0
    try:
        queued = select_queued_messages(db, campaign_id, max_recipients)
        recipients = [message for message in queued if pick_string(message.phone)]
        if recipients:
            bulk = await client.send_bulk([message.phone for message in recipients], text, sender_id)
            sent, failed = _apply_send_results(recipients, bulk)
            final_status = "sending"
    except Exception:
        db.rollback()
        raise
    finally:
        # Message updates and the lock release land in one commit, before counting
        update_campaign(db, campaign_id, status=final_status, dispatch_locked_at=None)
        db.commit()

    record_message_transitions("sent", sent)
    record_message_transitions("failed", failed)
    counts = recompute_counts(db, campaign_id, last_dispatch_at=utc_now_iso())

    if not recipients:
        logger.info(f"Campaign {campaign_id}: no queued recipients")
        return {"message": "No queued recipients", "dispatched": 0, "counts": counts}

    logger.info(f"Campaign {campaign_id} dispatched: {len(recipients)} messages, sent={sent}, failed={failed}")
    return {"dispatched": len(recipients), "sent": sent, "failed": failed, "counts": counts, "raw": bulk}


# =============================================================================
# Refresh
# =============================================================================

async def _check_delivery(client: FluxSmsClient, message_id: str) -> tuple[Optional[dict], Optional[str]]:
    try:
        return await client.message_status(message_id), None
    except SmsGatewayError as e:
        logger.warning(f"Delivery check failed for {message_id}: {e}")
        return None, str(e) or "Failed"


async def refresh_campaign(
    db: Session,
    client: FluxSmsClient,
    campaign_id: str,
    limit: Any = DEFAULT_REFRESH_SIZE,
) -> dict[str, Any]:
    """
    Poll FluxSMS for the delivery status of sent messages.

    A failed status call only stamps last_checked_at on that message and is
    reported in its result entry; the rest of the batch still updates.
    """
    limit = clamp(parse_int_safe(limit, DEFAULT_REFRESH_SIZE), 1, MAX_REFRESH_SIZE)
    campaign_id = require_campaign(db, campaign_id).id

    rows = [row for row in select_messages_to_check(db, campaign_id, limit) if pick_string(row.flux_message_id)]
    outcomes = await asyncio.gather(*(_check_delivery(client, row.flux_message_id.strip()) for row in rows))

    results = []
    transitions = {"delivered": 0, "failed": 0}
    checked_at = utc_now_iso()
    for row, (response, error) in zip(rows, outcomes):
        row.last_checked_at = checked_at
        if error is not None:
            results.append({"id": row.id, "error": error})
            continue

        code = _as_int(response.get("delivery-status"))
        description = pick_string(response.get("delivery-description"))
        next_status = map_delivery_status(code, description)

        row.status = next_status
        row.delivery_status_code = code
        row.delivery_status_text = description
        row.delivery_response = response
        if next_status in transitions:
            transitions[next_status] += 1
        results.append({"id": row.id, "status": next_status, "raw": response})

    db.commit()
    for status, count in transitions.items():
        record_message_transitions(status, count)

    counts = recompute_counts(db, campaign_id, last_refresh_at=utc_now_iso())
    logger.info(f"Campaign {campaign_id} refreshed {len(results)} messages: {transitions}")
    return {"refreshed": len(results), "counts": counts, "results": results}


# =============================================================================
# Resend
# =============================================================================

def resend_failed(db: Session, campaign_id: str) -> int:
    """Requeue every failed message of a campaign. Returns how many were requeued."""
    campaign_id = require_campaign(db, campaign_id).id

    rescheduled = requeue_failed_messages(db, campaign_id)
    if rescheduled:
        mark_campaign_sending(db, campaign_id)
    db.commit()

    if rescheduled:
        record_message_transitions("queued", rescheduled)
        recompute_counts(db, campaign_id)
    logger.info(f"Campaign {campaign_id}: requeued {rescheduled} failed messages")
    return rescheduled


# =============================================================================
# Test send
# =============================================================================

async def send_test_sms(
    db: Session,
    client: FluxSmsClient,
    phone: Any,
    message: Any,
    sender_id: Optional[str] = None,
    created_by: Optional[str] = None,
) -> dict[str, Any]:
    """
    Send one SMS to one phone and log it as a single-message campaign.

    Logging is best effort: if it fails the send still reports success with
    campaignId None.
    """
    phone_raw = pick_string(phone)
    if not phone_raw:
        raise ValidationError("phone is required")
    text = validate_message(message)

    phone_e164 = to_international(phone_raw)
    phone_local = to_local(phone_e164)
    if not is_kenyan_mobile(phone_e164, phone_local):
        raise ValidationError("Invalid phone number")

    sender_id = pick_string(sender_id)
    response = await client.send_single(phone_local, text, sender_id)

    description = str(response.get("response-description") or "").lower()
    ok = is_send_success(response) or "success" in description
    status = "sent" if ok else "failed"
    record_message_transitions(status)

    campaign_id: Optional[str] = None
    try:
        now = utc_now_iso()
        campaign = insert_campaign(
            db,
            created_at=now,
            created_by_email=created_by,
            name=f"Test SMS {phone_local}",
            sender_id=sender_id or DEFAULT_SENDER_ID,
            message=text,
            segment={"mode": "test", "phone": phone_e164},
            status=status,
            last_dispatch_at=now,
        )
        insert_messages(
            db,
            [{
                "campaign_id": campaign.id,
                "created_at": now,
                "phone": phone_local,
                "phone_normalized": phone_e164,
                "status": status,
                "flux_message_id": pick_string(response.get("messageid")),
                "send_response": response,
            }],
        )
        db.commit()
        campaign_id = campaign.id
        recompute_counts(db, campaign_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to log test SMS")

    return {
        "phone": {"raw": phone_raw, "e164": phone_e164, "local": phone_local},
        "response": response,
        "campaignId": campaign_id,
    }
