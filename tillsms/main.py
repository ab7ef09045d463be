import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tillsms import campaigns as campaign_service
from tillsms import reports
from tillsms.auth import require_staff
from tillsms.config import settings
from tillsms.errors import AppError, ValidationError
from tillsms.fluxsms import FluxSmsClient, get_sms_client
from tillsms.logging_utils import RequestLoggingMiddleware, log_campaign_data, setup_logging
from tillsms.metrics import get_metrics, get_metrics_content_type
from tillsms.scanner import TransactionFilter, get_transaction, list_transactions, resolve_filter_till
from tillsms.schemas import (
    CampaignOut,
    CreateCampaignRequest,
    DispatchRequest,
    HealthResponse,
    MessageOut,
    PreviewRequest,
    RefreshRequest,
    SendTestRequest,
)
from tillsms.storage import (
    campaign_names,
    check_db_health,
    get_db,
    init_db,
    list_campaigns,
    list_messages,
    reflect_table,
)
from tillsms.tills import list_tills
from tillsms.utils import clamp, parse_int_safe, pick_number, pick_string


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Create the sms_* tables
    """
    init_db()
    yield


app = FastAPI(
    title="Till SMS Dashboard API",
    description="Transaction explorer and SMS campaigns for till customers",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Error Handlers
# =============================================================================

def _error_body(message: str, **extra) -> dict:
    return {"status": "error", "message": message, **extra}


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, **exc.payload))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg") or "Invalid request")
    logger.warning(f"Request validation failed: {message}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(message))


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(f"Database error: {exc}")
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_body("Database error"))


def _success(**payload) -> dict:
    return {"status": "success", **payload}


def _segment_from_query(
    till_id: Optional[str] = None,
    tx_status: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    amount: Optional[str] = None,
    search: Optional[str] = None,
) -> TransactionFilter:
    tx_status = pick_string(tx_status)
    return TransactionFilter(
        till_id=pick_string(till_id),
        status=tx_status.lower() if tx_status else None,
        start_date=pick_string(start_date),
        end_date=pick_string(end_date),
        amount=pick_number(amount),
        search=pick_string(search),
    )


def _page_params(page: Optional[str], limit: Optional[str], default_limit: int = 50) -> tuple[int, int, int]:
    """(page, limit, offset) with page >= 1 and limit clamped to [10, 200]."""
    limit = clamp(parse_int_safe(limit, default_limit), 10, 200)
    page = max(1, parse_int_safe(page, 1))
    return page, limit, (page - 1) * limit


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and the sms_* tables exist
    2. SESSION_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.SESSION_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="SESSION_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Transaction Explorer Routes
# =============================================================================

@app.get("/api/tills")
async def get_tills(
    view: Annotated[str, Query(description="all, active or suspended")] = "all",
    db: Session = Depends(get_db),
    staff: str = Depends(require_staff),
) -> dict:
    tills, source = list_tills(db, view)
    logger.info(f"GET /api/tills: {len(tills)} tills from {source}")
    return _success(tills=tills, source=source)


@app.get("/api/transactions")
async def get_transactions(
    till_id: Annotated[str | None, Query(alias="tillId")] = None,
    tx_status: Annotated[str | None, Query(alias="status")] = None,
    start_date: Annotated[str | None, Query(alias="startDate")] = None,
    end_date: Annotated[str | None, Query(alias="endDate")] = None,
    amount: Annotated[str | None, Query()] = None,
    search: Annotated[str | None, Query()] = None,
    page: Annotated[str | None, Query()] = None,
    limit: Annotated[str | None, Query()] = None,
    db: Session = Depends(get_db),
    staff: str = Depends(require_staff),
) -> dict:
    """One page of a till's transactions, newest first."""
    segment = _segment_from_query(till_id, tx_status, start_date, end_date, amount, search)
    if not segment.till_id:
        raise ValidationError("tillId is required")
    page, limit, offset = _page_params(page, limit)

    table = reflect_table(db, "transactions")
    till = resolve_filter_till(db, table, segment)
    rows, total = list_transactions(db, table, segment, till, limit=limit, offset=offset)

    logger.info(f"GET /api/transactions: returned {len(rows)} of {total} (page={page}, limit={limit})")
    return _success(transactions=rows, total=total, page=page, limit=limit, tillColumn=till.name)


@app.get("/api/transactions/{transaction_id}")
async def get_transaction_by_id(
    transaction_id: str,
    db: Session = Depends(get_db),
    staff: str = Depends(require_staff),
) -> dict:
    table = reflect_table(db, "transactions")
    return _success(transaction=get_transaction(db, table, transaction_id))


@app.get("/api/amount-categories")
async def get_amount_categories(
    till_id: Annotated[str | None, Query(alias="tillId")] = None,
    tx_status: Annotated[str | None, Query(alias="status")] = None,
    start_date: Annotated[str | None, Query(alias="startDate")] = None,
    end_date: Annotated[str | None, Query(alias="endDate")] = None,
    max_scan: Annotated[str | None, Query(alias="maxScan")] = None,
    db: Session = Depends(get_db),
    staff: str = Depends(require_staff),
) -> dict:
    segment = _segment_from_query(till_id, tx_status, start_date, end_date)
    result = reports.amount_categories(db, segment, max_scan)
    return _success(**result)


# =============================================================================
# Segment Routes
# =============================================================================

@app.post("/api/sms/preview")
async def preview(
    body: PreviewRequest,
    db: Session = Depends(get_db),
    staff: str = Depends(require_staff),
) -> dict:
    """
    Coverage of a segment: how many recipients it has and how many of them
    were already messaged, overall and per amount.
    """
    result = reports.preview_segment(
        db,
        body.segment.to_filter(),
        max_scan=body.max_scan,
        include_status_breakdown=body.include_status_breakdown,
    )
    return _success(**result)


@app.get("/api/sms/recipients")
async def get_recipients(
    till_id: Annotated[str | None, Query(alias="tillId")] = None,
    tx_status: Annotated[str | None, Query(alias="status")] = None,
    amount: Annotated[str | None, Query()] = None,
    search: Annotated[str | None, Query()] = None,
    date: Annotated[str | None, Query(description="YYYY-MM-DD, local to tzOffsetMin")] = None,
    tz_offset_min: Annotated[str | None, Query(alias="tzOffsetMin")] = None,
    start_date: Annotated[str | None, Query(alias="startDate")] = None,
    end_date: Annotated[str | None, Query(alias="endDate")] = None,
    page: Annotated[str | None, Query()] = None,
    limit: Annotated[str | None, Query()] = None,
    max_scan: Annotated[str | None, Query(alias="maxScan")] = None,
    db: Session = Depends(get_db),
    staff: str = Depends(require_staff),
) -> dict:
    """Per-recipient transaction stats and SMS history for one day (or range)."""
    window = reports.resolve_window(
        pick_string(date),
        tz_offset_min if tz_offset_min is not None else reports.DEFAULT_TZ_OFFSET_MIN,
        pick_string(start_date),
        pick_string(end_date),
    )
    segment = _segment_from_query(till_id, tx_status, amount=amount, search=search)
    result = reports.recipient_report(
        db,
        segment,
        window,
        page=page or 1,
        limit=limit or 50,
        max_scan=max_scan,
    )
    logger.info(f"GET /api/sms/recipients: {result['total']} recipients in {result['window']}")
    return _success(**result)


# =============================================================================
# Campaign Routes
# =============================================================================

@app.get("/api/sms/campaigns")
async def get_campaigns(
    db: Session = Depends(get_db),
    staff: str = Depends(require_staff),
) -> dict:
    rows = list_campaigns(db, limit=100)
    return _success(campaigns=[CampaignOut.model_validate(row).model_dump() for row in rows])


@app.post("/api/sms/campaigns")
async def post_campaign(
    request: Request,
    body: CreateCampaignRequest,
    db: Session = Depends(get_db),
    staff: str = Depends(require_staff),
) -> dict:
    """Create a draft campaign with one queued message per segment recipient."""
    campaign = campaign_service.create_campaign(
        db,
        message=body.message,
        segment=body.segment.to_filter(),
        name=body.name,
        sender_id=body.sender_id,
        created_by=staff,
        max_scan=body.max_scan,
    )
    log_campaign_data(request, campaign_id=campaign.id, action="create", affected=campaign.target_count)
    return _success(campaign=CampaignOut.model_validate(campaign).model_dump(), recipients=campaign.target_count)


@app.get("/api/sms/campaigns/{campaign_id}")
async def get_campaign_detail(
    campaign_id: str,
    db: Session = Depends(get_db),
    staff: str = Depends(require_staff),
) -> dict:
    campaign = campaign_service.require_campaign(db, campaign_id)
    counts = campaign_service.get_campaign_counts(db, campaign.id)
    return _success(campaign=CampaignOut.model_validate(campaign).model_dump(), counts=counts)


@app.get("/api/sms/campaigns/{campaign_id}/messages")
async def get_campaign_messages(
    campaign_id: str,
    msg_status: Annotated[str | None, Query(alias="status")] = None,
    page: Annotated[str | None, Query()] = None,
    limit: Annotated[str | None, Query()] = None,
    db: Session = Depends(get_db),
    staff: str = Depends(require_staff),
) -> dict:
    campaign = campaign_service.require_campaign(db, campaign_id)
    page, limit, offset = _page_params(page, limit)
    rows, total = list_messages(db, limit=limit, offset=offset, campaign_id=campaign.id, status=pick_string(msg_status))
    return _success(
        messages=[MessageOut.model_validate(row).model_dump() for row in rows],
        total=total,
        page=page,
        limit=limit,
    )


@app.post("/api/sms/campaigns/{campaign_id}/dispatch")
async def dispatch(
    request: Request,
    campaign_id: str,
    body: Optional[DispatchRequest] = None,
    db: Session = Depends(get_db),
    client: FluxSmsClient = Depends(get_sms_client),
    staff: str = Depends(require_staff),
) -> dict:
    """Send the next batch of queued messages (maxRecipients, default 300, max 1000)."""
    max_recipients = body.max_recipients if body and body.max_recipients is not None else campaign_service.DEFAULT_DISPATCH_SIZE
    result = await campaign_service.dispatch_campaign(db, client, campaign_id, max_recipients)
    log_campaign_data(request, campaign_id=campaign_id, action="dispatch", affected=result["dispatched"])
    return _success(**result)


@app.post("/api/sms/campaigns/{campaign_id}/refresh")
async def refresh(
    request: Request,
    campaign_id: str,
    body: Optional[RefreshRequest] = None,
    db: Session = Depends(get_db),
    client: FluxSmsClient = Depends(get_sms_client),
    staff: str = Depends(require_staff),
) -> dict:
    """Poll delivery status for up to `limit` sent messages (default 20, max 50)."""
    limit = body.limit if body and body.limit is not None else campaign_service.DEFAULT_REFRESH_SIZE
    result = await campaign_service.refresh_campaign(db, client, campaign_id, limit)
    log_campaign_data(request, campaign_id=campaign_id, action="refresh", affected=result["refreshed"])
    return _success(**result)


@app.post("/api/sms/campaigns/{campaign_id}/resend")
async def resend(
    request: Request,
    campaign_id: str,
    db: Session = Depends(get_db),
    staff: str = Depends(require_staff),
) -> dict:
    """Requeue a campaign's failed messages for the next dispatch."""
    rescheduled = campaign_service.resend_failed(db, campaign_id)
    log_campaign_data(request, campaign_id=campaign_id, action="resend", affected=rescheduled)
    message = (
        f"Rescheduled {rescheduled} failed messages" if rescheduled else "No failed messages to resend"
    )
    return _success(rescheduled=rescheduled, message=message)


# =============================================================================
# Message Log Routes
# =============================================================================

@app.get("/api/sms/messages")
async def get_messages(
    campaign_id: Annotated[str | None, Query(alias="campaignId")] = None,
    msg_status: Annotated[str | None, Query(alias="status")] = None,
    search: Annotated[str | None, Query()] = None,
    page: Annotated[str | None, Query()] = None,
    limit: Annotated[str | None, Query()] = None,
    db: Session = Depends(get_db),
    staff: str = Depends(require_staff),
) -> dict:
    """
    Message log across all campaigns, newest first.

    Filters:
        - campaignId: messages of one campaign
        - status: queued, sent, delivered or failed
        - search: substring of phone, 254... phone or FluxSMS message id
    """
    page, limit, offset = _page_params(page, limit)
    rows, total = list_messages(
        db,
        limit=limit,
        offset=offset,
        campaign_id=pick_string(campaign_id),
        status=pick_string(msg_status),
        search=pick_string(search),
    )
    names = campaign_names(db, (row.campaign_id for row in rows))

    logger.info(f"GET /api/sms/messages: returned {len(rows)} of {total} messages (page={page}, limit={limit})")
    return _success(
        messages=[MessageOut.model_validate(row).model_dump() for row in rows],
        campaignsById={cid: {"id": cid, "name": name} for cid, name in names.items()},
        total=total,
        page=page,
        limit=limit,
    )


# =============================================================================
# Gateway Routes
# =============================================================================

@app.get("/api/sms/balance")
async def get_balance(
    client: FluxSmsClient = Depends(get_sms_client),
    staff: str = Depends(require_staff),
) -> dict:
    data = await client.balance()
    return _success(balance=data.get("sms_balance"), raw=data)


@app.post("/api/sms/test-send")
async def test_send(
    request: Request,
    body: SendTestRequest,
    db: Session = Depends(get_db),
    client: FluxSmsClient = Depends(get_sms_client),
    staff: str = Depends(require_staff),
) -> dict:
    """Send one SMS to one number; the send is logged as a one-message campaign."""
    result = await campaign_service.send_test_sms(
        db,
        client,
        phone=body.phone,
        message=body.message,
        sender_id=body.sender_id,
        created_by=staff,
    )
    log_campaign_data(request, campaign_id=result["campaignId"], action="test_send", affected=1)
    return _success(**result)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - request_latency_seconds: Request latency histogram
    - sms_gateway_requests_total: FluxSMS calls by endpoint and outcome
    - sms_message_transitions_total: Message status changes
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
