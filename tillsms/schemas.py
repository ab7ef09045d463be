"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the SMS endpoints (camelCase on the wire)
- Response models for campaigns and messages
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tillsms.scanner import TransactionFilter


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SegmentFilter(BaseModel):
    """
    A segment of the transactions table as posted by the dashboard.

    Every field is optional; empty strings are treated as "no constraint".
    """
    till_id: Optional[str] = Field(None, alias="tillId", description="Till/shortcode value")
    status: Optional[str] = Field(None, description="Transaction status (success, failed, pending)")
    start_date: Optional[str] = Field(None, alias="startDate", description="created_at >= startDate")
    end_date: Optional[str] = Field(None, alias="endDate", description="created_at <= endDate")
    amount: Optional[float] = Field(None, description="Exact transaction amount")
    search: Optional[str] = Field(None, description="Substring of phone number or reference")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("till_id", "status", "start_date", "end_date", "amount", "search", mode="before")
    @classmethod
    def blank_is_missing(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("till_id", "status", "start_date", "end_date", "search")
    @classmethod
    def strip_text(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if v is not None else None

    def to_filter(self) -> TransactionFilter:
        return TransactionFilter(
            till_id=self.till_id,
            status=self.status.lower() if self.status else None,
            start_date=self.start_date,
            end_date=self.end_date,
            amount=self.amount,
            search=self.search,
        )


class PreviewRequest(BaseModel):
    segment: SegmentFilter = Field(default_factory=SegmentFilter)
    include_status_breakdown: bool = Field(True, alias="includeStatusBreakdown")
    max_scan: Optional[int] = Field(None, alias="maxScan")

    model_config = ConfigDict(populate_by_name=True)


class CreateCampaignRequest(BaseModel):
    """
    Body of POST /api/sms/campaigns.

    message is checked by the campaign service (required, max 1000 chars) so
    the error message matches the other entry points.
    """
    name: Optional[str] = None
    sender_id: Optional[str] = Field(None, alias="senderId")
    message: Optional[str] = None
    segment: SegmentFilter = Field(default_factory=SegmentFilter)
    max_scan: Optional[int] = Field(None, alias="maxScan")

    model_config = ConfigDict(populate_by_name=True)


class DispatchRequest(BaseModel):
    max_recipients: Optional[int] = Field(None, alias="maxRecipients")

    model_config = ConfigDict(populate_by_name=True)


class RefreshRequest(BaseModel):
    limit: Optional[int] = None


class SendTestRequest(BaseModel):
    phone: Optional[str] = None
    message: Optional[str] = None
    sender_id: Optional[str] = Field(None, alias="senderId")

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class CampaignOut(BaseModel):
    """A campaign row as returned by the API."""
    id: str
    created_at: str
    created_by_email: Optional[str] = None
    name: Optional[str] = None
    sender_id: Optional[str] = None
    message: str
    segment: Optional[dict[str, Any]] = None
    status: str
    target_count: int = 0
    sent_count: int = 0
    delivered_count: int = 0
    failed_count: int = 0
    last_dispatch_at: Optional[str] = None
    last_refresh_at: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class MessageOut(BaseModel):
    """A message row as returned by the API."""
    id: str
    created_at: str
    campaign_id: str
    phone: str
    phone_normalized: str
    tx_id: Optional[str] = None
    tx_status: Optional[str] = None
    amount: Optional[float] = None
    status: str
    flux_message_id: Optional[str] = None
    delivery_status_code: Optional[int] = None
    delivery_status_text: Optional[str] = None
    last_checked_at: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
