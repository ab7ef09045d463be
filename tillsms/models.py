"""
SQLAlchemy ORM models for the tables this service owns.

The upstream `transactions` table is not modelled here: its schema belongs to
the payment system and is reflected per request (see storage.reflect_table).
For Pydantic request/response schemas, see schemas.py.
"""

import uuid

from sqlalchemy import JSON, Column, Float, ForeignKey, Integer, String, Text

from tillsms.storage import Base, utc_now_iso


def _new_id() -> str:
    return str(uuid.uuid4())


class SmsCampaign(Base):
    """
    One SMS campaign created from a transaction segment.

    Table: sms_campaigns
    The *_count columns are denormalized and only ever written by
    campaigns.recompute_counts.
    """
    __tablename__ = "sms_campaigns"

    id = Column(String(36), primary_key=True, default=_new_id)
    created_at = Column(String, nullable=False, default=utc_now_iso, index=True)  # ISO-8601 UTC
    created_by_email = Column(String, nullable=True)
    name = Column(String, nullable=False)
    sender_id = Column(String, nullable=False, default="fluxsms")
    message = Column(Text, nullable=False)
    segment = Column(JSON, nullable=True)  # filter that produced the campaign, for audit
    status = Column(String, nullable=False, default="draft")
    target_count = Column(Integer, nullable=False, default=0)
    sent_count = Column(Integer, nullable=False, default=0)
    delivered_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    last_dispatch_at = Column(String, nullable=True)
    last_refresh_at = Column(String, nullable=True)
    dispatch_locked_at = Column(String, nullable=True)


class SmsMessage(Base):
    """
    One message per (campaign, recipient).

    Table: sms_messages
    Status: queued -> sent -> delivered, queued -> failed, failed -> queued on resend.
    """
    __tablename__ = "sms_messages"

    id = Column(String(36), primary_key=True, default=_new_id)
    created_at = Column(String, nullable=False, default=utc_now_iso, index=True)
    campaign_id = Column(String(36), ForeignKey("sms_campaigns.id"), nullable=False, index=True)
    phone = Column(String, nullable=False)  # local form, sent to the gateway
    phone_normalized = Column(String, nullable=False, index=True)  # 254... form
    tx_id = Column(String, nullable=True)
    tx_status = Column(String, nullable=True)
    amount = Column(Float, nullable=True)
    status = Column(String, nullable=False, default="queued", index=True)
    flux_message_id = Column(String, nullable=True)
    send_response = Column(JSON, nullable=True)
    delivery_status_code = Column(Integer, nullable=True)
    delivery_status_text = Column(String, nullable=True)
    delivery_response = Column(JSON, nullable=True)
    last_checked_at = Column(String, nullable=True)
