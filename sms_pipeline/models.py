"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, DateTime, Enum as SQLEnum, JSON, String, Text

from sms_pipeline.lifecycle import MessageState, WebhookEventStatus
from sms_pipeline.storage import Base


class SmsLog(Base):
    """
    One row per attempted outbound SMS.

    Table: sms_logs
    provider_message_id is unique so status callbacks match at most one row.
    """
    __tablename__ = "sms_logs"

    id = Column(String(36), primary_key=True)
    recipient = Column(String(64), nullable=False, index=True)
    body = Column(Text, nullable=False)
    state = Column(SQLEnum(MessageState), nullable=False, default=MessageState.PENDING, index=True)
    provider_message_id = Column(String(64), nullable=True, unique=True, index=True)
    error_detail = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=False)


class WebhookLog(Base):
    """
    Audit trail of every webhook request, matched or not.

    Table: webhook_logs
    """
    __tablename__ = "webhook_logs"

    id = Column(String(36), primary_key=True)
    source = Column(String(32), nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(SQLEnum(WebhookEventStatus), nullable=False, default=WebhookEventStatus.RECEIVED)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
