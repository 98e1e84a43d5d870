"""
Pydantic schemas for records, webhook events and the HTTP API.

This module contains:
- Record models shared by the store adapters
- Dispatch outcome models
- Webhook event variants
- Request/response models for the API
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from sms_pipeline.lifecycle import MessageState, WebhookEventStatus
from sms_pipeline.utils import MAX_BODY_LENGTH


# =============================================================================
# Record Models
# =============================================================================

class MessageRecord(BaseModel):
    """A single outbound message and its current lifecycle state."""
    id: str
    recipient: str
    body: str
    state: MessageState
    provider_message_id: Optional[str] = None
    error_detail: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class WebhookEventRecord(BaseModel):
    """Audit entry for one received webhook."""
    id: str
    source: str
    payload: Dict[str, Any]
    status: WebhookEventStatus
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SmsStats(BaseModel):
    """Counts of messages per lifecycle state."""
    total: int = Field(..., ge=0)
    pending: int = Field(..., ge=0)
    sent: int = Field(..., ge=0)
    delivered: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    success_rate: float = Field(..., ge=0, le=100, description="Percentage of messages sent or delivered")


# =============================================================================
# Dispatch Models
# =============================================================================

class SendOutcome(BaseModel):
    """Result of one dispatch attempt. Failures are data, not exceptions."""
    recipient: str
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class BulkSendResult(BaseModel):
    """Aggregated outcome of one bulk send, in recipient order."""
    success_count: int = 0
    failed_count: int = 0
    outcomes: List[SendOutcome] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return self.success_count + self.failed_count

    @property
    def all_succeeded(self) -> bool:
        return self.total > 0 and self.failed_count == 0

    @property
    def all_failed(self) -> bool:
        return self.total > 0 and self.success_count == 0

    @property
    def partial_failure(self) -> bool:
        return self.success_count > 0 and self.failed_count > 0

    @property
    def status(self) -> str:
        if self.total == 0:
            return "empty"
        if self.all_succeeded:
            return "all_sent"
        if self.all_failed:
            return "all_failed"
        return "partial_failure"


# =============================================================================
# Webhook Event Models
# =============================================================================

class DeliveryStatusEvent(BaseModel):
    """A provider status callback that carries both correlation fields."""
    kind: Literal["valid"] = "valid"
    provider_message_id: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    error_text: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class MalformedEvent(BaseModel):
    """A callback that could not be normalized."""
    kind: Literal["malformed"] = "malformed"
    reason: str
    raw: Dict[str, Any] = Field(default_factory=dict)


WebhookEvent = Union[DeliveryStatusEvent, MalformedEvent]


class WebhookAck(BaseModel):
    """Acknowledgement returned to the provider."""
    success: bool
    outcome: Literal["applied", "unchanged", "unmatched", "ignored", "invalid"]
    message: Optional[str] = None


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendAlertRequest(BaseModel):
    """
    Request body for POST /alerts/send.

    Recipient formats are not validated here: a bad number fails on its own
    without rejecting the rest of the batch.
    """
    recipients: List[Annotated[str, Field(max_length=64)]] = Field(
        ..., description="Recipient phone numbers in international format"
    )
    message: str = Field(..., min_length=1, max_length=MAX_BODY_LENGTH)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "recipients": ["+14155551234", "+447911123456"],
                    "message": "Your item is back in stock",
                }
            ]
        }
    }


class SingleSendRequest(BaseModel):
    """Request body for POST /sms/test."""
    to: str = Field(..., max_length=64, description="Recipient phone number")
    message: str = Field(..., min_length=1, max_length=MAX_BODY_LENGTH)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class BulkSendResponse(BaseModel):
    """Response model for POST /alerts/send."""
    status: str = Field(..., description="empty, all_sent, partial_failure or all_failed")
    total: int = Field(..., ge=0)
    success_count: int = Field(..., ge=0)
    failed_count: int = Field(..., ge=0)
    results: List[SendOutcome] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: BulkSendResult) -> "BulkSendResponse":
        return cls(
            status=result.status,
            total=result.total,
            success_count=result.success_count,
            failed_count=result.failed_count,
            results=result.outcomes,
        )


class ChallengeAttemptResponse(BaseModel):
    """Throttle state for the verification challenge."""
    allowed: bool
    remaining: int = Field(..., ge=0)
    reset_in_seconds: float = Field(..., ge=0)


class SmsLogsListResponse(BaseModel):
    """Response model for GET /sms/logs with pagination."""
    data: List[MessageRecord] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
