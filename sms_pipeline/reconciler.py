"""
Delivery-status reconciliation.

The provider reports status changes asynchronously, possibly duplicated and
out of order. parse_twilio_payload turns a raw callback into either a
DeliveryStatusEvent or a MalformedEvent; WebhookReconciler applies the former
to the matching message log and audits every callback it sees.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from sms_pipeline.lifecycle import MessageState, WebhookEventStatus
from sms_pipeline.metrics import record_webhook_outcome
from sms_pipeline.schemas import DeliveryStatusEvent, MalformedEvent, WebhookAck, WebhookEvent
from sms_pipeline.storage import MessageLogStore

logger = logging.getLogger(__name__)

# provider status -> lifecycle state; anything else leaves the record alone
STATUS_MAP = {
    "sent": MessageState.SENT,
    "delivered": MessageState.DELIVERED,
    "failed": MessageState.FAILED,
    "undelivered": MessageState.FAILED,
}


def _field(raw: Mapping[str, Any], name: str) -> Optional[str]:
    value = raw.get(name)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_twilio_payload(raw: Mapping[str, Any]) -> WebhookEvent:
    """
    Normalize a Twilio status callback.

    Twilio posts MessageSid and MessageStatus, plus ErrorCode and
    ErrorMessage when delivery failed.
    """
    raw = dict(raw or {})
    sid = _field(raw, "MessageSid")
    status = _field(raw, "MessageStatus")
    if not sid or not status:
        return MalformedEvent(reason="Missing required fields: MessageSid or MessageStatus", raw=raw)

    error_text = _field(raw, "ErrorMessage")
    if error_text is None and _field(raw, "ErrorCode"):
        error_text = f"provider error code {_field(raw, 'ErrorCode')}"

    return DeliveryStatusEvent(provider_message_id=sid, status=status, error_text=error_text, raw=raw)


class WebhookReconciler:
    """
    Args:
        store: Message log store holding both message and webhook logs
    """

    def __init__(self, store: MessageLogStore):
        self.store = store

    async def ingest(self, event: WebhookEvent, source: str = "twilio") -> WebhookAck:
        """
        Apply one status callback.

        Malformed events are acknowledged with success=False so the caller
        can answer with a client error. Unmatched ids, unknown statuses and
        transitions refused by the lifecycle are all successful no-ops.
        Store failures propagate after the audit entry is marked ERROR.
        """
        audit_id = await self.store.create_webhook_event(source, event.raw)

        if isinstance(event, MalformedEvent):
            logger.warning(f"Invalid {source} webhook payload: {event.reason}", extra={"payload": event.raw})
            await self.store.update_webhook_event(audit_id, WebhookEventStatus.INVALID, event.reason)
            record_webhook_outcome("invalid")
            return WebhookAck(success=False, outcome="invalid", message=event.reason)

        try:
            outcome = await self._apply(event)
        except Exception as e:
            logger.exception(f"Webhook processing error for {event.provider_message_id}")
            await self._mark_error(audit_id, str(e))
            raise

        await self.store.update_webhook_event(audit_id, WebhookEventStatus.PROCESSED)
        record_webhook_outcome(outcome)
        return WebhookAck(success=True, outcome=outcome)

    async def _apply(self, event: DeliveryStatusEvent) -> str:
        record = await self.store.find_by_provider_id(event.provider_message_id)
        if record is None:
            logger.info(
                "Webhook for unknown message",
                extra={"message_sid": event.provider_message_id, "provider_status": event.status},
            )
            return "unmatched"

        target = STATUS_MAP.get(event.status.lower())
        if target is None:
            logger.info(
                f"Ignoring unrecognized provider status '{event.status}'",
                extra={"message_sid": event.provider_message_id},
            )
            return "ignored"

        error_detail = None
        if target == MessageState.FAILED:
            error_detail = event.error_text or f"provider reported {event.status.lower()}"

        applied = await self.store.update_state(record.id, target, error_detail=error_detail)
        logger.info(
            "SMS status updated" if applied else "SMS status unchanged",
            extra={
                "sms_log_id": record.id,
                "message_sid": event.provider_message_id,
                "provider_status": event.status,
            },
        )
        return "applied" if applied else "unchanged"

    async def _mark_error(self, audit_id: str, error_message: str) -> None:
        try:
            await self.store.update_webhook_event(audit_id, WebhookEventStatus.ERROR, error_message)
        except Exception:
            logger.exception("Failed to log webhook error")
        record_webhook_outcome("error")
