"""
Single-message dispatch.

Dispatcher.send validates one message, hands it to the provider and records
the outcome. Failures come back as SendOutcome values; only store errors are
raised, since nothing useful can be recorded without the store.
"""

import asyncio
import logging
from typing import Optional

from sms_pipeline.lifecycle import MessageState
from sms_pipeline.metrics import record_sms_outcome
from sms_pipeline.provider import ProviderClient, ProviderError, ProviderTimeoutError
from sms_pipeline.schemas import SendOutcome
from sms_pipeline.storage import MessageLogStore
from sms_pipeline.utils import MAX_BODY_LENGTH, is_valid_body, is_valid_phone_number, mask_phone

logger = logging.getLogger(__name__)

INVALID_PHONE_NUMBER = "invalid phone number format"
INVALID_BODY = f"message body must be between 1 and {MAX_BODY_LENGTH} characters"
PROVIDER_NOT_CONFIGURED = "provider not configured"
TIMEOUT = "timeout"
DUPLICATE_PROVIDER_ID = "duplicate provider message id"


class Dispatcher:
    """
    Args:
        store: Message log store receiving the lifecycle writes
        provider: Client used to transmit
        timeout_seconds: Upper bound for one provider call
    """

    def __init__(self, store: MessageLogStore, provider: ProviderClient, timeout_seconds: float = 10.0):
        self.store = store
        self.provider = provider
        self.timeout_seconds = timeout_seconds

    async def send(self, recipient: str, body: str, record: bool = True) -> SendOutcome:
        """
        Send one SMS.

        Args:
            recipient: Destination in international format
            body: Message text, single segment
            record: Write a message log entry; False for test sends

        Returns:
            SendOutcome with the provider message id on success or the
            failure reason otherwise
        """
        record_id: Optional[str] = None
        if record:
            record_id = (await self.store.create(recipient, body)).id

        if not is_valid_phone_number(recipient):
            logger.error(f"SMS sending failed - invalid phone number: {mask_phone(recipient)}")
            return await self._fail(record_id, recipient, INVALID_PHONE_NUMBER)

        if not is_valid_body(body):
            logger.error(f"SMS sending failed - invalid body length for {mask_phone(recipient)}")
            return await self._fail(record_id, recipient, INVALID_BODY)

        if not self.provider.is_configured:
            logger.error("SMS sending failed - provider not configured")
            return await self._fail(record_id, recipient, PROVIDER_NOT_CONFIGURED)

        try:
            receipt = await asyncio.wait_for(
                self.provider.transmit(recipient, body, self.provider.sender_address),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, ProviderTimeoutError):
            logger.error(f"SMS sending failed - provider timed out for {mask_phone(recipient)}")
            return await self._fail(record_id, recipient, TIMEOUT)
        except ProviderError as e:
            logger.error(
                f"SMS sending failed for {mask_phone(recipient)}: {e.message}",
                extra={"provider_error_code": e.code},
            )
            return await self._fail(record_id, recipient, e.message)
        except Exception as e:
            # anything else raised by a provider client is still a failed send
            logger.exception(f"SMS sending failed for {mask_phone(recipient)}")
            return await self._fail(record_id, recipient, str(e) or e.__class__.__name__)

        if record_id is not None:
            recorded = await self.store.update_state(
                record_id,
                MessageState.SENT,
                provider_message_id=receipt.provider_message_id,
            )
            if not recorded:
                # callbacks for this id would reconcile against another record
                logger.error(
                    f"SMS to {mask_phone(recipient)} accepted by provider but not recorded",
                    extra={"message_sid": receipt.provider_message_id},
                )
                return await self._fail(record_id, recipient, DUPLICATE_PROVIDER_ID)

        logger.info(
            f"SMS sent successfully to {mask_phone(recipient)}",
            extra={"message_sid": receipt.provider_message_id, "provider_status": receipt.status},
        )
        record_sms_outcome(True)
        return SendOutcome(
            recipient=recipient,
            success=True,
            provider_message_id=receipt.provider_message_id,
        )

    async def _fail(self, record_id: Optional[str], recipient: str, reason: str) -> SendOutcome:
        if record_id is not None:
            await self.store.update_state(record_id, MessageState.FAILED, error_detail=reason)
        record_sms_outcome(False)
        return SendOutcome(recipient=recipient, success=False, error=reason)
