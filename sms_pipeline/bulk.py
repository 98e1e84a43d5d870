import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from sms_pipeline.dispatcher import Dispatcher
from sms_pipeline.metrics import record_bulk_batch
from sms_pipeline.schemas import BulkSendResult

logger = logging.getLogger(__name__)


class BulkSendOrchestrator:
    """
    Send one message to many recipients through a Dispatcher.

    Recipients are handled one at a time in the order given, with
    ``delay_seconds`` between consecutive sends. Every recipient is attempted
    exactly once; a failure is recorded in the result and the batch goes on.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        delay_seconds: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.dispatcher = dispatcher
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    async def send_bulk(self, recipients: Sequence[str], body: str) -> BulkSendResult:
        result = BulkSendResult()
        record_bulk_batch(len(recipients))

        for index, recipient in enumerate(recipients):
            if index > 0 and self.delay_seconds > 0:
                await self._sleep(self.delay_seconds)

            outcome = await self.dispatcher.send(recipient, body)
            result.outcomes.append(outcome)
            if outcome.success:
                result.success_count += 1
            else:
                result.failed_count += 1

        log = logger.warning if result.failed_count else logger.info
        log(
            "Bulk SMS completed",
            extra={
                "total": result.total,
                "success_count": result.success_count,
                "failed_count": result.failed_count,
            },
        )
        return result
