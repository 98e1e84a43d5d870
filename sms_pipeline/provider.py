"""
SMS provider clients.

ProviderClient is the seam the dispatcher talks to; TwilioProvider implements
it against the Twilio Messages REST resource.
"""

import abc
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from sms_pipeline.config import Settings
from sms_pipeline.utils import mask_phone

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """The provider refused or failed to accept a message."""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """The provider did not answer in time."""

    def __init__(self, message: str = "timeout"):
        super().__init__(message)


@dataclass(frozen=True)
class ProviderReceipt:
    provider_message_id: str
    status: Optional[str] = None


class ProviderClient(abc.ABC):
    """Interface for anything that can hand an SMS to a carrier."""

    @property
    @abc.abstractmethod
    def is_configured(self) -> bool:
        """True when credentials and a sender address are present."""

    @property
    @abc.abstractmethod
    def sender_address(self) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def transmit(self, recipient: str, body: str, sender_address: str) -> ProviderReceipt:
        """
        Hand one message to the provider.

        Raises:
            ProviderError: the provider rejected the message
            ProviderTimeoutError: the provider did not answer in time
        """


class TwilioProvider(ProviderClient):
    """
    Twilio Programmable Messaging client.

    Posts to /2010-04-01/Accounts/{sid}/Messages.json with basic auth and
    reads the message SID from the JSON response.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com",
        status_callback_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._base_url = base_url.rstrip("/")
        self._status_callback_url = status_callback_url or None
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "TwilioProvider":
        return cls(
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_number=settings.TWILIO_PHONE_NUMBER,
            base_url=settings.TWILIO_API_BASE_URL,
            status_callback_url=settings.TWILIO_STATUS_CALLBACK_URL,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number)

    @property
    def sender_address(self) -> Optional[str]:
        return self._from_number or None

    @property
    def messages_url(self) -> str:
        return f"{self._base_url}/2010-04-01/Accounts/{self._account_sid}/Messages.json"

    async def transmit(self, recipient: str, body: str, sender_address: str) -> ProviderReceipt:
        form = {"To": recipient, "From": sender_address, "Body": body}
        if self._status_callback_url:
            form["StatusCallback"] = self._status_callback_url

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds,
                auth=(self._account_sid, self._auth_token),
                transport=self._transport,
            ) as client:
                response = await client.post(self.messages_url, data=form)
        except httpx.TimeoutException as e:
            logger.warning(f"Twilio request timed out for {mask_phone(recipient)}: {e}")
            raise ProviderTimeoutError() from e
        except httpx.HTTPError as e:
            logger.warning(f"Twilio request failed for {mask_phone(recipient)}: {e}")
            raise ProviderError(str(e) or e.__class__.__name__) from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400:
            message = payload.get("message") or f"Twilio returned HTTP {response.status_code}"
            code = payload.get("code")
            raise ProviderError(
                message,
                code=str(code) if code is not None else None,
                status_code=response.status_code,
            )

        sid = payload.get("sid")
        if not sid:
            raise ProviderError("Twilio response did not include a message sid", status_code=response.status_code)

        logger.info(f"Twilio accepted message {sid} for {mask_phone(recipient)}")
        return ProviderReceipt(provider_message_id=sid, status=payload.get("status"))
