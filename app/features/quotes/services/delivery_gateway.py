"""
Email delivery gateway.

Sends one rendered email per call through the Resend HTTP API. There is
no retry here: a failed send is reported to the caller and recorded on
the notification, never re-attempted automatically.
"""

from typing import Protocol

import httpx

from app.config import settings
from app.features.quotes.domain import DeliveryFailure
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DeliveryGateway(Protocol):
    async def send(self, recipient_address: str, subject: str, body: str) -> bool: ...


class ResendDeliveryGateway:
    """DeliveryGateway backed by the Resend email API."""

    def __init__(
        self,
        api_key: str | None = None,
        sender: str | None = None,
        api_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key or settings.RESEND_API_KEY
        self.sender = sender or settings.EMAIL_FROM
        self.api_url = api_url or settings.RESEND_API_URL
        self.timeout = timeout or settings.EMAIL_TIMEOUT_SECONDS
        self._client = client
        self._validate_config()

    def _validate_config(self) -> None:
        if not self.api_key:
            raise DeliveryFailure("RESEND_API_KEY not configured", operation="configure", recoverable=False)

        logger.info("Resend delivery gateway configured", sender=self.sender)

    async def send(self, recipient_address: str, subject: str, body: str) -> bool:
        """
        Send one HTML email.

        Raises:
            DeliveryFailure: on transport errors or a non-2xx response.
        """
        payload = {
            "from": self.sender,
            "to": [recipient_address],
            "subject": subject,
            "html": body,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            if self._client is not None:
                response = await self._client.post(self.api_url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.RequestError as e:
            raise DeliveryFailure(
                f"Email request failed: {type(e).__name__}: {e}", operation="send"
            ) from e

        if response.is_success:
            logger.debug("Email delivered", status_code=response.status_code)
            return True

        raise DeliveryFailure(
            f"Email provider returned {response.status_code}",
            operation="send",
            recoverable=response.status_code >= 500,
        )
