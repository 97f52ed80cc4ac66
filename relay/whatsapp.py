"""
Client for the WhatsApp Cloud API.

Provides:
- Webhook subscription verification (hub.challenge handshake)
- Sending text messages on behalf of a business
- Read receipts for inbound messages
"""

import logging
from typing import Dict, Optional

import httpx

from relay.config import Settings

logger = logging.getLogger(__name__)


class WhatsAppError(RuntimeError):
    """Raised when the WhatsApp Cloud API rejects or fails a request."""


class WebhookVerificationError(ValueError):
    """Raised when a webhook subscription handshake does not match."""


class WhatsAppClient:
    def __init__(
        self,
        settings: Settings,
        phone_number_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.access_token = settings.WHATSAPP_ACCESS_TOKEN or ""
        self.verify_token = settings.WHATSAPP_VERIFY_TOKEN or ""
        self.phone_number_id = phone_number_id or ""
        self.base_url = f"{settings.WHATSAPP_API_BASE_URL.rstrip('/')}/{settings.WHATSAPP_API_VERSION}"
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.WHATSAPP_TIMEOUT_SECONDS),
            transport=transport,
        )

        if not self.access_token or not self.verify_token:
            logger.warning("WhatsApp configuration missing. Please set environment variables.")

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def _messages_url(self, phone_number_id: Optional[str]) -> str:
        sender_id = phone_number_id or self.phone_number_id
        if not self.access_token or not sender_id:
            raise WhatsAppError("WhatsApp configuration missing")
        return f"{self.base_url}/{sender_id}/messages"

    def verify_subscription(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> str:
        """
        Complete the webhook subscription handshake.

        Returns:
            The challenge to echo back to the provider

        Raises:
            WebhookVerificationError: if mode or token do not match
        """
        if mode == "subscribe" and self.verify_token and token == self.verify_token:
            logger.info("Webhook verified successfully")
            return challenge or ""
        raise WebhookVerificationError("Webhook verification failed")

    async def send_message(
        self,
        to: str,
        content: str,
        content_type: str = "text",
        phone_number_id: Optional[str] = None,
    ) -> str:
        """
        Send a message and return the provider-assigned message id.

        Args:
            to: Recipient phone number
            content: Message body
            content_type: Provider message type
            phone_number_id: Business phone number id to send from

        Raises:
            WhatsAppError: on missing configuration, HTTP or API errors
        """
        url = self._messages_url(phone_number_id)
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": content_type,
            "text": {"body": content},
        }

        try:
            response = await self._client.post(url, json=payload, headers=self._headers)
            response.raise_for_status()
            data = response.json()
            message_id = data["messages"][0]["id"]
        except httpx.HTTPStatusError as e:
            detail = _error_message(e.response)
            logger.error(f"Error sending message to {to}: {detail}")
            raise WhatsAppError(f"Failed to send message: {detail}") from e
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Error sending message to {to}: {e}")
            raise WhatsAppError(f"Failed to send message: {e}") from e

        logger.info(f"Message sent successfully to {to}: {message_id}")
        return message_id

    async def mark_read(self, message_id: str, phone_number_id: Optional[str] = None) -> bool:
        """
        Send a read receipt for an inbound message.

        Failures are logged and reported as False, never raised.
        """
        try:
            url = self._messages_url(phone_number_id)
        except WhatsAppError:
            logger.debug(f"Skipping read receipt for {message_id}: WhatsApp not configured")
            return False

        payload = {
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": message_id,
        }
        try:
            response = await self._client.post(url, json=payload, headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Error marking message {message_id} as read: {e}")
            return False

        logger.info(f"Message {message_id} marked as read")
        return True

    def config_status(self) -> Dict[str, bool]:
        return {
            "has_access_token": bool(self.access_token),
            "has_verify_token": bool(self.verify_token),
        }


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return f"HTTP {response.status_code}"
