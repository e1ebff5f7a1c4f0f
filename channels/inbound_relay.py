"""
Inbound Relay — forwards WhatsApp messages to the dashboard webhook.

Subscribed to the session's inbound event. Group chats and non-text
messages are dropped; the sender is normalized to +E.164 before posting.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone

import httpx
from tenacity import (
    retry, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from channels.base import ChannelError
from models.schemas import InboundMessage, WebhookPayload
from utils.phone import normalize_phone

logger = structlog.get_logger()


class WebhookDeliveryError(ChannelError):
    """The webhook answered with a server error."""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"webhook returned HTTP {status_code}", retryable=True)


class InboundRelay:

    def __init__(self, webhook_url: str, secret: str,
                 client: httpx.AsyncClient = None, timeout_s: float = 10.0):
        self.webhook_url = webhook_url
        self._secret = secret
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout_s)
        self.forwarded = 0
        self.dropped = 0

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, WebhookDeliveryError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def _post(self, payload: WebhookPayload) -> httpx.Response:
        response = await self.client.post(
            self.webhook_url,
            json=payload.model_dump(),
            headers={
                "Content-Type": "application/json",
                "x-webhook-secret": self._secret,
            },
        )
        if response.status_code >= 500:
            raise WebhookDeliveryError(response.status_code)
        return response

    async def handle(self, message: InboundMessage) -> bool:
        """Relay one inbound message. Returns True when the webhook accepted it."""
        if message.is_group:
            logger.info("inbound_group_ignored", sender=message.sender_address)
            self.dropped += 1
            return False

        if message.message_type != "chat" or not message.body:
            self.dropped += 1
            return False

        sender_phone = normalize_phone(message.sender_address)
        payload = WebhookPayload(
            from_phone_e164=sender_phone,
            body=message.body,
            wa_message_id=message.message_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        logger.info("inbound_received", sender=sender_phone, preview=message.body[:50])

        try:
            response = await self._post(payload)
        except Exception as e:
            logger.error("inbound_forward_error", sender=sender_phone, error=str(e))
            return False

        if response.status_code == 200:
            self.forwarded += 1
            logger.info("inbound_forwarded", sender=sender_phone)
            return True

        logger.error("inbound_forward_rejected", sender=sender_phone,
                     status_code=response.status_code)
        return False

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
