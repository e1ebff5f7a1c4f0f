"""
WhatsApp Session Driver — WPPConnect Server integration.

The browser that holds the WhatsApp Web session runs in a WPPConnect Server
sidecar. Both containers mount the same token folder, so the profile
directory (<token_folder>/<session_name>) the lifecycle manager cleans is the
one the sidecar's Chromium opens.

Provides:
- Token generation and session start (start-session / status-session)
- Mapping of the sidecar's singleton-lock failure to SessionBusyError
- Outbound text sends (send-message)
- Inbound event parsing for the sidecar's webhook (onmessage)
"""
from __future__ import annotations

import asyncio
import time
import structlog
from pathlib import Path
from typing import Any, Optional

import httpx
from tenacity import (
    retry, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from channels.base import (
    ChannelError, SendError, SessionBusyError, SessionDriver, SessionResource,
    BUSY_SIGNATURES,
)
from config.settings import SessionConfig
from models.schemas import InboundMessage
from utils.phone import is_group_address

logger = structlog.get_logger()

CONNECTED = "CONNECTED"
CLOSED = "CLOSED"


def _raise_for_response(response: httpx.Response, action: str) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        data = {"message": response.text}
    if not isinstance(data, dict):
        data = {"response": data}

    message = str(data.get("message") or data.get("error") or "")
    if any(sig in message for sig in BUSY_SIGNATURES):
        raise SessionBusyError(message)
    if response.status_code >= 400:
        raise ChannelError(
            f"wppconnect {action} failed: HTTP {response.status_code} {message}".strip()
        )
    return data


# ══════════════════════════════════════════════════════════════
#  SESSION
# ══════════════════════════════════════════════════════════════

class WppConnectSession(SessionResource):
    """A connected WPPConnect Server session."""

    def __init__(self, client: httpx.AsyncClient, session_name: str, token: str):
        super().__init__(session_name)
        self._client = client
        self._headers = {"Authorization": f"Bearer {token}"}

    async def _do_send(self, address: str, body: str) -> dict[str, Any]:
        response = await self._client.post(
            f"/api/{self.session_name}/send-message",
            json={"phone": address, "message": body, "isGroup": False},
            headers=self._headers,
        )
        try:
            data = _raise_for_response(response, "send-message")
        except ChannelError as e:
            raise SendError(str(e)) from e
        if data.get("status") not in ("success", "sent"):
            raise SendError(f"wppconnect send-message rejected: {data.get('message') or data}")
        logger.info("whatsapp_text_sent", to=address, session=self.session_name)
        return data

    async def _do_close(self) -> None:
        try:
            response = await self._client.post(
                f"/api/{self.session_name}/close-session", headers=self._headers,
            )
            _raise_for_response(response, "close-session")
        except (httpx.HTTPError, ChannelError) as e:
            logger.warning("wppconnect_close_failed", session=self.session_name, error=str(e))


# ══════════════════════════════════════════════════════════════
#  DRIVER
# ══════════════════════════════════════════════════════════════

class WppConnectDriver(SessionDriver):
    """
    Opens sessions on a WPPConnect Server.

    open() blocks until the sidecar reports CONNECTED. While it reports
    QRCODE the device still needs pairing; the status is logged and the
    pairing surface itself lives in the sidecar.
    """

    name = "wppconnect"

    def __init__(self, config: SessionConfig, client: httpx.AsyncClient = None):
        self.config = config
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=config.server_url,
            timeout=config.request_timeout_s,
        )

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def _request(self, method: str, url: str, action: str, **kwargs) -> dict[str, Any]:
        response = await self.client.request(method, url, **kwargs)
        return _raise_for_response(response, action)

    async def _generate_token(self) -> str:
        name = self.config.session_name
        data = await self._request(
            "POST", f"/api/{name}/{self.config.secret_key}/generate-token", "generate-token",
        )
        token = data.get("token")
        if not token:
            raise ChannelError(f"wppconnect generate-token returned no token: {data}")
        return token

    def _events_webhook(self) -> str:
        url = self.config.events_webhook_url
        if not url or not self.config.events_token:
            return url
        return str(httpx.URL(url).copy_merge_params({"token": self.config.events_token}))

    async def open(self, profile_dir: Path) -> SessionResource:
        name = self.config.session_name
        token = await self._generate_token()
        headers = {"Authorization": f"Bearer {token}"}

        data = await self._request(
            "POST", f"/api/{name}/start-session", "start-session",
            json={"webhook": self._events_webhook(), "waitQrCode": False},
            headers=headers,
        )
        status = str(data.get("status", "")).upper()
        logger.info("wppconnect_session_status", session=name, status=status,
                    profile_dir=str(profile_dir))

        deadline = time.monotonic() + self.config.connect_timeout_s
        while status != CONNECTED:
            if status == CLOSED:
                raise ChannelError(f"wppconnect session closed during start: {data.get('message', '')}")
            if time.monotonic() >= deadline:
                raise ChannelError(
                    f"wppconnect session not connected after {self.config.connect_timeout_s}s "
                    f"(last status {status})"
                )
            await asyncio.sleep(self.config.status_poll_interval_s)
            data = await self._request(
                "GET", f"/api/{name}/status-session", "status-session", headers=headers,
            )
            new_status = str(data.get("status", "")).upper()
            if new_status != status:
                logger.info("wppconnect_session_status", session=name, status=new_status)
            status = new_status

        return WppConnectSession(self.client, name, token)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


# ══════════════════════════════════════════════════════════════
#  INBOUND EVENTS
# ══════════════════════════════════════════════════════════════

def parse_wppconnect_event(payload: dict[str, Any]) -> Optional[InboundMessage]:
    """Parse a sidecar webhook event. Returns None for anything but onmessage."""
    if payload.get("event") != "onmessage":
        return None

    sender = payload.get("from") or ""
    if not sender:
        return None

    raw_id = payload.get("id")
    if isinstance(raw_id, dict):
        message_id = raw_id.get("id") or raw_id.get("_serialized") or ""
    else:
        message_id = str(raw_id or "")

    return InboundMessage(
        sender_address=sender,
        body=payload.get("body") or "",
        message_id=message_id,
        message_type=payload.get("type") or "",
        is_group=bool(payload.get("isGroupMsg")) or is_group_address(sender),
        raw=payload,
    )
