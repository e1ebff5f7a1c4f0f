"""
Session channel — base infrastructure for the WhatsApp session resource.

Provides:
- ChannelError: structured error hierarchy
- is_busy_error: classifier for the "profile already in use" conflict
- SendMetrics: send/fail/latency tracking for health reporting
- SessionResource: abstract live session (send, inbound subscription, close)
- SessionDriver: abstract factory that opens a SessionResource on a profile dir
"""
from __future__ import annotations

import abc
import time
import structlog
from pathlib import Path
from typing import Any, Awaitable, Callable

from models.schemas import InboundMessage

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all session channel operations."""

    def __init__(self, message: str, channel: str = "whatsapp", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class SessionBusyError(ChannelError):
    """The profile directory is held by another (possibly dead) browser."""

    def __init__(self, message: str = "profile appears to be in use"):
        super().__init__(message, retryable=True)


class SessionAcquireError(ChannelError):
    """Acquisition failed for good. Fatal to the process."""

    def __init__(self, message: str, attempts: int = 0, cause: BaseException = None):
        self.attempts = attempts
        self.cause = cause
        super().__init__(message)


class SessionUnavailableError(ChannelError):
    """A send was attempted while no session is ready."""

    def __init__(self, state: str = "not_ready"):
        self.state = state
        super().__init__(f"WhatsApp session not ready (state={state})", retryable=True)


class SendError(ChannelError):
    """The session rejected or failed an outbound message."""


# Text signatures of the Chromium singleton-lock conflict
BUSY_SIGNATURES = ("profile appears to be in use", "Code: 21")


def is_busy_error(exc: BaseException) -> bool:
    if isinstance(exc, SessionBusyError):
        return True
    text = str(exc)
    return any(sig in text for sig in BUSY_SIGNATURES)


# ══════════════════════════════════════════════════════════════
#  SEND METRICS
# ══════════════════════════════════════════════════════════════

class SendMetrics:
    """Tracks send, failure, inbound and latency counts for one session."""

    def __init__(self):
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.messages_received: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    def record_inbound(self):
        self.messages_received += 1

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "received": self.messages_received,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  SESSION RESOURCE — Abstract Base
# ══════════════════════════════════════════════════════════════

MessageHandler = Callable[[InboundMessage], Awaitable[None]]


class SessionResource(abc.ABC):
    """
    A live, authenticated WhatsApp session.

    Subclasses implement _do_send and _do_close. The base class tracks
    metrics, fans inbound messages out to subscribers and makes close()
    idempotent.
    """

    def __init__(self, session_name: str):
        self.session_name = session_name
        self.metrics = SendMetrics()
        self._handlers: list[MessageHandler] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, address: str, body: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def _do_close(self) -> None:
        ...

    # ── Public API ────────────────────────────────────────────

    async def send(self, address: str, body: str) -> dict[str, Any]:
        """Send a text message. Raises on failure."""
        if self._closed:
            raise SessionUnavailableError("closed")
        start = time.monotonic()
        try:
            result = await self._do_send(address, body)
        except Exception as e:
            self.metrics.record_failure(str(e))
            raise
        self.metrics.record_send((time.monotonic() - start) * 1000)
        return result

    def on_message(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    async def dispatch_inbound(self, message: InboundMessage) -> None:
        """Deliver an inbound message to every subscriber. Never raises."""
        self.metrics.record_inbound()
        for handler in self._handlers:
            try:
                await handler(message)
            except Exception as e:
                logger.error("inbound_handler_failed",
                             session=self.session_name,
                             message_id=message.message_id,
                             error=str(e))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._do_close()
        logger.info("session_closed", session=self.session_name)

    def health(self) -> dict[str, Any]:
        return {
            "session": self.session_name,
            "closed": self._closed,
            "subscribers": len(self._handlers),
            "metrics": self.metrics.to_dict(),
        }


# ══════════════════════════════════════════════════════════════
#  SESSION DRIVER — Abstract Factory
# ══════════════════════════════════════════════════════════════

class SessionDriver(abc.ABC):
    """Opens a SessionResource against a profile directory."""

    name: str = "abstract"

    @abc.abstractmethod
    async def open(self, profile_dir: Path) -> SessionResource:
        """Open the session. Raises SessionBusyError on a lock conflict."""
        ...

    async def aclose(self) -> None:
        """Release driver-level resources (HTTP clients etc.)."""
        pass
