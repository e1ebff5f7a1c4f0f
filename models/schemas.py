"""
Core data models for the WhatsApp Hub worker.
These are the universal types shared across the store, session and dispatcher.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SENT, JobStatus.FAILED)


class MessageStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class SessionState(str, Enum):
    NOT_READY = "not_ready"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  Outbox Job — one outbound message awaiting delivery
# ──────────────────────────────────────────────────────────────

class OutboxJob(BaseModel):
    """A unit of outbound work as read from the job store."""
    id: str
    destination: str                          # +E.164 display form
    body: str
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    linked_message_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class MessageRecord(BaseModel):
    """The dashboard message row whose status mirrors a job's outcome."""
    id: str
    status: MessageStatus = MessageStatus.QUEUED


# ──────────────────────────────────────────────────────────────
#  Inbound — messages arriving from the session
# ──────────────────────────────────────────────────────────────

class InboundMessage(BaseModel):
    """A message received on the session, before relay filtering."""
    sender_address: str                       # channel form, e.g. 4479...@c.us
    body: str = ""
    message_id: str = ""
    message_type: str = "chat"
    is_group: bool = False
    raw: dict[str, Any] = {}


class WebhookPayload(BaseModel):
    """JSON body posted to the dashboard webhook."""
    from_phone_e164: str
    body: str
    wa_message_id: str
    timestamp: str
