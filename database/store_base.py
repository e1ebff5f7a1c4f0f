"""
Abstract Job Store — Interface for all storage backends.

Implementations:
  - SqlJobStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryJobStore (dict-based, single-process, no persistence)

Mutation rules every backend must honour:
  - claim_job is a compare-and-swap: queued → processing, attempts + 1,
    in one step, and only if the row is still queued.
  - the terminal writes (mark_sent / requeue / mark_failed) only apply to a
    row that is still processing, so sent/failed rows never change again.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import OutboxJob, MessageRecord, MessageStatus


class BaseJobStore(ABC):
    """Interface that all job store backends must implement."""

    # ── Outbox jobs ───────────────────────────────────────────

    @abstractmethod
    async def enqueue_job(self, destination: str, body: str,
                          linked_message_id: Optional[str] = None,
                          created_at: Optional[datetime] = None,
                          attempts: int = 0) -> OutboxJob:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[OutboxJob]:
        ...

    @abstractmethod
    async def fetch_oldest_queued(self) -> Optional[OutboxJob]:
        """Oldest queued job by created_at, or None."""
        ...

    @abstractmethod
    async def claim_job(self, job_id: str) -> Optional[OutboxJob]:
        """Conditionally claim a queued job. None if another claimer won."""
        ...

    @abstractmethod
    async def mark_sent(self, job_id: str) -> bool:
        ...

    @abstractmethod
    async def requeue(self, job_id: str, error: str) -> bool:
        ...

    @abstractmethod
    async def mark_failed(self, job_id: str, error: str) -> bool:
        ...

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def create_message(self, status: MessageStatus = MessageStatus.QUEUED) -> MessageRecord:
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        ...

    @abstractmethod
    async def update_message_status(self, message_id: str, status: MessageStatus) -> bool:
        ...

