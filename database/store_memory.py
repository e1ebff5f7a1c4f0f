"""
InMemoryJobStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Same claim / terminal-write semantics as SqlJobStore
  - Safe under asyncio: every compare-and-swap runs without an await
    between the check and the write, so concurrent claimers on one event
    loop see exactly one winner
  - All data lost on process restart
"""
from __future__ import annotations

import itertools
import uuid
import structlog
from datetime import datetime, timezone
from typing import Optional

from database.store_base import BaseJobStore
from models.schemas import (
    OutboxJob, JobStatus, MessageRecord, MessageStatus,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class InMemoryJobStore(BaseJobStore):
    """
    Full-featured in-memory store with the same interface as SqlJobStore.
    Returns copies so callers never mutate stored state directly.
    """

    def __init__(self):
        self._jobs: dict[str, OutboxJob] = {}
        self._messages: dict[str, MessageRecord] = {}
        self._seq: dict[str, int] = {}                # job id → insertion order
        self._counter = itertools.count()
        logger.info("inmemory_store_initialized")

    # ── Outbox jobs ───────────────────────────────────────

    async def enqueue_job(self, destination: str, body: str,
                          linked_message_id: Optional[str] = None,
                          created_at: Optional[datetime] = None,
                          attempts: int = 0) -> OutboxJob:
        job = OutboxJob(
            id=_new_id(),
            destination=destination,
            body=body,
            status=JobStatus.QUEUED,
            attempts=attempts,
            created_at=created_at or _utcnow(),
            linked_message_id=linked_message_id,
        )
        self._jobs[job.id] = job
        self._seq[job.id] = next(self._counter)
        return job.model_copy()

    async def get_job(self, job_id: str) -> Optional[OutboxJob]:
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    async def fetch_oldest_queued(self) -> Optional[OutboxJob]:
        queued = [j for j in self._jobs.values() if j.status == JobStatus.QUEUED]
        if not queued:
            return None
        queued.sort(key=lambda j: (j.created_at, self._seq[j.id]))
        return queued[0].model_copy()

    async def claim_job(self, job_id: str) -> Optional[OutboxJob]:
        job = self._jobs.get(job_id)
        if not job or job.status != JobStatus.QUEUED:
            return None
        job.status = JobStatus.PROCESSING
        job.attempts += 1
        return job.model_copy()

    def _finish(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> bool:
        job = self._jobs.get(job_id)
        if not job or job.status != JobStatus.PROCESSING:
            return False
        job.status = status
        if error is not None:
            job.last_error = error
        return True

    async def mark_sent(self, job_id: str) -> bool:
        return self._finish(job_id, JobStatus.SENT)

    async def requeue(self, job_id: str, error: str) -> bool:
        return self._finish(job_id, JobStatus.QUEUED, error)

    async def mark_failed(self, job_id: str, error: str) -> bool:
        return self._finish(job_id, JobStatus.FAILED, error)

    async def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return counts

    # ── Messages ──────────────────────────────────────────

    async def create_message(self, status: MessageStatus = MessageStatus.QUEUED) -> MessageRecord:
        msg = MessageRecord(id=_new_id(), status=status)
        self._messages[msg.id] = msg
        return msg.model_copy()

    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        msg = self._messages.get(message_id)
        return msg.model_copy() if msg else None

    async def update_message_status(self, message_id: str, status: MessageStatus) -> bool:
        msg = self._messages.get(message_id)
        if not msg:
            return False
        msg.status = status
        return True
