"""
SqlJobStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

The claim is a single conditional UPDATE:

    UPDATE outbox_jobs
       SET status = 'processing', attempts = attempts + 1
     WHERE id = :id AND status = 'queued'

Zero affected rows means another dispatcher already owns the job. No row
locks or advisory locks are taken; the WHERE clause is the whole protocol.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update, func

from database.models import OutboxJobRow, MessageRow
from database.session import get_session
from database.store_base import BaseJobStore
from models.schemas import (
    OutboxJob, JobStatus, MessageRecord, MessageStatus,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlJobStore(BaseJobStore):
    """
    Persistent job store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Outbox jobs ────────────────────────────────────────

    async def enqueue_job(self, destination: str, body: str,
                          linked_message_id: Optional[str] = None,
                          created_at: Optional[datetime] = None,
                          attempts: int = 0) -> OutboxJob:
        async with get_session() as db:
            row = OutboxJobRow(
                destination=destination,
                body=body,
                status=JobStatus.QUEUED.value,
                attempts=attempts,
                linked_message_id=linked_message_id,
                created_at=created_at or _utcnow(),
            )
            db.add(row)
            await db.flush()
            return self._row_to_job(row)

    async def get_job(self, job_id: str) -> Optional[OutboxJob]:
        async with get_session() as db:
            row = await db.get(OutboxJobRow, job_id)
            return self._row_to_job(row) if row else None

    async def fetch_oldest_queued(self) -> Optional[OutboxJob]:
        async with get_session() as db:
            stmt = (
                select(OutboxJobRow)
                .where(OutboxJobRow.status == JobStatus.QUEUED.value)
                .order_by(OutboxJobRow.created_at.asc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_job(row) if row else None

    async def claim_job(self, job_id: str) -> Optional[OutboxJob]:
        async with get_session() as db:
            stmt = (
                update(OutboxJobRow)
                .where(
                    OutboxJobRow.id == job_id,
                    OutboxJobRow.status == JobStatus.QUEUED.value,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    attempts=OutboxJobRow.attempts + 1,
                    updated_at=_utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                return None

            # Read back inside the same transaction; attempts comes from the row
            row = (await db.execute(
                select(OutboxJobRow).where(OutboxJobRow.id == job_id)
            )).scalar_one()
            return self._row_to_job(row)

    async def _finish(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> bool:
        values = {"status": status.value, "updated_at": _utcnow()}
        if error is not None:
            values["last_error"] = error
        async with get_session() as db:
            stmt = (
                update(OutboxJobRow)
                .where(
                    OutboxJobRow.id == job_id,
                    OutboxJobRow.status == JobStatus.PROCESSING.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def mark_sent(self, job_id: str) -> bool:
        return await self._finish(job_id, JobStatus.SENT)

    async def requeue(self, job_id: str, error: str) -> bool:
        return await self._finish(job_id, JobStatus.QUEUED, error)

    async def mark_failed(self, job_id: str, error: str) -> bool:
        return await self._finish(job_id, JobStatus.FAILED, error)

    async def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in JobStatus}
        async with get_session() as db:
            stmt = select(OutboxJobRow.status, func.count()).group_by(OutboxJobRow.status)
            for status, count in (await db.execute(stmt)).all():
                counts[status] = count
        return counts

    # ── Messages ───────────────────────────────────────────

    async def create_message(self, status: MessageStatus = MessageStatus.QUEUED) -> MessageRecord:
        async with get_session() as db:
            row = MessageRow(status=status.value)
            db.add(row)
            await db.flush()
            return MessageRecord(id=row.id, status=MessageStatus(row.status))

    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        async with get_session() as db:
            row = await db.get(MessageRow, message_id)
            return MessageRecord(id=row.id, status=MessageStatus(row.status)) if row else None

    async def update_message_status(self, message_id: str, status: MessageStatus) -> bool:
        async with get_session() as db:
            stmt = (
                update(MessageRow)
                .where(MessageRow.id == message_id)
                .values(status=status.value, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_job(row: OutboxJobRow) -> OutboxJob:
        return OutboxJob(
            id=row.id,
            destination=row.destination,
            body=row.body,
            status=JobStatus(row.status),
            attempts=row.attempts or 0,
            last_error=row.last_error,
            created_at=row.created_at,
            linked_message_id=row.linked_message_id,
        )
