"""
Outbound Job Dispatcher — drains the outbox into the WhatsApp session.

Runs as a background task inside the FastAPI lifespan. Every tick:

    session ready? ─no─▶ NO_SESSION
        │
    oldest queued job ─none─▶ IDLE
        │
    claim (queued → processing, attempts+1) ─lost─▶ LOST_CLAIM
        │
    send ─ok─▶ job sent, message sent                    ▶ SENT
        └─err─▶ attempts ≥ max ─▶ job failed, message failed ▶ FAILED
                otherwise       ─▶ job queued + last_error   ▶ REQUEUED

Ticks are single-flight: a tick that starts while another is still running
returns BUSY without touching the store. The claim is a conditional update,
so several worker processes can share one store safely.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import Counter
from enum import Enum
from typing import Any, Optional

from channels.base import SessionResource
from database.store_base import BaseJobStore
from models.schemas import MessageStatus, OutboxJob
from session.manager import SessionLifecycleManager
from utils.phone import normalize_phone, to_channel_address

logger = structlog.get_logger()


class TickOutcome(str, Enum):
    BUSY = "busy"
    NO_SESSION = "no_session"
    IDLE = "idle"
    LOST_CLAIM = "lost_claim"
    SENT = "sent"
    REQUEUED = "requeued"
    FAILED = "failed"
    ERROR = "error"


class OutboundDispatcher:
    """
    Single-flight polling consumer for the outbox_jobs table.

    Configure in settings:
        dispatcher:
          poll_interval_ms: 1500
          max_attempts: 5
    """

    def __init__(
        self,
        store: BaseJobStore,
        sessions: SessionLifecycleManager,
        max_attempts: int = 5,
        poll_interval_ms: int = 1500,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.sessions = sessions
        self.max_attempts = max_attempts
        self.poll_interval_ms = poll_interval_ms
        self._tick_lock = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.outcomes: Counter[str] = Counter()
        self.last_error: Optional[str] = None

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        if self._task and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="outbound_dispatcher")
        logger.info("dispatcher_started",
                    interval_ms=self.poll_interval_ms,
                    max_attempts=self.max_attempts)

    async def stop(self) -> None:
        """Stop the loop; an in-flight tick is cancelled."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("dispatcher_stopped", outcomes=dict(self.outcomes))

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _poll_loop(self) -> None:
        while self._running:
            await self.tick()
            await asyncio.sleep(self.poll_interval_ms / 1000)

    # ── Tick ──────────────────────────────────────────────────

    async def tick(self) -> TickOutcome:
        """Run one dispatch cycle. Never raises except on cancellation."""
        if self._tick_lock.locked():
            outcome = TickOutcome.BUSY
        else:
            async with self._tick_lock:
                try:
                    outcome = await self._dispatch_one()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.last_error = str(e)
                    logger.error("dispatcher_tick_error", error=str(e), error_type=type(e).__name__)
                    outcome = TickOutcome.ERROR
        self.outcomes[outcome.value] += 1
        return outcome

    async def _dispatch_one(self) -> TickOutcome:
        if not self.sessions.is_ready:
            logger.debug("dispatcher_no_session", state=self.sessions.state.value)
            return TickOutcome.NO_SESSION

        candidate = await self.store.fetch_oldest_queued()
        if candidate is None:
            return TickOutcome.IDLE

        job = await self.store.claim_job(candidate.id)
        if job is None:
            logger.info("job_claim_lost", job_id=candidate.id)
            return TickOutcome.LOST_CLAIM

        logger.info("job_claimed", job_id=job.id, attempt=job.attempts, max_attempts=self.max_attempts)

        if job.attempts > self.max_attempts:
            error = f"attempt ceiling exceeded ({job.attempts} > {self.max_attempts})"
            return await self._fail(job, error)

        try:
            session: SessionResource = self.sessions.current()
            address = to_channel_address(normalize_phone(job.destination))
            await session.send(address, job.body)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return await self._handle_send_failure(job, e)

        if not await self.store.mark_sent(job.id):
            logger.warning("job_terminal_write_skipped", job_id=job.id, status="sent")
        logger.info("job_sent", job_id=job.id, to=job.destination, attempt=job.attempts)
        await self._mirror_message(job, MessageStatus.SENT)
        return TickOutcome.SENT

    async def _handle_send_failure(self, job: OutboxJob, exc: Exception) -> TickOutcome:
        error = str(exc) or type(exc).__name__
        self.last_error = error
        if job.attempts >= self.max_attempts:
            return await self._fail(job, error)

        if not await self.store.requeue(job.id, error):
            logger.warning("job_terminal_write_skipped", job_id=job.id, status="queued")
        logger.warning("job_requeued",
                       job_id=job.id,
                       attempt=job.attempts,
                       max_attempts=self.max_attempts,
                       error=error)
        return TickOutcome.REQUEUED

    async def _fail(self, job: OutboxJob, error: str) -> TickOutcome:
        if not await self.store.mark_failed(job.id, error):
            logger.warning("job_terminal_write_skipped", job_id=job.id, status="failed")
        logger.error("job_failed", job_id=job.id, attempt=job.attempts, error=error)
        await self._mirror_message(job, MessageStatus.FAILED)
        return TickOutcome.FAILED

    async def _mirror_message(self, job: OutboxJob, status: MessageStatus) -> None:
        """Best effort: a message write failure never changes the job outcome."""
        if not job.linked_message_id:
            return
        try:
            updated = await self.store.update_message_status(job.linked_message_id, status)
        except Exception as e:
            logger.error("message_status_update_failed",
                         job_id=job.id,
                         message_id=job.linked_message_id,
                         status=status.value,
                         error=str(e))
            return
        if not updated:
            logger.warning("linked_message_missing", job_id=job.id, message_id=job.linked_message_id)

    def health(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "poll_interval_ms": self.poll_interval_ms,
            "max_attempts": self.max_attempts,
            "outcomes": dict(self.outcomes),
            "last_error": self.last_error,
        }
