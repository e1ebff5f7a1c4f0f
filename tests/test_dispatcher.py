"""
Tests for the Outbound Job Dispatcher.

Covers:
  - happy path and address normalization
  - retry ceiling (exhaustion, boundary, lowered ceiling)
  - no Ready session → nothing claimed
  - single-flight ticks and claim exclusivity
  - terminal immutability and message mirroring
  - error isolation and the background loop
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from channels.base import SessionUnavailableError
from channels.mock_session import MockSessionDriver
from job_queue.dispatcher import OutboundDispatcher, TickOutcome
from models.schemas import JobStatus, MessageStatus
from session.manager import SessionLifecycleManager


async def _no_sleep(_delay):
    return None


@pytest.fixture
def dispatcher(memory_store, ready_manager):
    return OutboundDispatcher(memory_store, ready_manager, max_attempts=5, poll_interval_ms=10)


def _session(manager):
    return manager.current()


# ──────────────────────────────────────────────────────────────
#  Happy path
# ──────────────────────────────────────────────────────────────

class TestHappyPath:
    @pytest.mark.asyncio
    async def test_idle_when_queue_empty(self, dispatcher):
        assert await dispatcher.tick() == TickOutcome.IDLE

    @pytest.mark.asyncio
    async def test_sends_and_marks_sent(self, dispatcher, memory_store, ready_manager):
        message = await memory_store.create_message()
        job = await memory_store.enqueue_job("+447900000001", "Hello", linked_message_id=message.id)

        assert await dispatcher.tick() == TickOutcome.SENT

        stored = await memory_store.get_job(job.id)
        assert stored.status == JobStatus.SENT
        assert stored.attempts == 1
        assert stored.last_error is None
        assert (await memory_store.get_message(message.id)).status == MessageStatus.SENT

        sent = _session(ready_manager).sent
        assert len(sent) == 1
        assert sent[0]["to"] == "447900000001@c.us"
        assert sent[0]["body"] == "Hello"

    @pytest.mark.asyncio
    async def test_channel_form_destination_is_routed_unchanged(self, dispatcher, memory_store, ready_manager):
        await memory_store.enqueue_job("447900000001@c.us", "Hi")
        await dispatcher.tick()
        assert _session(ready_manager).sent[0]["to"] == "447900000001@c.us"

    @pytest.mark.asyncio
    async def test_oldest_job_first(self, dispatcher, memory_store, ready_manager):
        now = datetime.now(timezone.utc)
        await memory_store.enqueue_job("+441", "newer", created_at=now)
        await memory_store.enqueue_job("+442", "older", created_at=now - timedelta(minutes=5))

        await dispatcher.tick()
        await dispatcher.tick()

        assert [m["body"] for m in _session(ready_manager).sent] == ["older", "newer"]

    @pytest.mark.asyncio
    async def test_one_job_per_tick(self, dispatcher, memory_store):
        await memory_store.enqueue_job("+441", "a")
        await memory_store.enqueue_job("+442", "b")

        await dispatcher.tick()

        counts = await memory_store.count_by_status()
        assert counts["sent"] == 1
        assert counts["queued"] == 1

    @pytest.mark.asyncio
    async def test_job_without_linked_message(self, dispatcher, memory_store):
        memory_store.update_message_status = AsyncMock()
        await memory_store.enqueue_job("+441", "a")
        assert await dispatcher.tick() == TickOutcome.SENT
        memory_store.update_message_status.assert_not_awaited()


# ──────────────────────────────────────────────────────────────
#  Retry ceiling
# ──────────────────────────────────────────────────────────────

class TestRetryCeiling:
    @pytest.mark.asyncio
    async def test_exhaustion_marks_job_and_message_failed(self, memory_store, ready_manager):
        dispatcher = OutboundDispatcher(memory_store, ready_manager, max_attempts=2)
        message = await memory_store.create_message()
        job = await memory_store.enqueue_job("+441", "x", linked_message_id=message.id, attempts=1)
        _session(ready_manager).fail_next_send()

        assert await dispatcher.tick() == TickOutcome.FAILED

        stored = await memory_store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.attempts == 2
        assert stored.last_error == "mock send failure"
        assert (await memory_store.get_message(message.id)).status == MessageStatus.FAILED

    @pytest.mark.asyncio
    async def test_one_below_ceiling_is_requeued(self, memory_store, ready_manager):
        dispatcher = OutboundDispatcher(memory_store, ready_manager, max_attempts=3)
        message = await memory_store.create_message()
        job = await memory_store.enqueue_job("+441", "x", linked_message_id=message.id, attempts=1)
        _session(ready_manager).fail_next_send()

        assert await dispatcher.tick() == TickOutcome.REQUEUED

        stored = await memory_store.get_job(job.id)
        assert stored.status == JobStatus.QUEUED
        assert stored.attempts == 2
        assert stored.last_error == "mock send failure"
        assert (await memory_store.get_message(message.id)).status == MessageStatus.QUEUED

    @pytest.mark.asyncio
    async def test_requeued_job_retried_until_failed(self, memory_store, ready_manager):
        dispatcher = OutboundDispatcher(memory_store, ready_manager, max_attempts=3)
        job = await memory_store.enqueue_job("+441", "x")
        session = _session(ready_manager)
        for _ in range(3):
            session.fail_next_send()

        outcomes = [await dispatcher.tick() for _ in range(4)]

        assert outcomes == [TickOutcome.REQUEUED, TickOutcome.REQUEUED, TickOutcome.FAILED, TickOutcome.IDLE]
        stored = await memory_store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.attempts == 3

    @pytest.mark.asyncio
    async def test_lowered_ceiling_fails_without_sending(self, memory_store, ready_manager):
        dispatcher = OutboundDispatcher(memory_store, ready_manager, max_attempts=3)
        job = await memory_store.enqueue_job("+441", "x", attempts=5)

        assert await dispatcher.tick() == TickOutcome.FAILED

        stored = await memory_store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.attempts == 6
        assert "ceiling" in stored.last_error
        assert _session(ready_manager).sent == []

    def test_rejects_zero_max_attempts(self, memory_store):
        with pytest.raises(ValueError):
            OutboundDispatcher(memory_store, MagicMock(), max_attempts=0)


# ──────────────────────────────────────────────────────────────
#  Session availability
# ──────────────────────────────────────────────────────────────

class TestSessionAvailability:
    @pytest.mark.asyncio
    async def test_no_session_leaves_job_untouched(self, memory_store, profile_dir):
        manager = SessionLifecycleManager(MockSessionDriver(), profile_dir, sleep=_no_sleep)
        dispatcher = OutboundDispatcher(memory_store, manager)
        job = await memory_store.enqueue_job("+441", "x")

        assert await dispatcher.tick() == TickOutcome.NO_SESSION

        stored = await memory_store.get_job(job.id)
        assert stored.status == JobStatus.QUEUED
        assert stored.attempts == 0
        assert stored.last_error is None

    @pytest.mark.asyncio
    async def test_closed_session_claims_nothing(self, memory_store, ready_manager):
        dispatcher = OutboundDispatcher(memory_store, ready_manager)
        job = await memory_store.enqueue_job("+441", "x")
        await ready_manager.close()

        assert await dispatcher.tick() == TickOutcome.NO_SESSION
        assert (await memory_store.get_job(job.id)).attempts == 0

    @pytest.mark.asyncio
    async def test_session_lost_after_check_consumes_attempt(self, memory_store):
        sessions = MagicMock()
        sessions.is_ready = True
        sessions.current.side_effect = SessionUnavailableError("closed")
        dispatcher = OutboundDispatcher(memory_store, sessions, max_attempts=5)
        job = await memory_store.enqueue_job("+441", "x")

        assert await dispatcher.tick() == TickOutcome.REQUEUED

        stored = await memory_store.get_job(job.id)
        assert stored.status == JobStatus.QUEUED
        assert stored.attempts == 1
        assert "not ready" in stored.last_error


# ──────────────────────────────────────────────────────────────
#  Concurrency
# ──────────────────────────────────────────────────────────────

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_tick_in_flight_makes_next_tick_a_noop(self, dispatcher, memory_store):
        gate = asyncio.Event()
        calls = []
        real_fetch = memory_store.fetch_oldest_queued

        async def slow_fetch():
            calls.append(1)
            await gate.wait()
            return await real_fetch()

        memory_store.fetch_oldest_queued = slow_fetch

        first = asyncio.create_task(dispatcher.tick())
        await asyncio.sleep(0)

        assert await dispatcher.tick() == TickOutcome.BUSY

        gate.set()
        assert await first == TickOutcome.IDLE
        assert len(calls) == 1
        assert dispatcher.outcomes["busy"] == 1

    @pytest.mark.asyncio
    async def test_lock_released_after_error(self, dispatcher, memory_store):
        memory_store.fetch_oldest_queued = AsyncMock(side_effect=RuntimeError("db down"))
        assert await dispatcher.tick() == TickOutcome.ERROR
        assert await dispatcher.tick() == TickOutcome.ERROR
        assert memory_store.fetch_oldest_queued.await_count == 2

    @pytest.mark.asyncio
    async def test_two_dispatchers_send_once(self, memory_store, profile_dir, tmp_path):
        managers = [
            SessionLifecycleManager(MockSessionDriver(), profile_dir, settle_delay_s=0, sleep=_no_sleep),
            SessionLifecycleManager(MockSessionDriver(), tmp_path / "other", settle_delay_s=0, sleep=_no_sleep),
        ]
        for m in managers:
            await m.acquire()
        dispatchers = [OutboundDispatcher(memory_store, m) for m in managers]
        await memory_store.enqueue_job("+441", "x")

        outcomes = await asyncio.gather(*(d.tick() for d in dispatchers))

        assert outcomes.count(TickOutcome.SENT) == 1
        assert sum(len(m.current().sent) for m in managers) == 1
        for m in managers:
            await m.close()

    @pytest.mark.asyncio
    async def test_lost_claim_does_not_send(self, dispatcher, memory_store, ready_manager):
        job = await memory_store.enqueue_job("+441", "x")
        snapshot = await memory_store.fetch_oldest_queued()
        await memory_store.claim_job(job.id)  # another worker wins
        memory_store.fetch_oldest_queued = AsyncMock(return_value=snapshot)

        assert await dispatcher.tick() == TickOutcome.LOST_CLAIM

        stored = await memory_store.get_job(job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.attempts == 1
        assert _session(ready_manager).sent == []


# ──────────────────────────────────────────────────────────────
#  Terminal states and message mirroring
# ──────────────────────────────────────────────────────────────

class TestTerminalStates:
    @pytest.mark.asyncio
    async def test_sent_job_is_immutable(self, dispatcher, memory_store):
        job = await memory_store.enqueue_job("+441", "x")
        await dispatcher.tick()

        assert await memory_store.claim_job(job.id) is None
        assert await memory_store.requeue(job.id, "late") is False
        assert await memory_store.mark_failed(job.id, "late") is False

        stored = await memory_store.get_job(job.id)
        assert stored.status == JobStatus.SENT
        assert stored.attempts == 1
        assert stored.last_error is None

    @pytest.mark.asyncio
    async def test_failed_job_is_never_reclaimed(self, memory_store, ready_manager):
        dispatcher = OutboundDispatcher(memory_store, ready_manager, max_attempts=1)
        job = await memory_store.enqueue_job("+441", "x")
        _session(ready_manager).fail_next_send()

        assert await dispatcher.tick() == TickOutcome.FAILED
        assert await dispatcher.tick() == TickOutcome.IDLE
        assert (await memory_store.get_job(job.id)).attempts == 1

    @pytest.mark.asyncio
    async def test_message_update_failure_does_not_change_outcome(self, dispatcher, memory_store):
        message = await memory_store.create_message()
        job = await memory_store.enqueue_job("+441", "x", linked_message_id=message.id)
        memory_store.update_message_status = AsyncMock(side_effect=RuntimeError("messages locked"))

        assert await dispatcher.tick() == TickOutcome.SENT
        assert (await memory_store.get_job(job.id)).status == JobStatus.SENT

    @pytest.mark.asyncio
    async def test_missing_linked_message_is_tolerated(self, dispatcher, memory_store):
        job = await memory_store.enqueue_job("+441", "x", linked_message_id="does-not-exist")
        assert await dispatcher.tick() == TickOutcome.SENT
        assert (await memory_store.get_job(job.id)).status == JobStatus.SENT


# ──────────────────────────────────────────────────────────────
#  Error isolation & loop
# ──────────────────────────────────────────────────────────────

class TestLoop:
    @pytest.mark.asyncio
    async def test_store_error_is_reported_not_raised(self, dispatcher, memory_store):
        memory_store.claim_job = AsyncMock(side_effect=RuntimeError("deadlock"))
        await memory_store.enqueue_job("+441", "x")

        assert await dispatcher.tick() == TickOutcome.ERROR
        assert dispatcher.last_error == "deadlock"
        assert dispatcher.health()["outcomes"] == {"error": 1}

    @pytest.mark.asyncio
    async def test_background_loop_drains_queue(self, dispatcher, memory_store):
        job = await memory_store.enqueue_job("+441", "x")

        await dispatcher.start()
        assert dispatcher.running
        for _ in range(100):
            if (await memory_store.get_job(job.id)).status == JobStatus.SENT:
                break
            await asyncio.sleep(0.01)
        await dispatcher.stop()

        assert (await memory_store.get_job(job.id)).status == JobStatus.SENT
        assert not dispatcher.running

    @pytest.mark.asyncio
    async def test_loop_survives_tick_errors(self, dispatcher, memory_store):
        calls = []

        async def flaky_fetch():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("blip")
            return None

        memory_store.fetch_oldest_queued = flaky_fetch
        await dispatcher.start()
        for _ in range(100):
            if dispatcher.outcomes["idle"]:
                break
            await asyncio.sleep(0.01)
        await dispatcher.stop()

        assert dispatcher.outcomes["error"] == 1
        assert dispatcher.outcomes["idle"] >= 1
