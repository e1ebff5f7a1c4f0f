"""
Session Lifecycle Manager — owns the one live WhatsApp session of a process.

Usage:
    manager = SessionLifecycleManager(driver, profile_dir)
    manager.on_message(relay.handle)
    async with manager.session():       # acquire, then close on every exit
        dispatcher.start()
        ...

acquire() drives session.state_machine: it creates the profile directory,
clears stale lock artifacts, opens the session through the driver and retries
busy conflicts under the RetryPolicy. Anything else is fatal and surfaces as
SessionAcquireError.
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from channels.base import (
    MessageHandler, SessionAcquireError, SessionDriver, SessionResource,
    SessionUnavailableError, is_busy_error,
)
from models.schemas import SessionState
from session.profile import clean_profile, ensure_profile_dir
from session.state_machine import (
    AcquireEvent, AcquirePhase, AcquireState, RetryPolicy, transition,
)

logger = structlog.get_logger()


class SessionLifecycleManager:

    def __init__(
        self,
        driver: SessionDriver,
        profile_dir: Path,
        policy: RetryPolicy = None,
        settle_delay_s: float = 0.3,
        cleanup_max_depth: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.driver = driver
        self.profile_dir = Path(profile_dir)
        self.policy = policy or RetryPolicy()
        self.settle_delay_s = settle_delay_s
        self.cleanup_max_depth = cleanup_max_depth
        self._sleep = sleep
        self._fsm = AcquireState()
        self._session: Optional[SessionResource] = None
        self._handlers: list[MessageHandler] = []
        self._lock = asyncio.Lock()
        self.history: list[AcquireState] = []

    # ── State ─────────────────────────────────────────────────

    @property
    def phase(self) -> AcquirePhase:
        return self._fsm.phase

    @property
    def state(self) -> SessionState:
        if self._fsm.phase is AcquirePhase.READY:
            if self._session is not None and not self._session.closed:
                return SessionState.READY
            return SessionState.NOT_READY
        if self._fsm.phase is AcquirePhase.CLOSED:
            return SessionState.CLOSED
        if self._fsm.phase is AcquirePhase.FAILED:
            return SessionState.FAILED
        return SessionState.NOT_READY

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    def current(self) -> SessionResource:
        """The live session. Raises SessionUnavailableError if not ready."""
        if not self.is_ready:
            raise SessionUnavailableError(self.state.value)
        return self._session

    async def send(self, address: str, body: str) -> dict[str, Any]:
        return await self.current().send(address, body)

    def on_message(self, handler: MessageHandler) -> None:
        """Subscribe to inbound messages; survives re-acquisition."""
        self._handlers.append(handler)
        if self._session is not None:
            self._session.on_message(handler)

    def _advance(self, event: AcquireEvent, reason: str = "") -> AcquireState:
        previous = self._fsm
        self._fsm = transition(previous, event, self.policy, reason)
        self.history.append(self._fsm)
        logger.debug("session_transition",
                     from_phase=previous.phase.value,
                     to_phase=self._fsm.phase.value,
                     trigger=event.value,
                     attempt=self._fsm.attempt)
        return self._fsm

    # ── Acquire ───────────────────────────────────────────────

    async def acquire(self) -> SessionResource:
        async with self._lock:
            if self.is_ready:
                return self._session

            self._fsm = AcquireState()
            self.history = [self._fsm]
            last_error: Optional[BaseException] = None

            while True:
                phase = self._fsm.phase

                if phase is AcquirePhase.INIT:
                    try:
                        ensure_profile_dir(self.profile_dir)
                    except OSError as e:
                        last_error = e
                        logger.error("session_profile_unusable",
                                     profile_dir=str(self.profile_dir), error=str(e))
                        self._advance(AcquireEvent.ERROR, str(e))
                        continue
                    self._advance(AcquireEvent.PROFILE_READY)

                elif phase is AcquirePhase.CLEANING:
                    try:
                        removed = clean_profile(self.profile_dir, self.cleanup_max_depth)
                    except OSError as e:
                        last_error = e
                        logger.error("session_profile_cleanup_failed",
                                     profile_dir=str(self.profile_dir), error=str(e))
                        self._advance(AcquireEvent.ERROR, str(e))
                        continue
                    self._advance(AcquireEvent.CLEANED)
                    logger.info("session_profile_cleaned",
                                profile_dir=str(self.profile_dir),
                                removed=len(removed))

                elif phase is AcquirePhase.ACQUIRING:
                    attempt = self._fsm.attempt
                    if self._fsm.delay_s:
                        logger.info("session_retry_wait", delay_s=self._fsm.delay_s, attempt=attempt)
                    await self._sleep(self._fsm.delay_s + self.settle_delay_s)

                    logger.info("session_starting",
                                driver=self.driver.name,
                                attempt=attempt,
                                max_attempts=self.policy.max_attempts)
                    try:
                        session = await self.driver.open(self.profile_dir)
                    except Exception as e:
                        last_error = e
                        if is_busy_error(e):
                            logger.warning("session_profile_busy", attempt=attempt, error=str(e))
                            self._advance(AcquireEvent.BUSY, str(e))
                        else:
                            logger.error("session_start_failed", attempt=attempt, error=str(e))
                            self._advance(AcquireEvent.ERROR, str(e))
                        continue

                    self._session = session
                    for handler in self._handlers:
                        session.on_message(handler)
                    self._advance(AcquireEvent.ACQUIRED)
                    logger.info("session_ready",
                                driver=self.driver.name,
                                attempt=attempt,
                                profile_dir=str(self.profile_dir))

                elif phase is AcquirePhase.READY:
                    return self._session

                else:  # FAILED
                    logger.error("session_acquire_fatal",
                                 attempts=self._fsm.attempt,
                                 reason=self._fsm.reason)
                    raise SessionAcquireError(
                        f"Could not start WhatsApp session after {self._fsm.attempt} "
                        f"attempt(s): {self._fsm.reason}",
                        attempts=self._fsm.attempt,
                        cause=last_error,
                    ) from last_error

    # ── Release ───────────────────────────────────────────────

    async def close(self) -> None:
        session, self._session = self._session, None
        try:
            if session is not None:
                await session.close()
        finally:
            if self._fsm.phase is not AcquirePhase.CLOSED:
                self._advance(AcquireEvent.CLOSE)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[SessionResource]:
        """Scoped acquisition: the session is closed on every exit path."""
        resource = await self.acquire()
        try:
            yield resource
        finally:
            await self.close()

    def health(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "phase": self._fsm.phase.value,
            "attempts": self._fsm.attempt,
            "reason": self._fsm.reason,
            "profile_dir": str(self.profile_dir),
            "session": self._session.health() if self._session else None,
        }
