"""
Session acquisition state machine.

    INIT ──profile_ready──▶ CLEANING ──cleaned──▶ ACQUIRING ──acquired──▶ READY
                               ▲                     │                    │
                               └────── busy ─────────┤                  close
                              (attempt < max, delay) │                    ▼
                                                     └─ error / busy at max ─▶ FAILED

An error while preparing the profile (INIT or CLEANING) also ends in FAILED.

transition() is pure: it takes the current AcquireState, an event and the
RetryPolicy, and returns the next AcquireState. The manager performs the I/O
(mkdir, cleanup, driver.open, sleeping) and feeds the outcome back as events.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


class AcquirePhase(str, Enum):
    INIT = "init"
    CLEANING = "cleaning"
    ACQUIRING = "acquiring"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


class AcquireEvent(str, Enum):
    PROFILE_READY = "profile_ready"
    CLEANED = "cleaned"
    ACQUIRED = "acquired"
    BUSY = "busy"
    ERROR = "error"
    CLOSE = "close"


class InvalidTransition(ValueError):
    def __init__(self, phase: AcquirePhase, event: AcquireEvent):
        self.phase = phase
        self.event = event
        super().__init__(f"No transition from '{phase.value}' on '{event.value}'")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with linear backoff and a floor."""
    max_attempts: int = 3
    base_delay_s: float = 1.0
    min_delay_s: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt that follows failed attempt number `attempt`."""
        return max(self.min_delay_s, self.base_delay_s * attempt)


@dataclass(frozen=True)
class AcquireState:
    phase: AcquirePhase = AcquirePhase.INIT
    attempt: int = 0            # driver.open() calls made so far
    delay_s: float = 0.0        # wait before the next open()
    reason: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.phase in (AcquirePhase.READY, AcquirePhase.FAILED, AcquirePhase.CLOSED)


def transition(state: AcquireState, event: AcquireEvent,
               policy: RetryPolicy, reason: str = "") -> AcquireState:
    phase = state.phase

    if event is AcquireEvent.CLOSE and phase is not AcquirePhase.CLOSED:
        return replace(state, phase=AcquirePhase.CLOSED, delay_s=0.0, reason=reason or "closed")

    if event is AcquireEvent.ERROR and phase in (AcquirePhase.INIT, AcquirePhase.CLEANING):
        return replace(state, phase=AcquirePhase.FAILED, delay_s=0.0, reason=reason)

    if phase is AcquirePhase.INIT and event is AcquireEvent.PROFILE_READY:
        return replace(state, phase=AcquirePhase.CLEANING)

    if phase is AcquirePhase.CLEANING and event is AcquireEvent.CLEANED:
        return replace(state, phase=AcquirePhase.ACQUIRING, attempt=state.attempt + 1)

    if phase is AcquirePhase.ACQUIRING:
        if event is AcquireEvent.ACQUIRED:
            return replace(state, phase=AcquirePhase.READY, delay_s=0.0, reason="")
        if event is AcquireEvent.BUSY:
            if state.attempt < policy.max_attempts:
                return replace(
                    state,
                    phase=AcquirePhase.CLEANING,
                    delay_s=policy.delay_for(state.attempt),
                    reason=reason,
                )
            return replace(state, phase=AcquirePhase.FAILED, delay_s=0.0,
                           reason=reason or "profile busy after retries")
        if event is AcquireEvent.ERROR:
            return replace(state, phase=AcquirePhase.FAILED, delay_s=0.0, reason=reason)

    raise InvalidTransition(phase, event)
