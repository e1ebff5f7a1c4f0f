from session.profile import (
    ProfileEntry, VOLATILE_LOCK_NAMES, DURABLE_AUTH_PATTERNS,
    classify, clean_profile, ensure_profile_dir,
)
from session.state_machine import (
    AcquirePhase, AcquireEvent, AcquireState, RetryPolicy,
    InvalidTransition, transition,
)
from session.manager import SessionLifecycleManager

__all__ = [
    "ProfileEntry", "VOLATILE_LOCK_NAMES", "DURABLE_AUTH_PATTERNS",
    "classify", "clean_profile", "ensure_profile_dir",
    "AcquirePhase", "AcquireEvent", "AcquireState", "RetryPolicy",
    "InvalidTransition", "transition",
    "SessionLifecycleManager",
]
