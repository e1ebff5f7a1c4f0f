"""
Profile directory hygiene.

A Chromium profile directory holds two kinds of files that matter here:

  - volatile lock artifacts (SingletonLock & co.) — written by a running
    browser to claim the directory. On container restarts they survive while
    the process that wrote them does not, and the next browser refuses to
    start ("profile appears to be in use").
  - durable authentication state (cookies, IndexedDB, local storage, the
    WPPConnect token file). Losing these forces a new QR pairing.

classify() is pure and decides which is which; clean_profile() walks the
directory to a bounded depth and deletes only what classify() calls volatile.
"""
from __future__ import annotations

import fnmatch
import os
import structlog
from enum import Enum
from pathlib import Path, PurePath
from typing import Union

logger = structlog.get_logger()


class ProfileEntry(str, Enum):
    VOLATILE = "volatile"
    DURABLE_AUTH = "durable_auth"
    UNKNOWN = "unknown"


VOLATILE_LOCK_NAMES = frozenset({
    "SingletonLock",
    "SingletonCookie",
    "SingletonSocket",
    "Lockfile",
})

DURABLE_AUTH_PATTERNS = (
    "Cookies*",
    "Local Storage",
    "IndexedDB",
    "Session Storage",
    "Service Worker",
    "Login Data*",
    "Web Data*",
    "Preferences",
    "*.data.json",
    "*.token",
    "wppconnect*",
)


def classify(path: Union[str, PurePath]) -> ProfileEntry:
    """Classify a path (relative to the profile root or absolute)."""
    parts = PurePath(path).parts
    if not parts:
        return ProfileEntry.UNKNOWN
    if parts[-1] in VOLATILE_LOCK_NAMES:
        return ProfileEntry.VOLATILE
    for part in parts:
        if any(fnmatch.fnmatchcase(part, pattern) for pattern in DURABLE_AUTH_PATTERNS):
            return ProfileEntry.DURABLE_AUTH
    return ProfileEntry.UNKNOWN


def ensure_profile_dir(profile_dir: Path) -> bool:
    """Create the profile directory if absent. Returns True if created."""
    if profile_dir.is_dir():
        return False
    profile_dir.mkdir(parents=True, exist_ok=True)
    logger.info("profile_dir_created", path=str(profile_dir))
    return True


def _remove(path: Path) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except PermissionError:
        pass
    try:
        os.chmod(path, 0o666, follow_symlinks=False)
    except (NotImplementedError, OSError):
        # Linux cannot chmod a symlink itself; fall through to the retry
        pass
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning("lock_artifact_remove_failed", path=str(path), error=str(e))
        return False


def _iter_entries(root: Path, max_depth: int):
    """Yield (path, is_dir) for entries up to max_depth levels below root.

    Symlinks are reported but never followed: SingletonLock is itself a
    symlink pointing at a host/pid that may no longer exist.
    """
    stack = [(root, 0)]
    while stack:
        directory, depth = stack.pop()
        try:
            with os.scandir(directory) as it:
                entries = list(it)
        except OSError as e:
            logger.warning("profile_scan_failed", path=str(directory), error=str(e))
            continue
        for entry in entries:
            is_dir = entry.is_dir(follow_symlinks=False)
            yield Path(entry.path), is_dir
            if is_dir and depth + 1 < max_depth:
                stack.append((Path(entry.path), depth + 1))


def clean_profile(profile_dir: Path, max_depth: int = 3) -> list[Path]:
    """Remove volatile lock artifacts. Returns the paths removed."""
    if not profile_dir.is_dir():
        return []

    removed: list[Path] = []
    for path, is_dir in _iter_entries(profile_dir, max_depth):
        if is_dir:
            continue
        if classify(path.relative_to(profile_dir)) is not ProfileEntry.VOLATILE:
            continue
        if _remove(path):
            removed.append(path)
            logger.info("lock_artifact_removed", path=str(path))

    if removed:
        logger.info("profile_cleanup_complete", profile_dir=str(profile_dir), removed=len(removed))
    return removed
