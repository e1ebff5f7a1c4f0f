"""
Mock session driver for development and tests.

Records every send instead of talking to WhatsApp. Failures can be queued up
front to exercise the lifecycle manager's busy-retry path and the
dispatcher's failure path.
"""
from __future__ import annotations

import uuid
import structlog
from pathlib import Path
from typing import Any

from channels.base import SendError, SessionBusyError, SessionDriver, SessionResource

logger = structlog.get_logger()


class MockSession(SessionResource):

    def __init__(self, session_name: str = "mock-session"):
        super().__init__(session_name)
        self.sent: list[dict[str, str]] = []
        self._send_failures: list[Exception] = []

    def fail_next_send(self, error: Exception = None) -> None:
        self._send_failures.append(error or SendError("mock send failure"))

    async def _do_send(self, address: str, body: str) -> dict[str, Any]:
        if self._send_failures:
            raise self._send_failures.pop(0)
        msg_id = f"true_{address}_{uuid.uuid4().hex[:20].upper()}"
        self.sent.append({"to": address, "body": body, "id": msg_id})
        logger.info("whatsapp_text_sent", to=address, msg_id=msg_id, mock=True)
        return {"status": "success", "id": msg_id}

    async def _do_close(self) -> None:
        pass


class MockSessionDriver(SessionDriver):
    """
    Opens MockSessions.

    Args:
        open_failures: exceptions raised by successive open() calls before
            one succeeds (e.g. [SessionBusyError()] * 2).
    """

    name = "mock"

    def __init__(self, open_failures: list[Exception] = None, session_name: str = "mock-session"):
        self.open_failures = list(open_failures or [])
        self.session_name = session_name
        self.open_calls: list[Path] = []
        self.sessions: list[MockSession] = []

    @classmethod
    def busy(cls, times: int) -> "MockSessionDriver":
        return cls(open_failures=[SessionBusyError() for _ in range(times)])

    async def open(self, profile_dir: Path) -> SessionResource:
        self.open_calls.append(Path(profile_dir))
        if self.open_failures:
            raise self.open_failures.pop(0)
        session = MockSession(self.session_name)
        self.sessions.append(session)
        return session
