"""Shared test fixtures for the WhatsApp Hub worker."""
import pytest
import pytest_asyncio

from channels.mock_session import MockSessionDriver
from config.settings import reset_settings
from database.store_factory import reset_store
from database.store_memory import InMemoryJobStore
from session.manager import SessionLifecycleManager


async def no_sleep(_delay: float) -> None:
    return None


class SleepRecorder:
    """Stands in for asyncio.sleep and remembers every requested delay."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_settings()
    reset_store()
    yield
    reset_settings()
    reset_store()


@pytest.fixture
def memory_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def profile_dir(tmp_path):
    return tmp_path / "wpp-session" / "wingshack-session"


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def mock_driver() -> MockSessionDriver:
    return MockSessionDriver()


@pytest_asyncio.fixture
async def ready_manager(mock_driver, profile_dir):
    """A lifecycle manager holding an open MockSession."""
    manager = SessionLifecycleManager(mock_driver, profile_dir, settle_delay_s=0, sleep=no_sleep)
    await manager.acquire()
    yield manager
    await manager.close()
