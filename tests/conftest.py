"""
Shared fixtures for storyrank tests: a throwaway SQLite database per test,
a running engine on top of it, and an event factory.
"""

import pytest
import pytest_asyncio

from storyrank.config import Config

# Console logging only; keep test runs from writing log files
Config.LOG_DIR = ""

from storyrank.database.database import Database  # noqa: E402
from storyrank.services.engine import LeaderboardEngine  # noqa: E402
from tests.helpers.events import EventFactory  # noqa: E402


@pytest.fixture
def events() -> EventFactory:
    return EventFactory()


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'storyrank_test.db'}")
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def engine(database):
    engine = LeaderboardEngine(database, shards=4, queue_size=16, debounce_seconds=0)
    await engine.start()
    yield engine
    await engine.stop()
