"""Shared pytest fixtures for the schedule engine test suite.

Provides:
- In-memory record / execution / schedule stores (see ``tests/fakes.py``)
- Fake generation backends (structured, web search, image, code, sandbox)
- File-backed async SQLite database for the SQL services
"""

import os

import pytest
import pytest_asyncio

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ["ANTHROPIC_API_KEY"] = ""

from app.config import get_settings  # noqa: E402
from engine.connection_guard import ConnectionGuard  # noqa: E402
from engine.record_runner import RecordActionRunner  # noqa: E402
from steps.base_step import StepDependencies  # noqa: E402
from steps.registry import StepRegistry  # noqa: E402
from tests.fakes import (  # noqa: E402
    FakeCodeGenerator,
    FakeGenerator,
    FakeImages,
    FakeSandbox,
    FakeTokenRefresher,
    InMemoryExecutionStore,
    InMemoryRecordStore,
    InMemoryScheduleStore,
)


@pytest.fixture(autouse=True)
def fresh_settings():
    """Settings are cached; tests that patch the environment get a clean read."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Store and backend fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def record_store():
    return InMemoryRecordStore()


@pytest.fixture
def execution_store():
    return InMemoryExecutionStore()


@pytest.fixture
def schedule_store():
    return InMemoryScheduleStore()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def deps(generator):
    return StepDependencies(
        generator=generator,
        searcher=generator,
        images=FakeImages(),
        code_generator=FakeCodeGenerator(),
        sandbox=FakeSandbox(),
    )


@pytest.fixture
def registry(deps):
    return StepRegistry(deps)


@pytest.fixture
def token_refresher():
    return FakeTokenRefresher()


@pytest.fixture
def record_runner(record_store, execution_store, token_refresher, registry):
    return RecordActionRunner(
        record_store=record_store,
        execution_store=execution_store,
        guard=ConnectionGuard(token_refresher, record_store),
        registry=registry,
    )


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """A fresh SQLite file per test; concurrent sessions need a real file."""
    from db.database import create_db_engine, init_db

    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from db.database import create_session_factory

    return create_session_factory(db_engine)
