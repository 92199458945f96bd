"""pytest fixtures for genledger tests.

Provides:
- postgres_url: Session-scoped testcontainer PostgreSQL (GENLEDGER_TEST_POSTGRES=1 only)
- session_factory: Function-scoped session factory on a fresh database
- session: Function-scoped database session
- uow_factory: Function-scoped UnitOfWork factory
- settings: Test settings
- gateway: Scripted provider gateway
- fund: Helper crediting a ledger account

By default every test gets its own SQLite file, with tables created from the
SQLModel metadata. With GENLEDGER_TEST_POSTGRES=1 the suite runs against a
PostgreSQL container with the Alembic migrations applied.
"""

import os

# Must be set before genledger modules create Settings instances
os.environ["APP_ENV"] = "test"
os.environ["TZ"] = "UTC"

import subprocess  # noqa: E402
import sys  # noqa: E402
from pathlib import Path  # noqa: E402
from typing import AsyncGenerator, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402
from testcontainers.postgres import PostgresContainer  # noqa: E402

from genledger import models  # noqa: E402,F401  # registers tables on SQLModel.metadata
from genledger.core.config import Settings  # noqa: E402
from genledger.core.database import setup_db_session  # noqa: E402
from genledger.models.generation_job import GenerationRequest  # noqa: E402
from genledger.services.image_generation.provider import (  # noqa: E402
    NormalizedStatus,
    ProviderState,
)
from genledger.uow import create_uow_factory  # noqa: E402

USE_POSTGRES = os.environ.get("GENLEDGER_TEST_POSTGRES") == "1"
PROJECT_DIR = Path(__file__).resolve().parent.parent

WEBHOOK_SECRET = "test_webhook_secret"


@pytest.fixture(scope="session")
def postgres_url():
    """Provide a session-scoped PostgreSQL URL with migrations applied (opt-in).

    Migrations are applied using subprocess to avoid asyncio event loop conflicts.
    """
    if not USE_POSTGRES:
        yield None
        return

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_genledger",
    ) as container:
        db_url = container.get_connection_url(driver="psycopg")

        env = os.environ.copy()
        env["DATABASE_URL"] = db_url

        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            cwd=PROJECT_DIR,
            check=True,
            capture_output=True,
            text=True,
            env=env,
        )

        yield db_url


@pytest_asyncio.fixture(scope="function")
async def session_factory(postgres_url: Optional[str], tmp_path):
    """Provide a session factory on an empty database."""
    if postgres_url:
        factory = setup_db_session(postgres_url, pool_size=10)
    else:
        factory = setup_db_session(f"sqlite+aiosqlite:///{tmp_path / 'genledger.db'}")
        async with factory.kw["bind"].begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    engine = factory.kw["bind"]
    if postgres_url:
        # Empty all tables for test isolation
        async with engine.begin() as conn:
            for table in reversed(SQLModel.metadata.sorted_tables):
                await conn.execute(table.delete())
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a function-scoped database session.

    With SQLite the session holds the database write lock from its first
    statement until commit/rollback, so do not mix it with uow_factory
    writes inside one open transaction.
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest.fixture
def settings() -> Settings:
    """Settings used by services under test."""
    return Settings(  # type: ignore[call-arg]
        APP_ENV="test",
        KIE_API_KEY="test-kie-key",
        SEPAY_WEBHOOK_SECRET=WEBHOOK_SECRET,
        CREDITS_PER_IMAGE=18,
        JOB_EXPIRY_SECONDS=1200,
        MAX_PROVIDER_ATTEMPTS=3,
        WORKER_BATCH_SIZE=10,
        PAYMENT_INTENT_TTL_MINUTES=15,
        MATCH_TOKEN_PREFIX="PAY",
    )


class FakeGateway:
    """Scripted provider gateway.

    submit() pops the next entry of `submit_results` (a task id or an
    exception); with nothing scripted it returns "task-1", "task-2", ...
    fetch_status() pops from `statuses[task_id]`, repeating the last entry.
    """

    name = "kie"

    def __init__(self):
        self.submitted: list[GenerationRequest] = []
        self.submit_results: list = []
        self.statuses: dict[str, list] = {}
        self.fetched: list[str] = []
        self._counter = 0

    async def submit(self, request: GenerationRequest) -> str:
        self.submitted.append(request)
        if self.submit_results:
            result = self.submit_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        self._counter += 1
        return f"task-{self._counter}"

    async def fetch_status(self, task_id: str) -> NormalizedStatus:
        self.fetched.append(task_id)
        queue = self.statuses.get(task_id)
        if not queue:
            return NormalizedStatus(state=ProviderState.WAITING)
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fund(uow_factory):
    """Return a coroutine function that credits an account."""

    async def _fund(owner_id: str, amount: int) -> None:
        async with await uow_factory() as uow:
            await uow.ledger.credit(owner_id, amount)

    return _fund
