"""Integration test fixtures: a real database behind a Propflow app.

Uses PROPFLOW_TEST_DATABASE_URL when set (PostgreSQL in CI); otherwise each
test gets its own SQLite file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable, Mapping, Optional

import pytest
import pytest_asyncio
from sqlalchemy import text

from propflow.core.app import Propflow
from propflow.core.auth import Principal
from propflow.core.models.agent_pg import AgentRunModel, Base
from propflow.core.models.app import AppConfig, IntakeConfig, RateLimitConfig, StreamConfig
from propflow.core.models.database import DatabaseConfig
from propflow.core.models.queue import QueueConfig
from propflow.core.models.records import ActionRecord

CRON_SECRET = 'cron-test-secret'
WEBHOOK_SECRET = 'webhook-test-secret'


class RecordingExecutor:
    """Action executor that records what it ran and returns a canned result."""

    def __init__(self, result: Optional[Mapping[str, Any]] = None) -> None:
        self.executed: list[str] = []
        self.result = dict(result) if result is not None else {'ok': True}

    async def execute(self, action: ActionRecord) -> Mapping[str, Any]:
        self.executed.append(action.id)
        return self.result


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return os.environ.get('PROPFLOW_TEST_DATABASE_URL') or f'sqlite+aiosqlite:///{tmp_path}/propflow.db'


@pytest.fixture
def app_config(db_url: str) -> AppConfig:
    return AppConfig(
        database=DatabaseConfig(database_url=db_url),
        queue=QueueConfig(handler_timeout_seconds=5.0),
        stream=StreamConfig(poll_interval_seconds=0.01, max_duration_seconds=2.0),
        intake=IntakeConfig(cron_secret=CRON_SECRET, webhook_secret=WEBHOOK_SECRET),
        rate_limit=RateLimitConfig(enabled=False),
    )


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest_asyncio.fixture
async def app(app_config: AppConfig, executor: RecordingExecutor) -> AsyncGenerator[Propflow, None]:
    """Propflow app with schema initialized and all tables empty."""
    propflow_app = Propflow(app_config, action_executor=executor)
    await propflow_app.startup()
    database = propflow_app.get_database()
    if not database.is_sqlite:
        tables = ', '.join(t.name for t in Base.metadata.sorted_tables)
        async with database.async_engine.begin() as conn:
            await conn.execute(text(f'TRUNCATE {tables} CASCADE'))
    yield propflow_app
    await propflow_app.close()


@pytest.fixture
def operator() -> Principal:
    return Principal(user_id='op-1', is_operator=True)


@pytest.fixture
def manager() -> Principal:
    return Principal(user_id='user-1', manager_id='mgr-1', property_ids=frozenset({'P1', 'P2'}))


@pytest.fixture
def overwrite_meta(app: Propflow) -> Callable[[str, Optional[str]], Awaitable[None]]:
    """Overwrite a run's stored metadata, bypassing the codec."""

    async def _overwrite(run_id: str, raw: Optional[str]) -> None:
        async with app.get_database().session_factory() as session:
            row = await session.get(AgentRunModel, run_id)
            assert row is not None
            row.queue_meta = raw
            await session.commit()

    return _overwrite
