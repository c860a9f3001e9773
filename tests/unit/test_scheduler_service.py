"""Unit tests for BatchScheduler tick and loop behaviour."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from psycopg import OperationalError

from propflow.core.engine.dispatcher import BatchResult
from propflow.core.models.queue import QueueConfig
from propflow.core.models.scheduler import SchedulerConfig
from propflow.core.scheduler import BatchScheduler


def _app(batch_size: int = 20) -> Any:
    app = MagicMock()
    app.config.queue = QueueConfig(batch_size=batch_size, claim_scan_limit=max(30, batch_size))
    app.config.scheduler = SchedulerConfig()
    app.startup = AsyncMock()
    app.close = AsyncMock()
    app.dispatcher.process_queue_batch = AsyncMock(return_value=BatchResult())
    app.governor.evaluate_and_auto_pause = AsyncMock()
    return app


@pytest.mark.unit
class TestTick:
    @pytest.mark.asyncio
    async def test_first_tick_evaluates_governor(self) -> None:
        app = _app()
        scheduler = BatchScheduler(app)
        await scheduler.tick()
        app.dispatcher.process_queue_batch.assert_awaited_once()
        app.governor.evaluate_and_auto_pause.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_evaluation_not_repeated_within_interval(self) -> None:
        app = _app()
        scheduler = BatchScheduler(app, SchedulerConfig(evaluate_interval_ms=3_600_000))
        await scheduler.tick()
        await scheduler.tick()
        assert app.dispatcher.process_queue_batch.await_count == 2
        assert app.governor.evaluate_and_auto_pause.await_count == 1


@pytest.mark.unit
class TestRunForever:
    @pytest.mark.asyncio
    async def test_stop_request_ends_loop_and_closes(self) -> None:
        app = _app()
        scheduler = BatchScheduler(app, SchedulerConfig(batch_interval_ms=100))

        async def tick_then_stop() -> BatchResult:
            scheduler.request_stop()
            return BatchResult()

        app.dispatcher.process_queue_batch.side_effect = tick_then_stop
        await scheduler.run_forever()

        app.startup.assert_awaited_once()
        app.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_gives_up_after_db_retries(self) -> None:
        app = _app()
        scheduler = BatchScheduler(
            app,
            SchedulerConfig(db_retry_initial_ms=100, db_retry_max_ms=500, db_retry_max_attempts=1),
        )
        app.dispatcher.process_queue_batch.side_effect = OperationalError('connection refused')

        with pytest.raises(OperationalError):
            await scheduler.run_forever()
        assert scheduler._db_backoff.attempts == 1
        app.close.assert_awaited_once()
