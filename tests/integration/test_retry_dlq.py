"""Integration tests for retry backoff, dead-lettering, replay and poisoned runs."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import pytest

from propflow.core.app import Propflow
from propflow.core.engine.context import WorkflowContext
from propflow.core.engine.dispatcher import POISONED_ERROR, DispatchOutcome
from propflow.core.engine.retry import FailureDisposition
from propflow.core.errors import NotDeadLetteredError, RunNotFoundError
from propflow.core.store.runs import NewRun
from propflow.core.types.status import RunStatus, TriggerType, WorkflowType
from propflow.core.utils.clock import utcnow

pytestmark = pytest.mark.integration

Overwrite = Callable[[str, Optional[str]], Awaitable[None]]


async def _queue(
    app: Propflow,
    ref: str = 'manual-test-1',
    max_attempts: int = 3,
    now: Optional[datetime] = None,
) -> str:
    run = await app.runs.create_run(
        NewRun(
            workflow_type=WorkflowType.MAINTENANCE,
            trigger_type=TriggerType.MANUAL,
            trigger_ref=ref,
            property_id='P1',
            payload={},
            max_attempts=max_attempts,
        ),
        now=now,
    )
    assert run is not None
    return run.id


class TestBackoffSchedule:
    @pytest.mark.asyncio
    async def test_three_failures_then_dead_letter(self, app: Propflow) -> None:
        t0 = utcnow()
        run_id = await _queue(app, max_attempts=3, now=t0)

        # attempt 1 fails at t0 -> retry at t0 + 15s
        run = await app.claimer.claim_next(now=t0)
        assert run is not None and run.id == run_id and run.meta is not None
        first = await app.retry.record_failure(run_id, run.meta, 'vendor API down', now=t0)
        assert first.disposition == FailureDisposition.RETRY_SCHEDULED
        assert first.next_attempt_at == t0 + timedelta(seconds=15)

        stored = await app.runs.get_run(run_id)
        assert stored is not None
        assert stored.status == RunStatus.QUEUED
        assert stored.error == 'vendor API down'
        assert stored.started_at is None

        # not due yet
        assert await app.claimer.claim_next(now=t0 + timedelta(seconds=14)) is None

        # attempt 2 fails at t0 + 15s -> retry 30s later
        t1 = t0 + timedelta(seconds=15)
        run = await app.claimer.claim_next(now=t1)
        assert run is not None and run.meta is not None
        assert run.meta.attempts == 1
        second = await app.retry.record_failure(run_id, run.meta, 'vendor API down', now=t1)
        assert second.next_attempt_at == t1 + timedelta(seconds=30)

        # attempt 3 fails -> dead letter
        t2 = t1 + timedelta(seconds=30)
        run = await app.claimer.claim_next(now=t2)
        assert run is not None and run.meta is not None
        third = await app.retry.record_failure(run_id, run.meta, 'vendor API down', now=t2)
        assert third.disposition == FailureDisposition.DEAD_LETTERED
        assert third.next_attempt_at is None

        stored = await app.runs.get_run(run_id)
        assert stored is not None and stored.meta is not None
        assert stored.status == RunStatus.ESCALATED
        assert stored.meta.attempts == 3
        assert stored.meta.dlq is True
        assert stored.completed_at == t2

        dead = await app.retry.list_dead_letters()
        assert [r.id for r in dead] == [run_id]

    @pytest.mark.asyncio
    async def test_failing_handler_through_dispatcher(self, app: Propflow) -> None:
        @app.workflow(WorkflowType.MAINTENANCE)
        async def flaky(ctx: WorkflowContext) -> None:
            raise ConnectionError('vendor API down')

        run_id = await _queue(app)
        batch = await app.dispatcher.process_queue_batch()
        assert batch.count(DispatchOutcome.RETRY_SCHEDULED) == 1

        # the retry is scheduled in the future, so an immediate batch finds nothing
        again = await app.dispatcher.process_queue_batch()
        assert again.processed == 0

        run = await app.runs.get_run(run_id)
        assert run is not None and run.meta is not None
        assert run.status == RunStatus.QUEUED
        assert run.error == 'ConnectionError: vendor API down'
        assert run.meta.attempts == 1


class TestReplay:
    async def _dead_letter(self, app: Propflow) -> str:
        run_id = await _queue(app, max_attempts=1)
        run = await app.claimer.claim_next()
        assert run is not None and run.meta is not None
        result = await app.retry.record_failure(run_id, run.meta, 'boom')
        assert result.disposition == FailureDisposition.DEAD_LETTERED
        return run_id

    @pytest.mark.asyncio
    async def test_replay_resets_attempts(self, app: Propflow) -> None:
        run_id = await self._dead_letter(app)
        now = utcnow()

        replayed = await app.retry.replay(run_id, now=now)

        assert replayed.status == RunStatus.QUEUED
        assert replayed.error is None
        assert replayed.completed_at is None
        assert replayed.meta is not None
        assert replayed.meta.attempts == 0
        assert replayed.meta.dlq is False
        assert replayed.meta.next_attempt_at == now
        assert await app.retry.list_dead_letters() == []

        claimed = await app.claimer.claim_next(now=now)
        assert claimed is not None and claimed.id == run_id

    @pytest.mark.asyncio
    async def test_replay_twice_is_rejected(self, app: Propflow) -> None:
        run_id = await self._dead_letter(app)
        await app.retry.replay(run_id)
        with pytest.raises(NotDeadLetteredError):
            await app.retry.replay(run_id)

    @pytest.mark.asyncio
    async def test_replay_unknown_run(self, app: Propflow) -> None:
        with pytest.raises(RunNotFoundError):
            await app.retry.replay('missing')

    @pytest.mark.asyncio
    async def test_replay_of_queued_run_rejected(self, app: Propflow) -> None:
        run_id = await _queue(app)
        with pytest.raises(NotDeadLetteredError):
            await app.retry.replay(run_id)

    @pytest.mark.asyncio
    async def test_replay_guard_on_changed_metadata(self, app: Propflow) -> None:
        run_id = await self._dead_letter(app)
        run = await app.runs.get_run(run_id)
        assert run is not None and run.meta is not None
        fresh = run.meta.model_copy(update={'attempts': 0, 'dlq': False})
        assert not await app.runs.replay_escalated(
            run_id, expected_meta_raw='{"stale": true}', meta=fresh
        )
        stored = await app.runs.get_run(run_id)
        assert stored is not None
        assert stored.status == RunStatus.ESCALATED


class TestPoisonedRuns:
    @pytest.mark.parametrize('raw', [None, 'not json', '{"version": 99}'])
    @pytest.mark.asyncio
    async def test_poisoned_run_fails_permanently(
        self, app: Propflow, overwrite_meta: Overwrite, raw: Optional[str]
    ) -> None:
        run_id = await _queue(app)
        await overwrite_meta(run_id, raw)

        batch = await app.dispatcher.process_queue_batch()

        assert batch.count(DispatchOutcome.POISONED) == 1
        run = await app.runs.get_run(run_id)
        assert run is not None
        assert run.status == RunStatus.FAILED
        assert run.error == POISONED_ERROR
        assert run.completed_at is not None
        assert await app.retry.list_dead_letters() == []


class TestDeadLetterListing:
    @pytest.mark.asyncio
    async def test_scope_escalations_do_not_hide_dead_letters(self, app: Propflow) -> None:
        t0 = utcnow() - timedelta(minutes=10)
        dead_ids: list[str] = []
        for i in range(2):
            run_id = await _queue(app, ref=f'manual-dead-{i}', max_attempts=1, now=t0)
            run = await app.runs.get_run(run_id)
            assert run is not None and run.meta is not None
            assert await app.runs.claim(run_id, now=t0)
            failed_at = t0 + timedelta(seconds=i)
            result = await app.retry.record_failure(run_id, run.meta, 'boom', now=failed_at)
            assert result.disposition == FailureDisposition.DEAD_LETTERED
            dead_ids.append(run_id)

        # newer escalations that are not dead letters sort ahead of them
        for i in range(5):
            run_id = await _queue(app, ref=f'manual-scope-{i}', now=t0)
            assert await app.runs.claim(run_id, now=t0)
            assert await app.runs.escalate_running(
                run_id, error='Agent disabled for manager', now=t0 + timedelta(minutes=1, seconds=i)
            )

        assert [r.id for r in await app.retry.list_dead_letters(1)] == [dead_ids[1]]
        assert [r.id for r in await app.retry.list_dead_letters(2)] == dead_ids[::-1]
        assert len(await app.retry.list_dead_letters(10)) == 2
