# propflow/core/store/runs.py
"""Durable run storage.

Every mutation of a run's status is a single conditional UPDATE that names
the status it expects to leave. A zero-row result means another actor got
there first; callers report that as contention and never retry blindly.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence, cast

from sqlalchemy import func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propflow.core.codec.meta import QueueMeta, encode_meta
from propflow.core.logging import get_logger
from propflow.core.models.agent_pg import (
    AgentActionLogModel,
    AgentExceptionModel,
    AgentRunModel,
    AgentStepModel,
)
from propflow.core.models.records import ExceptionRecord, RunRecord, StepRecord
from propflow.core.types.status import (
    RUN_TERMINAL_STATES,
    ActionLogType,
    RunStatus,
    StepStatus,
    TriggerType,
    WorkflowType,
)
from propflow.core.utils.clock import ensure_utc, utcnow

logger = get_logger('runs')


@dataclass(frozen=True)
class NewRun:
    """Everything a producer supplies to enqueue a run."""

    workflow_type: WorkflowType
    trigger_type: TriggerType
    trigger_ref: str
    property_id: Optional[str]
    payload: dict[str, Any]
    max_attempts: int


@dataclass(frozen=True)
class RunDetail:
    run: RunRecord
    steps: list[StepRecord]
    exceptions: list[ExceptionRecord]


@dataclass(frozen=True)
class WindowCounts:
    terminal: int
    failed: int


class RunStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ----------------- creation & lookup -----------------

    async def exists_for_key(self, trigger_ref: str) -> bool:
        async with self.session_factory() as session:
            found = await session.scalar(
                select(AgentRunModel.id).where(AgentRunModel.trigger_ref == trigger_ref).limit(1)
            )
        return found is not None

    async def create_run(self, new: NewRun, *, now: Optional[datetime] = None) -> Optional[RunRecord]:
        """
        Insert a QUEUED run with fresh scheduling metadata.

        Returns None when another run already owns ``trigger_ref``; the unique
        index turns a lost insert race into a duplicate instead of a double run.
        """
        now = ensure_utc(now) or utcnow()
        meta = QueueMeta(
            workflow_type=new.workflow_type,
            payload=new.payload,
            attempts=0,
            max_attempts=new.max_attempts,
            next_attempt_at=now,
            dlq=False,
        )
        row = AgentRunModel(
            id=str(uuid.uuid4()),
            workflow_type=new.workflow_type,
            trigger_type=new.trigger_type,
            trigger_ref=new.trigger_ref,
            property_id=new.property_id,
            status=RunStatus.QUEUED,
            queue_meta=encode_meta(meta),
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug(f'Trigger {new.trigger_ref} already has a run')
                return None
            return RunRecord.from_model(row)

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        async with self.session_factory() as session:
            row = await session.get(AgentRunModel, run_id)
            return RunRecord.from_model(row) if row is not None else None

    async def get_run_detail(self, run_id: str) -> Optional[RunDetail]:
        async with self.session_factory() as session:
            row = await session.get(AgentRunModel, run_id)
            if row is None:
                return None
            steps = await session.scalars(
                select(AgentStepModel)
                .where(AgentStepModel.run_id == run_id)
                .order_by(AgentStepModel.step_order)
            )
            exceptions = await session.scalars(
                select(AgentExceptionModel)
                .where(AgentExceptionModel.run_id == run_id)
                .order_by(AgentExceptionModel.created_at)
            )
            step_records = [StepRecord.from_model(s) for s in steps]
            exception_records = [ExceptionRecord.from_model(e) for e in exceptions]
            return RunDetail(
                run=RunRecord.from_model(
                    row,
                    step_count=len(step_records),
                    exception_count=len(exception_records),
                ),
                steps=step_records,
                exceptions=exception_records,
            )

    async def list_runs(
        self,
        *,
        statuses: Optional[Sequence[RunStatus]] = None,
        property_id: Optional[str] = None,
        allowed_property_ids: Optional[Sequence[str]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[RunRecord]:
        """
        Newest runs first, with step and exception counts.

        ``allowed_property_ids`` restricts results to a caller's scope; None
        means unrestricted (operators).
        """
        step_count = (
            select(func.count(AgentStepModel.id))
            .where(AgentStepModel.run_id == AgentRunModel.id)
            .correlate(AgentRunModel)
            .scalar_subquery()
        )
        exception_count = (
            select(func.count(AgentExceptionModel.id))
            .where(AgentExceptionModel.run_id == AgentRunModel.id)
            .correlate(AgentRunModel)
            .scalar_subquery()
        )
        stmt = select(AgentRunModel, step_count, exception_count)
        if statuses:
            stmt = stmt.where(AgentRunModel.status.in_(list(statuses)))
        if property_id is not None:
            stmt = stmt.where(AgentRunModel.property_id == property_id)
        if allowed_property_ids is not None:
            stmt = stmt.where(AgentRunModel.property_id.in_(list(allowed_property_ids)))
        stmt = (
            stmt.order_by(AgentRunModel.created_at.desc(), AgentRunModel.id.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()
            return [
                RunRecord.from_model(run, step_count=steps, exception_count=excs)
                for run, steps, excs in rows
            ]

    async def list_queued(self, limit: int) -> list[RunRecord]:
        """Oldest QUEUED runs, the claim candidates."""
        async with self.session_factory() as session:
            rows = await session.scalars(
                select(AgentRunModel)
                .where(AgentRunModel.status == RunStatus.QUEUED)
                .order_by(AgentRunModel.created_at, AgentRunModel.id)
                .limit(limit)
            )
            return [RunRecord.from_model(r) for r in rows]

    async def list_dead_letters(self, limit: int = 100) -> list[RunRecord]:
        """
        Most recently escalated runs whose metadata marks them dead-lettered.

        ``dlq`` lives inside the opaque metadata, so ESCALATED rows are paged
        through until ``limit`` dead letters are found or the rows run out;
        scope-disabled escalations are skipped.
        """
        page_size = max(limit, 1)
        found: list[RunRecord] = []
        offset = 0
        async with self.session_factory() as session:
            while len(found) < limit:
                rows = list(
                    await session.scalars(
                        select(AgentRunModel)
                        .where(
                            AgentRunModel.status == RunStatus.ESCALATED,
                            AgentRunModel.queue_meta.is_not(None),
                        )
                        .order_by(AgentRunModel.completed_at.desc(), AgentRunModel.id)
                        .limit(page_size)
                        .offset(offset)
                    )
                )
                for row in rows:
                    record = RunRecord.from_model(row)
                    if record.meta is not None and record.meta.dlq:
                        found.append(record)
                if len(rows) < page_size:
                    break
                offset += page_size
        return found[:limit]

    async def count_window(self, since: datetime) -> WindowCounts:
        """Terminal and FAILED runs completed at or after ``since``."""
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(AgentRunModel.status, func.count(AgentRunModel.id))
                    .where(
                        AgentRunModel.status.in_(list(RUN_TERMINAL_STATES)),
                        AgentRunModel.completed_at >= ensure_utc(since),
                    )
                    .group_by(AgentRunModel.status)
                )
            ).all()
        by_status = {status: count for status, count in rows}
        return WindowCounts(
            terminal=sum(by_status.values()),
            failed=by_status.get(RunStatus.FAILED, 0),
        )

    # ----------------- conditional transitions -----------------

    async def _transition(
        self,
        run_id: str,
        expected: RunStatus,
        values: dict[str, Any],
        *extra_where: Any,
    ) -> bool:
        stmt = (
            update(AgentRunModel)
            .where(AgentRunModel.id == run_id, AgentRunModel.status == expected, *extra_where)
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = cast(CursorResult[Any], await session.execute(stmt))
            await session.commit()
        return result.rowcount == 1

    async def claim(
        self,
        run_id: str,
        *,
        now: datetime,
        expected_meta_raw: Optional[str] = None,
    ) -> bool:
        """
        QUEUED -> RUNNING. False when another claimer won.

        With ``expected_meta_raw`` the claim also requires the stored metadata
        to be unchanged since it was read, so a run that was claimed, failed
        and requeued in between (new attempts, new backoff) is not taken on
        a stale snapshot.
        """
        extra_where: list[Any] = []
        if expected_meta_raw is not None:
            extra_where.append(AgentRunModel.queue_meta == expected_meta_raw)
        return await self._transition(
            run_id,
            RunStatus.QUEUED,
            {'status': RunStatus.RUNNING, 'started_at': ensure_utc(now)},
            *extra_where,
        )

    async def complete(self, run_id: str, *, summary: Optional[str], now: datetime) -> bool:
        return await self._transition(
            run_id,
            RunStatus.RUNNING,
            {
                'status': RunStatus.COMPLETED,
                'summary': summary,
                'error': None,
                'completed_at': ensure_utc(now),
            },
        )

    async def fail_running(self, run_id: str, *, error: str, now: datetime) -> bool:
        """RUNNING -> FAILED, terminal without retry."""
        return await self._transition(
            run_id,
            RunStatus.RUNNING,
            {'status': RunStatus.FAILED, 'error': error, 'completed_at': ensure_utc(now)},
        )

    async def escalate_running(
        self,
        run_id: str,
        *,
        error: str,
        now: datetime,
        meta: Optional[QueueMeta] = None,
    ) -> bool:
        values: dict[str, Any] = {
            'status': RunStatus.ESCALATED,
            'error': error,
            'completed_at': ensure_utc(now),
        }
        if meta is not None:
            values['queue_meta'] = encode_meta(meta)
        return await self._transition(run_id, RunStatus.RUNNING, values)

    async def requeue_running(
        self,
        run_id: str,
        *,
        error: Optional[str],
        meta: Optional[QueueMeta] = None,
    ) -> bool:
        """RUNNING -> QUEUED; metadata is replaced only when given."""
        values: dict[str, Any] = {
            'status': RunStatus.QUEUED,
            'error': error,
            'started_at': None,
        }
        if meta is not None:
            values['queue_meta'] = encode_meta(meta)
        return await self._transition(run_id, RunStatus.RUNNING, values)

    async def replay_escalated(
        self,
        run_id: str,
        *,
        expected_meta_raw: str,
        meta: QueueMeta,
    ) -> bool:
        """ESCALATED -> QUEUED, only if the stored metadata is still exactly what was read."""
        return await self._transition(
            run_id,
            RunStatus.ESCALATED,
            {
                'status': RunStatus.QUEUED,
                'queue_meta': encode_meta(meta),
                'error': None,
                'started_at': None,
                'completed_at': None,
            },
            AgentRunModel.queue_meta == expected_meta_raw,
        )

    async def cancel_queued(self, run_id: str, *, now: datetime) -> bool:
        return await self._transition(
            run_id,
            RunStatus.QUEUED,
            {
                'status': RunStatus.FAILED,
                'error': 'Cancelled by user',
                'completed_at': ensure_utc(now),
            },
        )

    # ----------------- handler journal -----------------

    async def add_step(
        self,
        run_id: str,
        name: str,
        *,
        input_json: Any = None,
        status: StepStatus = StepStatus.PLANNED,
    ) -> str:
        step_id = str(uuid.uuid4())
        async with self.session_factory() as session:
            current = await session.scalar(
                select(func.max(AgentStepModel.step_order)).where(AgentStepModel.run_id == run_id)
            )
            session.add(
                AgentStepModel(
                    id=step_id,
                    run_id=run_id,
                    step_order=(current or 0) + 1,
                    name=name,
                    status=status,
                    input_json=input_json,
                    started_at=utcnow() if status == StepStatus.RUNNING else None,
                )
            )
            await session.commit()
        return step_id

    async def set_step_status(
        self,
        step_id: str,
        status: StepStatus,
        *,
        output_json: Any = None,
        error: Optional[str] = None,
    ) -> None:
        values: dict[str, Any] = {'status': status}
        now = utcnow()
        if status == StepStatus.RUNNING:
            values['started_at'] = now
        else:
            values['completed_at'] = now
        if output_json is not None:
            values['output_json'] = output_json
        if error is not None:
            values['error'] = error
        async with self.session_factory() as session:
            await session.execute(
                update(AgentStepModel)
                .where(AgentStepModel.id == step_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def log_action(
        self,
        run_id: str,
        action_type: ActionLogType,
        target: str,
        *,
        step_id: Optional[str] = None,
        request_json: Any = None,
        response_json: Any = None,
    ) -> str:
        log_id = str(uuid.uuid4())
        async with self.session_factory() as session:
            session.add(
                AgentActionLogModel(
                    id=log_id,
                    run_id=run_id,
                    step_id=step_id,
                    action_type=action_type,
                    target=target,
                    request_json=request_json,
                    response_json=response_json,
                )
            )
            await session.commit()
        return log_id
