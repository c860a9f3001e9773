# propflow/core/engine/dispatcher.py
"""Runs claimed work through the safety gates and into its workflow handler."""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from propflow.core.defaults import MAX_BATCH_SIZE
from propflow.core.engine.action_lock import ActionExecutor
from propflow.core.engine.claimer import QueueClaimer
from propflow.core.engine.context import (
    RunRecorder,
    WorkflowContext,
    WorkflowHandler,
    WorkflowOutcome,
)
from propflow.core.engine.governor import SafetyGovernor
from propflow.core.engine.retry import FailureDisposition, RetryController
from propflow.core.logging import get_logger
from propflow.core.models.queue import QueueConfig
from propflow.core.models.records import RunRecord
from propflow.core.registry.handlers import HandlerRegistry
from propflow.core.store.actions import ActionStore
from propflow.core.store.exceptions import ExceptionStore
from propflow.core.store.runs import RunStore
from propflow.core.store.settings import AgentSettingsStore
from propflow.core.utils.clock import utcnow

logger = get_logger('dispatcher')

POISONED_ERROR = 'Missing or undecodable orchestration metadata'
SCOPE_DISABLED_ERROR = 'Agent disabled for manager'

# property_id -> owning manager id, or None when the property has no owner
ScopeResolver = Callable[[str], Awaitable[Optional[str]]]


class DispatchOutcome(str, Enum):
    COMPLETED = 'COMPLETED'
    RETRY_SCHEDULED = 'RETRY_SCHEDULED'
    DEAD_LETTERED = 'DEAD_LETTERED'
    POISONED = 'POISONED'
    GOVERNOR_BLOCKED = 'GOVERNOR_BLOCKED'
    SCOPE_DISABLED = 'SCOPE_DISABLED'
    LOST_RACE = 'LOST_RACE'


@dataclass(frozen=True)
class DispatchResult:
    run_id: str
    outcome: DispatchOutcome
    error: Optional[str] = None


@dataclass
class BatchResult:
    results: list[DispatchResult] = field(default_factory=list)
    stopped_reason: Optional[str] = None

    @property
    def processed(self) -> int:
        return len(self.results)

    def count(self, outcome: DispatchOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def to_json(self) -> dict[str, Any]:
        counts = Counter(r.outcome.value for r in self.results)
        return {
            'processed': self.processed,
            'outcomes': dict(counts),
            'stoppedReason': self.stopped_reason,
        }


class Dispatcher:
    def __init__(
        self,
        runs: RunStore,
        exceptions: ExceptionStore,
        settings: AgentSettingsStore,
        registry: HandlerRegistry[WorkflowHandler],
        governor: SafetyGovernor,
        retry: RetryController,
        claimer: QueueClaimer,
        *,
        config: Optional[QueueConfig] = None,
        scope_resolver: Optional[ScopeResolver] = None,
        actions: Optional[ActionStore] = None,
        action_executor: Optional[ActionExecutor] = None,
    ):
        self.runs = runs
        self.exceptions = exceptions
        self.settings = settings
        self.registry = registry
        self.governor = governor
        self.retry = retry
        self.claimer = claimer
        self.config = config or QueueConfig()
        self.scope_resolver = scope_resolver
        self.actions = actions
        self.action_executor = action_executor

    async def _scope_enabled(self, property_id: Optional[str]) -> bool:
        """Runs on properties whose owner has no enabled settings row are not executed."""
        if property_id is None or self.scope_resolver is None:
            return True
        owner = await self.scope_resolver(property_id)
        if owner is None:
            return True
        return bool(await self.settings.get_enabled(owner))

    async def _invoke(self, handler: WorkflowHandler, ctx: WorkflowContext) -> WorkflowOutcome:
        timeout = self.config.handler_timeout_seconds
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                returned = await handler(ctx)
        except TimeoutError as exc:
            # a TimeoutError the handler raised itself is an ordinary failure
            if timeout is None or not deadline.expired():
                logger.error(f'Handler for run {ctx.run_id} raised {type(exc).__name__}: {exc}')
                return WorkflowOutcome(error=f'{type(exc).__name__}: {exc}')
            logger.warning(f'Handler for run {ctx.run_id} exceeded {timeout:g}s')
            return WorkflowOutcome(error=f'Handler timed out after {timeout:g}s')
        except Exception as exc:
            logger.error(f'Handler for run {ctx.run_id} raised {type(exc).__name__}: {exc}')
            return WorkflowOutcome(error=f'{type(exc).__name__}: {exc}')

        match returned:
            case WorkflowOutcome():
                return returned
            case str() | None:
                return WorkflowOutcome(summary=returned)
            case _:
                return WorkflowOutcome(summary=str(returned))

    async def dispatch(self, run: RunRecord) -> DispatchResult:
        """Take one RUNNING run to its next state."""
        now = utcnow()
        meta = run.meta
        if meta is None:
            if await self.runs.fail_running(run.id, error=POISONED_ERROR, now=now):
                logger.error(f'Run {run.id} has unusable metadata, failed permanently')
                return DispatchResult(run.id, DispatchOutcome.POISONED, POISONED_ERROR)
            return DispatchResult(run.id, DispatchOutcome.LOST_RACE)

        decision = await self.governor.can_execute_autonomy(now)
        if not decision.allowed:
            if await self.runs.requeue_running(run.id, error=decision.reason):
                logger.info(f'Run {run.id} returned to queue: {decision.reason}')
                return DispatchResult(run.id, DispatchOutcome.GOVERNOR_BLOCKED, decision.reason)
            return DispatchResult(run.id, DispatchOutcome.LOST_RACE)

        if not await self._scope_enabled(run.property_id):
            if await self.runs.escalate_running(run.id, error=SCOPE_DISABLED_ERROR, now=now):
                logger.info(f'Run {run.id} escalated: {SCOPE_DISABLED_ERROR}')
                return DispatchResult(run.id, DispatchOutcome.SCOPE_DISABLED, SCOPE_DISABLED_ERROR)
            return DispatchResult(run.id, DispatchOutcome.LOST_RACE)

        handler = self.registry.get(meta.workflow_type)
        if handler is None:
            outcome = WorkflowOutcome(
                error=f'No handler registered for workflow {meta.workflow_type.value}'
            )
        else:
            ctx = WorkflowContext(
                run_id=run.id,
                workflow_type=meta.workflow_type,
                property_id=run.property_id,
                payload=dict(meta.payload),
                attempt=meta.attempts + 1,
                max_attempts=meta.max_attempts,
                recorder=RunRecorder(
                    run.id,
                    run.property_id,
                    self.runs,
                    self.exceptions,
                    actions=self.actions,
                    executor=self.action_executor,
                ),
            )
            outcome = await self._invoke(handler, ctx)

        if not outcome.failed:
            if await self.runs.complete(run.id, summary=outcome.summary, now=utcnow()):
                logger.info(f'Run {run.id} completed')
                return DispatchResult(run.id, DispatchOutcome.COMPLETED)
            return DispatchResult(run.id, DispatchOutcome.LOST_RACE)

        assert outcome.error is not None
        failure = await self.retry.record_failure(run.id, meta, outcome.error)
        match failure.disposition:
            case FailureDisposition.RETRY_SCHEDULED:
                return DispatchResult(run.id, DispatchOutcome.RETRY_SCHEDULED, outcome.error)
            case FailureDisposition.DEAD_LETTERED:
                return DispatchResult(run.id, DispatchOutcome.DEAD_LETTERED, outcome.error)
            case _:
                return DispatchResult(run.id, DispatchOutcome.LOST_RACE, outcome.error)

    async def process_queue_batch(self, limit: Optional[int] = None) -> BatchResult:
        """
        Claim and dispatch up to ``limit`` runs, one after another.

        Stops early when the queue has nothing due or when the governor blocks
        execution (the blocked run is already back in the queue).
        """
        limit = max(1, min(MAX_BATCH_SIZE, limit or self.config.batch_size))
        batch = BatchResult()

        while batch.processed < limit:
            run = await self.claimer.claim_next()
            if run is None:
                break
            result = await self.dispatch(run)
            batch.results.append(result)
            if result.outcome == DispatchOutcome.GOVERNOR_BLOCKED:
                batch.stopped_reason = result.error
                break

        if batch.processed:
            logger.info(f'Batch processed {batch.processed} run(s): {batch.to_json()["outcomes"]}')
        return batch
