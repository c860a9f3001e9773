# propflow/core/engine/retry.py
"""Failure accounting: exponential backoff, dead-lettering and replay."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from propflow.core.codec.meta import QueueMeta
from propflow.core.defaults import DEFAULT_BACKOFF_BASE_MS, DEFAULT_BACKOFF_CEILING_MS
from propflow.core.errors import NotDeadLetteredError, RunNotFoundError, RunStateConflictError
from propflow.core.logging import get_logger
from propflow.core.models.queue import QueueConfig
from propflow.core.models.records import RunRecord
from propflow.core.store.runs import RunStore
from propflow.core.types.status import RunStatus
from propflow.core.utils.clock import ensure_utc, utcnow

logger = get_logger('retry')


def compute_backoff_ms(
    attempts: int,
    base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    ceiling_ms: int = DEFAULT_BACKOFF_CEILING_MS,
) -> int:
    """Delay before the next attempt after ``attempts`` recorded failures."""
    exponent = max(0, attempts - 1)
    return min(ceiling_ms, base_ms * (2**exponent))


class FailureDisposition(str, Enum):
    RETRY_SCHEDULED = 'RETRY_SCHEDULED'
    DEAD_LETTERED = 'DEAD_LETTERED'
    LOST_RACE = 'LOST_RACE'


@dataclass(frozen=True)
class FailureResult:
    disposition: FailureDisposition
    meta: QueueMeta

    @property
    def next_attempt_at(self) -> Optional[datetime]:
        if self.disposition == FailureDisposition.RETRY_SCHEDULED:
            return self.meta.next_attempt_at
        return None


class RetryController:
    def __init__(self, runs: RunStore, config: Optional[QueueConfig] = None):
        self.runs = runs
        self.config = config or QueueConfig()

    def next_meta(self, meta: QueueMeta, now: datetime) -> QueueMeta:
        """Metadata after one more failure, either rescheduled or dead-lettered."""
        attempts = meta.attempts + 1
        if attempts >= meta.max_attempts:
            return meta.model_copy(update={'attempts': attempts, 'dlq': True})
        delay_ms = compute_backoff_ms(
            attempts, self.config.backoff_base_ms, self.config.backoff_ceiling_ms
        )
        return meta.model_copy(
            update={
                'attempts': attempts,
                'next_attempt_at': now + timedelta(milliseconds=delay_ms),
                'dlq': False,
            }
        )

    async def record_failure(
        self,
        run_id: str,
        meta: QueueMeta,
        error: str,
        *,
        now: Optional[datetime] = None,
    ) -> FailureResult:
        """
        Count a failed attempt of a RUNNING run.

        Reschedules with backoff while attempts remain, otherwise escalates the
        run into the dead-letter set with its metadata preserved.
        """
        now = ensure_utc(now) or utcnow()
        updated = self.next_meta(meta, now)

        if updated.dlq:
            applied = await self.runs.escalate_running(run_id, error=error, now=now, meta=updated)
            if applied:
                logger.warning(
                    f'Run {run_id} dead-lettered after {updated.attempts} attempt(s): {error}'
                )
                return FailureResult(FailureDisposition.DEAD_LETTERED, updated)
        else:
            applied = await self.runs.requeue_running(run_id, error=error, meta=updated)
            if applied:
                logger.warning(
                    f'Run {run_id} failed attempt {updated.attempts}/{updated.max_attempts}, '
                    f'retrying at {updated.next_attempt_at.isoformat()}: {error}'
                )
                return FailureResult(FailureDisposition.RETRY_SCHEDULED, updated)

        logger.warning(f'Run {run_id} left RUNNING before its failure could be recorded')
        return FailureResult(FailureDisposition.LOST_RACE, meta)

    async def replay(self, run_id: str, *, now: Optional[datetime] = None) -> RunRecord:
        """Move a dead-lettered run back to QUEUED with a fresh attempt budget."""
        now = ensure_utc(now) or utcnow()
        run = await self.runs.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if (
            run.status != RunStatus.ESCALATED
            or run.meta is None
            or not run.meta.dlq
            or run.queue_meta_raw is None
        ):
            raise NotDeadLetteredError(run_id)

        fresh = run.meta.model_copy(update={'attempts': 0, 'dlq': False, 'next_attempt_at': now})
        replayed = await self.runs.replay_escalated(
            run_id, expected_meta_raw=run.queue_meta_raw, meta=fresh
        )
        if not replayed:
            raise RunStateConflictError(f'run {run_id} changed while being replayed')

        logger.info(f'Run {run_id} replayed from dead letter')
        record = await self.runs.get_run(run_id)
        assert record is not None
        return record

    async def list_dead_letters(self, limit: int = 100) -> list[RunRecord]:
        return await self.runs.list_dead_letters(limit)
