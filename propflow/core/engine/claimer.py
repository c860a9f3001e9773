# propflow/core/engine/claimer.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from propflow.core.logging import get_logger
from propflow.core.models.queue import QueueConfig
from propflow.core.models.records import RunRecord
from propflow.core.store.runs import RunStore
from propflow.core.types.status import RunStatus
from propflow.core.utils.clock import ensure_utc, utcnow

logger = get_logger('claimer')


class QueueClaimer:
    """
    Takes exclusive ownership of the oldest due QUEUED run.

    Ownership comes from a conditional QUEUED -> RUNNING update, so any
    number of claimers may race over the same candidates; each run is won
    by exactly one of them.
    """

    def __init__(self, runs: RunStore, config: Optional[QueueConfig] = None):
        self.runs = runs
        self.config = config or QueueConfig()

    async def claim_next(self, now: Optional[datetime] = None) -> Optional[RunRecord]:
        now = ensure_utc(now) or utcnow()
        candidates = await self.runs.list_queued(self.config.claim_scan_limit)

        for candidate in candidates:
            # Undecodable metadata stays eligible so the dispatcher can fail it.
            if candidate.meta is not None and not candidate.meta.is_due(now):
                continue
            claimed = await self.runs.claim(
                candidate.id, now=now, expected_meta_raw=candidate.queue_meta_raw
            )
            if not claimed:
                logger.debug(f'Run {candidate.id} was claimed elsewhere or changed since listing')
                continue
            # the row, not the listing snapshot, is what gets dispatched
            run = await self.runs.get_run(candidate.id)
            if run is not None and run.status == RunStatus.RUNNING:
                logger.debug(f'Claimed run {run.id} ({run.workflow_type.value})')
                return run

        return None
