# propflow/core/scheduler/service.py
from __future__ import annotations

import asyncio
import time
from typing import Optional

from propflow.core.app import Propflow
from propflow.core.engine.dispatcher import BatchResult
from propflow.core.logging import get_logger
from propflow.core.models.scheduler import SchedulerConfig
from propflow.core.utils.backoff import RetryBackoff
from propflow.core.utils.db import is_retryable_connection_error

logger = get_logger('scheduler')


class BatchScheduler:
    """
    Runs dispatch batches on an interval and the governor evaluation on a
    slower one.

    Holds no queue state of its own: every iteration is an independent
    batch, so any number of schedulers (or cron-driven batch calls) may run
    side by side.
    """

    def __init__(self, app: Propflow, config: Optional[SchedulerConfig] = None):
        self.app = app
        self.config = config or app.config.scheduler
        self._stop = asyncio.Event()
        self._initialized = False
        self._last_evaluation: Optional[float] = None
        self._db_backoff = RetryBackoff(
            initial_ms=self.config.db_retry_initial_ms,
            max_ms=self.config.db_retry_max_ms,
            max_attempts=self.config.db_retry_max_attempts,
        )

    async def start(self) -> None:
        if self._initialized:
            return
        await self.app.startup()
        self._initialized = True
        logger.info(
            f'Scheduler started: batch every {self.config.batch_interval_ms}ms, '
            f'governor every {self.config.evaluate_interval_ms}ms'
        )

    async def stop(self) -> None:
        self._stop.set()
        await self.app.close()
        logger.info('Scheduler stopped')

    def request_stop(self) -> None:
        self._stop.set()

    def _evaluation_due(self) -> bool:
        if self._last_evaluation is None:
            return True
        elapsed_ms = (time.monotonic() - self._last_evaluation) * 1000
        return elapsed_ms >= self.config.evaluate_interval_ms

    async def tick(self) -> BatchResult:
        """One batch, plus a governor evaluation when one is due."""
        batch = await self.app.dispatcher.process_queue_batch()
        if self._evaluation_due():
            await self.app.governor.evaluate_and_auto_pause()
            self._last_evaluation = time.monotonic()
        return batch

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True when a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def run_forever(self) -> None:
        logger.info('Starting scheduler loop')
        try:
            await self.start()

            while not self._stop.is_set():
                delay = self.config.batch_interval_ms / 1000.0
                try:
                    batch = await self.tick()
                    self._db_backoff.reset()
                    # A full batch likely means more work is waiting.
                    if batch.processed >= self.app.config.queue.batch_size and not batch.stopped_reason:
                        delay = 0.0
                except Exception as e:
                    if not is_retryable_connection_error(e):
                        logger.error(f'Error in scheduler loop: {e}', exc_info=True)
                    elif self._db_backoff.can_retry():
                        delay = self._db_backoff.next_delay_seconds()
                        logger.warning(
                            f'Transient database error (attempt {self._db_backoff.attempts}), '
                            f'retrying in {delay:.1f}s: {e}'
                        )
                    else:
                        logger.error(f'Giving up after {self._db_backoff.attempts} database retries')
                        raise

                if await self._wait(delay):
                    break
        finally:
            await self.stop()
