# propflow/core/engine/streamer.py
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from propflow.core.logging import get_logger
from propflow.core.models.app import StreamConfig
from propflow.core.models.records import RunRecord
from propflow.core.store.runs import RunStore

logger = get_logger('streamer')

# Re-checked on every poll so a revoked session stops receiving frames.
Authorizer = Callable[[RunRecord], Awaitable[bool]]


@dataclass(frozen=True)
class RunFrame:
    run: RunRecord
    live: bool

    def to_json(self) -> dict[str, Any]:
        return {'run': self.run.to_json(), 'live': self.live}


class RunStatusStreamer:
    """
    Polls one run and yields a full snapshot per tick until it is terminal.

    The stream ends after the first terminal frame, when the run disappears,
    when authorization fails, or once ``max_duration_seconds`` has elapsed.
    """

    def __init__(
        self,
        runs: RunStore,
        config: Optional[StreamConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runs = runs
        self.config = config or StreamConfig()
        self._sleep = sleep
        self._clock = clock

    async def _fetch(self, run_id: str, authorize: Authorizer) -> Optional[RunRecord]:
        run = await self.runs.get_run(run_id)
        if run is None:
            return None
        if not await authorize(run):
            logger.debug(f'Stream for run {run_id} no longer authorized')
            return None
        return run

    async def stream(self, run_id: str, authorize: Authorizer) -> AsyncIterator[RunFrame]:
        deadline = self._clock() + self.config.max_duration_seconds

        run = await self._fetch(run_id, authorize)
        if run is None:
            return
        yield RunFrame(run=run, live=not run.is_terminal)
        if run.is_terminal:
            return

        while True:
            await self._sleep(self.config.poll_interval_seconds)
            if self._clock() >= deadline:
                logger.debug(f'Stream for run {run_id} reached its time cap')
                return
            run = await self._fetch(run_id, authorize)
            if run is None:
                return
            yield RunFrame(run=run, live=not run.is_terminal)
            if run.is_terminal:
                return
