"""Unit tests for RunStatusStreamer polling and termination."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from propflow.core.engine.streamer import RunFrame, RunStatusStreamer
from propflow.core.models.app import StreamConfig
from propflow.core.models.records import RunRecord
from propflow.core.types.status import RunStatus, TriggerType, WorkflowType

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _run(status: RunStatus, property_id: str = 'P1') -> RunRecord:
    return RunRecord(
        id='run-1',
        workflow_type=WorkflowType.TENANT_COMMS,
        trigger_type=TriggerType.INBOUND,
        trigger_ref='inbound-SMS-t1-x',
        property_id=property_id,
        status=status,
        started_at=None,
        completed_at=None,
        error=None,
        summary=None,
        created_at=T0,
        updated_at=T0,
    )


class FakeClock:
    """Advances by the slept amount, so deadlines are deterministic."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _streamer(
    runs_sequence: list[Optional[RunRecord]],
    poll: float = 2.0,
    max_seconds: float = 300.0,
) -> tuple[RunStatusStreamer, FakeClock]:
    runs = MagicMock()
    runs.get_run = AsyncMock(side_effect=runs_sequence)
    clock = FakeClock()
    streamer = RunStatusStreamer(
        runs,
        StreamConfig(poll_interval_seconds=poll, max_duration_seconds=max_seconds),
        sleep=clock.sleep,
        clock=clock,
    )
    return streamer, clock


async def _allow(run: RunRecord) -> bool:
    return True


async def _collect(streamer: RunStatusStreamer, authorize=_allow) -> list[RunFrame]:  # type: ignore[no-untyped-def]
    return [frame async for frame in streamer.stream('run-1', authorize)]


@pytest.mark.unit
class TestRunStatusStreamer:
    @pytest.mark.asyncio
    async def test_terminal_run_yields_single_frame(self) -> None:
        streamer, clock = _streamer([_run(RunStatus.COMPLETED)])
        frames = await _collect(streamer)
        assert len(frames) == 1
        assert frames[0].live is False
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_streams_until_terminal(self) -> None:
        streamer, clock = _streamer(
            [_run(RunStatus.QUEUED), _run(RunStatus.RUNNING), _run(RunStatus.ESCALATED)]
        )
        frames = await _collect(streamer)
        assert [f.run.status for f in frames] == [
            RunStatus.QUEUED,
            RunStatus.RUNNING,
            RunStatus.ESCALATED,
        ]
        assert [f.live for f in frames] == [True, True, False]
        assert clock.sleeps == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_missing_run_yields_nothing(self) -> None:
        streamer, _ = _streamer([None])
        assert await _collect(streamer) == []

    @pytest.mark.asyncio
    async def test_stops_at_time_cap(self) -> None:
        streamer, clock = _streamer([_run(RunStatus.RUNNING)] * 10, poll=2.0, max_seconds=5.0)
        frames = await _collect(streamer)
        # frames at t=0, 2, 4; the tick at t=6 is past the cap
        assert len(frames) == 3
        assert all(f.live for f in frames)

    @pytest.mark.asyncio
    async def test_revoked_authorization_ends_stream(self) -> None:
        streamer, _ = _streamer([_run(RunStatus.RUNNING)] * 5)
        decisions = iter([True, True, False])

        async def authorize(run: RunRecord) -> bool:
            return next(decisions)

        frames = await _collect(streamer, authorize)
        assert len(frames) == 2

    @pytest.mark.asyncio
    async def test_frame_json_shape(self) -> None:
        streamer, _ = _streamer([_run(RunStatus.COMPLETED)])
        frames = await _collect(streamer)
        body = frames[0].to_json()
        assert body['live'] is False
        assert body['run']['id'] == 'run-1'
        assert body['run']['status'] == 'COMPLETED'
        assert body['run']['workflowType'] == 'TENANT_COMMS'
        assert 'queueMetaRaw' not in body['run']
