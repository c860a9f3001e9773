# propflow/core/engine/governor.py
"""Global circuit breaker for autonomous execution.

State lives in one durable row so every process sees the same decision.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from propflow.core.logging import get_logger
from propflow.core.models.app import GovernorConfig
from propflow.core.models.records import GovernorStateRecord
from propflow.core.store.exceptions import ExceptionStore
from propflow.core.store.governor import GovernorStore
from propflow.core.store.runs import RunStore
from propflow.core.types.status import ExceptionCategory, ExceptionSeverity
from propflow.core.utils.clock import ensure_utc, utcnow

logger = get_logger('governor')


@dataclass(frozen=True)
class GovernorDecision:
    allowed: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class GovernorEvaluation:
    failure_pct: int
    critical_open: int
    terminal_runs: int
    failed_runs: int
    active_global_policies: int
    tripped: bool
    paused_until: Optional[datetime] = None


class GovernorPatch(BaseModel):
    """Operator changes to the governor. Unset fields are left alone."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='forbid')

    kill_switch: Optional[bool] = None
    reason: Optional[str] = None
    # 0 clears an active pause
    auto_pause_minutes: Optional[int] = Field(default=None, ge=0, le=10_080)
    failure_threshold_pct: Optional[int] = Field(default=None, ge=1, le=100)
    critical_open_threshold: Optional[int] = Field(default=None, ge=1)
    window_hours: Optional[int] = Field(default=None, ge=1, le=168)


class SafetyGovernor:
    def __init__(
        self,
        store: GovernorStore,
        runs: RunStore,
        exceptions: ExceptionStore,
        config: Optional[GovernorConfig] = None,
    ):
        self.store = store
        self.runs = runs
        self.exceptions = exceptions
        self.config = config or GovernorConfig()

    async def get_state(self) -> GovernorStateRecord:
        return await self.store.get()

    async def can_execute_autonomy(self, now: Optional[datetime] = None) -> GovernorDecision:
        now = ensure_utc(now) or utcnow()
        state = await self.store.get()
        if state.kill_switch:
            return GovernorDecision(False, state.reason or 'Global kill switch enabled')
        if state.auto_pause_until is not None and state.auto_pause_until > now:
            return GovernorDecision(
                False,
                state.reason or f'Auto-paused until {state.auto_pause_until.isoformat()}',
            )
        return GovernorDecision(True)

    async def evaluate_and_auto_pause(self, now: Optional[datetime] = None) -> GovernorEvaluation:
        """
        Inspect recent outcomes and pause autonomy if they look unsafe.

        Trips when the failure rate over the trailing window or the number of
        unresolved CRITICAL exceptions reaches its threshold.
        """
        now = ensure_utc(now) or utcnow()
        state = await self.store.get()

        counts = await self.runs.count_window(now - timedelta(hours=state.window_hours))
        failure_pct = round(counts.failed / counts.terminal * 100) if counts.terminal else 0
        critical_open = await self.exceptions.count_open_critical()

        active_policies = await self.store.count_active_global_policies()
        if active_policies > 1:
            logger.warning(f'Policy drift: {active_policies} active global policies')
            await self.exceptions.create(
                severity=ExceptionSeverity.HIGH,
                category=ExceptionCategory.SYSTEM,
                title='Policy drift detected',
                details=f'{active_policies} global policies are active; expected at most one.',
                context_json={'activeGlobalPolicies': active_policies},
            )

        tripped = (
            failure_pct >= state.failure_threshold_pct
            or critical_open >= state.critical_open_threshold
        )
        paused_until: Optional[datetime] = None
        if tripped:
            paused_until = now + timedelta(minutes=self.config.auto_pause_minutes)
            reason = f'Auto-paused: failurePct={failure_pct} criticalOpen={critical_open}'
            await self.store.update({'auto_pause_until': paused_until, 'reason': reason})
            await self.exceptions.create(
                severity=ExceptionSeverity.CRITICAL,
                category=ExceptionCategory.SYSTEM,
                title='Autonomy auto-paused by safety governor',
                details=reason,
                context_json={
                    'failurePct': failure_pct,
                    'criticalOpen': critical_open,
                    'terminalRuns': counts.terminal,
                    'failedRuns': counts.failed,
                    'failureThresholdPct': state.failure_threshold_pct,
                    'criticalOpenThreshold': state.critical_open_threshold,
                    'windowHours': state.window_hours,
                    'pausedUntil': paused_until.isoformat(),
                },
            )
            logger.error(f'{reason}; autonomy paused until {paused_until.isoformat()}')
        else:
            logger.debug(f'Governor healthy: failurePct={failure_pct} criticalOpen={critical_open}')

        return GovernorEvaluation(
            failure_pct=failure_pct,
            critical_open=critical_open,
            terminal_runs=counts.terminal,
            failed_runs=counts.failed,
            active_global_policies=active_policies,
            tripped=tripped,
            paused_until=paused_until,
        )

    async def update_state(
        self,
        patch: GovernorPatch,
        *,
        now: Optional[datetime] = None,
    ) -> GovernorStateRecord:
        now = ensure_utc(now) or utcnow()
        values: dict[str, Any] = {}
        if patch.kill_switch is not None:
            values['kill_switch'] = patch.kill_switch
        if patch.reason is not None:
            values['reason'] = patch.reason or None
        if patch.auto_pause_minutes is not None:
            values['auto_pause_until'] = (
                now + timedelta(minutes=patch.auto_pause_minutes)
                if patch.auto_pause_minutes > 0
                else None
            )
        if patch.failure_threshold_pct is not None:
            values['failure_threshold_pct'] = patch.failure_threshold_pct
        if patch.critical_open_threshold is not None:
            values['critical_open_threshold'] = patch.critical_open_threshold
        if patch.window_hours is not None:
            values['window_hours'] = patch.window_hours

        state = await self.store.update(values)
        logger.info(
            f'Governor updated: kill_switch={state.kill_switch} '
            f'paused_until={state.auto_pause_until} reason={state.reason!r}'
        )
        return state
