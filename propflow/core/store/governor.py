# propflow/core/store/governor.py
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propflow.core.defaults import GOVERNOR_SCOPE_KEY
from propflow.core.models.agent_pg import AgentPolicyModel, GovernorStateModel
from propflow.core.models.app import GovernorConfig
from propflow.core.models.records import GovernorStateRecord


class GovernorStore:
    """Persistence for the single global governor row and the policy table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        defaults: Optional[GovernorConfig] = None,
    ):
        self.session_factory = session_factory
        self.defaults = defaults or GovernorConfig()

    def default_state(self) -> GovernorStateRecord:
        return GovernorStateRecord(
            scope=GOVERNOR_SCOPE_KEY,
            kill_switch=False,
            auto_pause_until=None,
            reason=None,
            failure_threshold_pct=self.defaults.failure_threshold_pct,
            critical_open_threshold=self.defaults.critical_open_threshold,
            window_hours=self.defaults.window_hours,
        )

    async def get(self) -> GovernorStateRecord:
        """Current state; a missing row reads as defaults."""
        async with self.session_factory() as session:
            row = await session.get(GovernorStateModel, GOVERNOR_SCOPE_KEY)
            return GovernorStateRecord.from_model(row) if row is not None else self.default_state()

    async def update(self, values: dict[str, Any]) -> GovernorStateRecord:
        """Apply ``values`` to the state row, creating it with defaults first if needed."""
        for _ in range(2):
            async with self.session_factory() as session:
                row = await session.get(GovernorStateModel, GOVERNOR_SCOPE_KEY)
                if row is None:
                    base = self.default_state()
                    row = GovernorStateModel(
                        scope=GOVERNOR_SCOPE_KEY,
                        kill_switch=base.kill_switch,
                        failure_threshold_pct=base.failure_threshold_pct,
                        critical_open_threshold=base.critical_open_threshold,
                        window_hours=base.window_hours,
                    )
                    session.add(row)
                for key, value in values.items():
                    setattr(row, key, value)
                try:
                    await session.commit()
                except IntegrityError:
                    # Another process created the row first; apply on top of it.
                    await session.rollback()
                    continue
                return GovernorStateRecord.from_model(row)
        raise RuntimeError('governor state row could not be written')

    async def count_active_global_policies(self) -> int:
        async with self.session_factory() as session:
            count = await session.scalar(
                select(func.count(AgentPolicyModel.id)).where(
                    AgentPolicyModel.scope_type == 'global',
                    AgentPolicyModel.is_active.is_(True),
                )
            )
        return int(count or 0)
