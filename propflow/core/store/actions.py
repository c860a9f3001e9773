# propflow/core/store/actions.py
"""Storage for human-approvable actions.

``responded_at`` is the claim marker: an approver stamps it with its own
claim timestamp and finalization only matches that exact value, so a
claim taken over after going stale cannot be finalized by the old holder.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional, cast

from sqlalchemy import or_, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propflow.core.models.agent_pg import AgentActionModel
from propflow.core.models.records import ActionRecord
from propflow.core.types.status import ActionStatus
from propflow.core.utils.clock import ensure_utc, utcnow


class ActionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(
        self,
        *,
        manager_id: str,
        action_type: str,
        payload: Any = None,
        run_id: Optional[str] = None,
        status: ActionStatus = ActionStatus.PENDING_APPROVAL,
    ) -> ActionRecord:
        now = utcnow()
        row = AgentActionModel(
            id=str(uuid.uuid4()),
            manager_id=manager_id,
            run_id=run_id,
            action_type=action_type,
            payload=payload,
            status=status,
            executed_at=now if status == ActionStatus.AUTO_EXECUTED else None,
            created_at=now,
        )
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()
            return ActionRecord.from_model(row)

    async def get(self, action_id: str) -> Optional[ActionRecord]:
        async with self.session_factory() as session:
            row = await session.get(AgentActionModel, action_id)
            return ActionRecord.from_model(row) if row is not None else None

    async def list_pending(self, manager_id: str, limit: int = 50) -> list[ActionRecord]:
        async with self.session_factory() as session:
            rows = await session.scalars(
                select(AgentActionModel)
                .where(
                    AgentActionModel.manager_id == manager_id,
                    AgentActionModel.status == ActionStatus.PENDING_APPROVAL,
                )
                .order_by(AgentActionModel.created_at)
                .limit(limit)
            )
            return [ActionRecord.from_model(r) for r in rows]

    async def _update(self, action_id: str, where: list[Any], values: dict[str, Any]) -> bool:
        async with self.session_factory() as session:
            result = cast(
                CursorResult[Any],
                await session.execute(
                    update(AgentActionModel)
                    .where(AgentActionModel.id == action_id, *where)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                ),
            )
            await session.commit()
        return result.rowcount == 1

    def _unclaimed(self, manager_id: str, stale_before: datetime) -> list[Any]:
        return [
            AgentActionModel.status == ActionStatus.PENDING_APPROVAL,
            AgentActionModel.manager_id == manager_id,
            or_(
                AgentActionModel.responded_at.is_(None),
                AgentActionModel.responded_at < ensure_utc(stale_before),
            ),
        ]

    async def claim(
        self,
        action_id: str,
        *,
        manager_id: str,
        claim_ts: datetime,
        stale_before: datetime,
    ) -> bool:
        """Stamp ``claim_ts`` if the action is pending and unclaimed (or its claim is stale)."""
        return await self._update(
            action_id,
            self._unclaimed(manager_id, stale_before),
            {'responded_at': ensure_utc(claim_ts)},
        )

    async def finalize(
        self,
        action_id: str,
        *,
        claim_ts: datetime,
        status: ActionStatus,
        result: Any,
        executed_at: Optional[datetime] = None,
    ) -> bool:
        """Record the execution outcome, only for the claim that executed it."""
        return await self._update(
            action_id,
            [
                AgentActionModel.status == ActionStatus.PENDING_APPROVAL,
                AgentActionModel.responded_at == ensure_utc(claim_ts),
            ],
            {
                'status': status,
                'result': result,
                'executed_at': ensure_utc(executed_at) or utcnow(),
            },
        )

    async def reject(
        self,
        action_id: str,
        *,
        manager_id: str,
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        return await self._update(
            action_id,
            self._unclaimed(manager_id, stale_before),
            {'status': ActionStatus.REJECTED, 'responded_at': ensure_utc(now)},
        )

    async def record_auto_result(self, action_id: str, *, ok: bool, result: Any) -> bool:
        """Store the outcome of an auto-executed action; a failed side effect becomes FAILED."""
        return await self._update(
            action_id,
            [AgentActionModel.status == ActionStatus.AUTO_EXECUTED],
            {
                'status': ActionStatus.AUTO_EXECUTED if ok else ActionStatus.FAILED,
                'result': result,
            },
        )
