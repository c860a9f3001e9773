# propflow/core/store/exceptions.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence, cast

from sqlalchemy import func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propflow.core.errors import ExceptionNotFoundError, InvalidTransitionError
from propflow.core.logging import get_logger
from propflow.core.models.agent_pg import AgentExceptionModel
from propflow.core.models.records import ExceptionRecord
from propflow.core.types.status import (
    EXCEPTION_TRANSITIONS,
    ExceptionCategory,
    ExceptionSeverity,
    ExceptionStatus,
)
from propflow.core.utils.clock import utcnow

logger = get_logger('exceptions')


class ExceptionStore:
    """Human-facing exceptions raised by handlers and the safety governor."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(
        self,
        *,
        severity: ExceptionSeverity,
        category: ExceptionCategory,
        title: str,
        details: str = '',
        run_id: Optional[str] = None,
        property_id: Optional[str] = None,
        context_json: Any = None,
        requires_by: Optional[datetime] = None,
    ) -> ExceptionRecord:
        row = AgentExceptionModel(
            id=str(uuid.uuid4()),
            run_id=run_id,
            property_id=property_id,
            severity=severity,
            category=category,
            title=title,
            details=details,
            context_json=context_json,
            status=ExceptionStatus.OPEN,
            requires_by=requires_by,
            created_at=utcnow(),
        )
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()
            record = ExceptionRecord.from_model(row)
        logger.info(f'Exception raised: [{severity.value}/{category.value}] {title}')
        return record

    async def get(self, exception_id: str) -> Optional[ExceptionRecord]:
        async with self.session_factory() as session:
            row = await session.get(AgentExceptionModel, exception_id)
            return ExceptionRecord.from_model(row) if row is not None else None

    async def list_exceptions(
        self,
        *,
        statuses: Optional[Sequence[ExceptionStatus]] = None,
        allowed_property_ids: Optional[Sequence[str]] = None,
        limit: int = 50,
    ) -> list[ExceptionRecord]:
        stmt = select(AgentExceptionModel)
        if statuses:
            stmt = stmt.where(AgentExceptionModel.status.in_(list(statuses)))
        if allowed_property_ids is not None:
            stmt = stmt.where(AgentExceptionModel.property_id.in_(list(allowed_property_ids)))
        stmt = stmt.order_by(AgentExceptionModel.created_at.desc()).limit(limit)
        async with self.session_factory() as session:
            return [ExceptionRecord.from_model(r) for r in await session.scalars(stmt)]

    async def count_open_critical(self) -> int:
        """CRITICAL exceptions still awaiting a human (OPEN or ACK)."""
        async with self.session_factory() as session:
            count = await session.scalar(
                select(func.count(AgentExceptionModel.id)).where(
                    AgentExceptionModel.severity == ExceptionSeverity.CRITICAL,
                    AgentExceptionModel.status.in_(
                        [ExceptionStatus.OPEN, ExceptionStatus.ACK]
                    ),
                )
            )
        return int(count or 0)

    async def transition(
        self,
        exception_id: str,
        target: ExceptionStatus,
        *,
        actor_id: Optional[str] = None,
    ) -> ExceptionRecord:
        """
        Move an exception along OPEN -> ACK -> RESOLVED (or OPEN -> RESOLVED).

        The update is conditional on the status read, so two reviewers racing
        on the same exception cannot both succeed.
        """
        current = await self.get(exception_id)
        if current is None:
            raise ExceptionNotFoundError(exception_id)
        if target not in EXCEPTION_TRANSITIONS[current.status]:
            raise InvalidTransitionError(
                f'cannot move exception from {current.status.value} to {target.value}'
            )

        values: dict[str, Any] = {'status': target}
        if target == ExceptionStatus.RESOLVED:
            values['resolved_at'] = utcnow()
            values['resolved_by'] = actor_id

        async with self.session_factory() as session:
            result = cast(
                CursorResult[Any],
                await session.execute(
                    update(AgentExceptionModel)
                    .where(
                        AgentExceptionModel.id == exception_id,
                        AgentExceptionModel.status == current.status,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                ),
            )
            await session.commit()
        if result.rowcount != 1:
            raise InvalidTransitionError(f'exception {exception_id} changed concurrently')

        updated = await self.get(exception_id)
        assert updated is not None
        return updated
