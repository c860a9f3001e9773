# propflow/core/store/settings.py
from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propflow.core.models.agent_pg import AgentSettingsModel


class AgentSettingsStore:
    """Per-manager automation switch."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_enabled(self, manager_id: str) -> Optional[bool]:
        """None when the manager has no settings row."""
        async with self.session_factory() as session:
            row = await session.get(AgentSettingsModel, manager_id)
            return row.enabled if row is not None else None

    async def set_enabled(self, manager_id: str, enabled: bool) -> None:
        async with self.session_factory() as session:
            row = await session.get(AgentSettingsModel, manager_id)
            if row is None:
                session.add(AgentSettingsModel(manager_id=manager_id, enabled=enabled))
            else:
                row.enabled = enabled
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                row = await session.get(AgentSettingsModel, manager_id)
                assert row is not None
                row.enabled = enabled
                await session.commit()
