# propflow/core/store/threads.py
"""Minimal message-thread storage used by inbound intake."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propflow.core.errors import ThreadNotFoundError
from propflow.core.models.agent_pg import MessageModel, MessageThreadModel
from propflow.core.types.status import MessageChannel


@dataclass(frozen=True)
class ThreadRef:
    id: str
    property_id: Optional[str]


class ThreadStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def resolve_or_create(
        self,
        *,
        thread_id: Optional[str],
        channel: MessageChannel,
        subject: str,
        property_id: Optional[str],
        tenant_id: Optional[str],
    ) -> ThreadRef:
        async with self.session_factory() as session:
            if thread_id is not None:
                row = await session.get(MessageThreadModel, thread_id)
                if row is None:
                    raise ThreadNotFoundError(thread_id)
                return ThreadRef(id=row.id, property_id=row.property_id)
            row = MessageThreadModel(
                id=str(uuid.uuid4()),
                property_id=property_id,
                tenant_id=tenant_id,
                subject=subject,
                channel=channel,
            )
            session.add(row)
            await session.commit()
            return ThreadRef(id=row.id, property_id=row.property_id)

    async def append_message(
        self,
        thread_id: str,
        *,
        channel: MessageChannel,
        sender: str,
        body: str,
    ) -> str:
        message_id = str(uuid.uuid4())
        async with self.session_factory() as session:
            session.add(
                MessageModel(
                    id=message_id,
                    thread_id=thread_id,
                    channel=channel,
                    sender=sender,
                    body=body,
                )
            )
            await session.commit()
        return message_id
