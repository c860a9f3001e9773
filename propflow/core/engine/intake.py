# propflow/core/engine/intake.py
"""Non-event producers: operator-initiated runs and inbound tenant messages."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from propflow.core.auth import Principal
from propflow.core.errors import IntakeValidationError, ScopeForbiddenError
from propflow.core.logging import get_logger
from propflow.core.models.queue import QueueConfig
from propflow.core.store.runs import NewRun, RunStore
from propflow.core.store.threads import ThreadStore
from propflow.core.types.status import MessageChannel, TriggerType, WorkflowType
from propflow.core.utils.clock import ensure_utc, utcnow

logger = get_logger('intake')

MANUAL_TRIGGER_TYPES: frozenset[TriggerType] = frozenset({TriggerType.MANUAL, TriggerType.SCHEDULE})
INBOUND_MAX_ATTEMPTS = 5


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ManualTrigger(_CamelModel):
    workflow_type: WorkflowType
    trigger_type: TriggerType = TriggerType.MANUAL
    property_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    max_attempts: Optional[int] = Field(default=None, ge=1, le=100)


class InboundMessage(_CamelModel):
    channel: MessageChannel
    sender: str
    body: str
    thread_id: Optional[str] = None
    property_id: Optional[str] = None
    tenant_id: Optional[str] = None
    subject: Optional[str] = None


@dataclass(frozen=True)
class InboundResult:
    run_id: str
    thread_id: str
    message_id: str

    def to_json(self) -> dict[str, Any]:
        return {'ok': True, 'runId': self.run_id, 'threadId': self.thread_id}


class ManualTriggerService:
    def __init__(self, runs: RunStore, config: Optional[QueueConfig] = None):
        self.runs = runs
        self.config = config or QueueConfig()

    async def trigger(
        self,
        request: ManualTrigger,
        principal: Principal,
        *,
        now: Optional[datetime] = None,
    ) -> str:
        """Enqueue an operator-requested run; every request gets its own run."""
        if request.trigger_type not in MANUAL_TRIGGER_TYPES:
            raise IntakeValidationError(
                f'trigger type {request.trigger_type.value} cannot be started manually'
            )
        if not principal.can_access_property(request.property_id):
            raise ScopeForbiddenError('property is outside the caller scope')

        run = await self.runs.create_run(
            NewRun(
                workflow_type=request.workflow_type,
                trigger_type=request.trigger_type,
                trigger_ref=f'{request.trigger_type.value}-{principal.user_id}-{uuid.uuid4()}',
                property_id=request.property_id,
                payload={**request.payload, 'requestedBy': principal.user_id},
                max_attempts=request.max_attempts or self.config.default_max_attempts,
            ),
            now=ensure_utc(now) or utcnow(),
        )
        # uuid trigger refs never collide
        assert run is not None
        logger.info(f'{principal.user_id} queued {request.workflow_type.value} run {run.id}')
        return run.id


class InboundIntake:
    def __init__(self, runs: RunStore, threads: ThreadStore):
        self.runs = runs
        self.threads = threads

    async def receive(
        self,
        message: InboundMessage,
        *,
        now: Optional[datetime] = None,
    ) -> InboundResult:
        """Record an inbound message on its thread and queue a TENANT_COMMS run for it."""
        if not message.body.strip():
            raise IntakeValidationError('message body is empty')

        thread = await self.threads.resolve_or_create(
            thread_id=message.thread_id,
            channel=message.channel,
            subject=message.subject or f'Inbound {message.channel.value.lower()} from {message.sender}',
            property_id=message.property_id,
            tenant_id=message.tenant_id,
        )
        message_id = await self.threads.append_message(
            thread.id, channel=message.channel, sender=message.sender, body=message.body
        )
        property_id = message.property_id or thread.property_id

        run = await self.runs.create_run(
            NewRun(
                workflow_type=WorkflowType.TENANT_COMMS,
                trigger_type=TriggerType.INBOUND,
                trigger_ref=f'inbound-{message.channel.value}-{thread.id}-{uuid.uuid4()}',
                property_id=property_id,
                payload={
                    'threadId': thread.id,
                    'messageId': message_id,
                    'channel': message.channel.value,
                    'sender': message.sender,
                },
                max_attempts=INBOUND_MAX_ATTEMPTS,
            ),
            now=ensure_utc(now) or utcnow(),
        )
        assert run is not None
        logger.info(f'Inbound {message.channel.value} on thread {thread.id} queued run {run.id}')
        return InboundResult(run_id=run.id, thread_id=thread.id, message_id=message_id)
