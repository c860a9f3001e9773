# propflow/core/engine/router.py
"""Maps domain events to workflows and enqueues at most one run per dedupe key."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from propflow.core.errors import IntakeValidationError
from propflow.core.logging import get_logger
from propflow.core.models.queue import QueueConfig
from propflow.core.store.runs import NewRun, RunStore
from propflow.core.types.status import EventType, TriggerType, WorkflowType
from propflow.core.utils.clock import ensure_utc, hour_bucket, utcnow

logger = get_logger('router')

EVENT_ROUTES: dict[EventType, WorkflowType] = {
    EventType.PM_DUE: WorkflowType.MAINTENANCE,
    EventType.NEW_INCIDENT: WorkflowType.MAINTENANCE,
    EventType.WO_SLA_BREACH: WorkflowType.SLA_BREACH,
    EventType.NEW_MESSAGE_THREAD: WorkflowType.TENANT_COMMS,
    EventType.COMPLIANCE_DUE: WorkflowType.COMPLIANCE_PM,
}

SKIP_DUPLICATE = 'duplicate'
SKIP_UNROUTED = 'no workflow for event type'


class AgentEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    event_type: str = Field(min_length=1)
    property_id: Optional[str] = None
    entity_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator('event_type', mode='before')
    @classmethod
    def _enum_to_value(cls, v: Any) -> Any:
        return v.value if isinstance(v, Enum) else v

    @property
    def known_type(self) -> Optional[EventType]:
        """The event type when it is one propflow knows, else None."""
        try:
            return EventType(self.event_type)
        except ValueError:
            return None


@dataclass(frozen=True)
class IntakeResult:
    ok: bool = True
    run_id: Optional[str] = None
    dedupe_key: Optional[str] = None
    skipped: bool = False
    reason: Optional[str] = None

    def to_json(self) -> dict[str, Any]:
        if self.skipped:
            return {'ok': self.ok, 'skipped': True, 'reason': self.reason}
        return {'ok': self.ok, 'runId': self.run_id, 'dedupeKey': self.dedupe_key}


def make_dedupe_key(
    trigger_type: TriggerType,
    trigger_ref: str,
    property_id: Optional[str],
    at: datetime,
) -> str:
    return f'{trigger_type.value}:{trigger_ref}:{property_id or ""}:{hour_bucket(at)}'


def event_dedupe_key(event: AgentEvent, at: datetime) -> str:
    """``event:{type}-{entity or 'global'}:{property or ''}:{UTC hour}``"""
    return make_dedupe_key(
        TriggerType.EVENT,
        f'{event.event_type}-{event.entity_id or "global"}',
        event.property_id,
        at,
    )


def validate_event(event: AgentEvent, workflow_type: WorkflowType) -> None:
    missing: list[str] = []
    if event.property_id is None:
        missing.append('propertyId')
    if workflow_type == WorkflowType.SLA_BREACH and event.entity_id is None:
        missing.append('entityId')
    if missing:
        raise IntakeValidationError(
            f'{event.event_type} requires {" and ".join(missing)}'
        )


class EventRouter:
    def __init__(self, runs: RunStore, config: Optional[QueueConfig] = None):
        self.runs = runs
        self.config = config or QueueConfig()

    async def submit(
        self,
        event: AgentEvent,
        *,
        max_attempts: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> IntakeResult:
        """
        Route an event to its workflow and enqueue a run unless one already
        exists for the same event, entity, property and UTC hour.

        Raises:
            IntakeValidationError: the routed workflow needs fields the event lacks.
        """
        now = ensure_utc(now) or utcnow()
        known = event.known_type
        workflow_type = EVENT_ROUTES.get(known) if known is not None else None
        if workflow_type is None:
            logger.debug(f'No workflow for {event.event_type}, skipping')
            return IntakeResult(skipped=True, reason=SKIP_UNROUTED)

        validate_event(event, workflow_type)
        dedupe_key = event_dedupe_key(event, now)

        if await self.runs.exists_for_key(dedupe_key):
            logger.debug(f'Duplicate event {dedupe_key}')
            return IntakeResult(skipped=True, reason=SKIP_DUPLICATE, dedupe_key=dedupe_key)

        payload = dict(event.payload)
        payload.setdefault('eventType', event.event_type)
        if event.entity_id is not None:
            payload.setdefault('entityId', event.entity_id)

        run = await self.runs.create_run(
            NewRun(
                workflow_type=workflow_type,
                trigger_type=TriggerType.EVENT,
                trigger_ref=dedupe_key,
                property_id=event.property_id,
                payload=payload,
                max_attempts=max_attempts or self.config.default_max_attempts,
            ),
            now=now,
        )
        if run is None:
            return IntakeResult(skipped=True, reason=SKIP_DUPLICATE, dedupe_key=dedupe_key)

        logger.info(f'Queued {workflow_type.value} run {run.id} for {dedupe_key}')
        return IntakeResult(run_id=run.id, dedupe_key=dedupe_key)
