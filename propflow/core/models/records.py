# propflow/core/models/records.py
"""Immutable snapshots returned by the stores.

Callers never receive live ORM objects; every store method copies the row
into one of these models inside its session. JSON output uses camelCase.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from propflow.core.codec.meta import QueueMeta, try_decode_meta
from propflow.core.models.agent_pg import (
    AgentActionModel,
    AgentExceptionModel,
    AgentRunModel,
    AgentStepModel,
    GovernorStateModel,
)
from propflow.core.types.status import (
    ActionStatus,
    ExceptionCategory,
    ExceptionSeverity,
    ExceptionStatus,
    RunStatus,
    StepStatus,
    TriggerType,
    WorkflowType,
)
from propflow.core.utils.clock import ensure_utc


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True)


class RunRecord(_Record):
    id: str
    workflow_type: WorkflowType
    trigger_type: TriggerType
    trigger_ref: str
    property_id: Optional[str]
    status: RunStatus
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error: Optional[str]
    summary: Optional[str]
    created_at: datetime
    updated_at: datetime
    meta: Optional[QueueMeta] = None
    # Exact stored text, used as the compare value for replay.
    queue_meta_raw: Optional[str] = Field(default=None, exclude=True)
    step_count: Optional[int] = None
    exception_count: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_model(
        cls,
        row: AgentRunModel,
        *,
        step_count: Optional[int] = None,
        exception_count: Optional[int] = None,
    ) -> RunRecord:
        return cls(
            id=row.id,
            workflow_type=row.workflow_type,
            trigger_type=row.trigger_type,
            trigger_ref=row.trigger_ref,
            property_id=row.property_id,
            status=row.status,
            started_at=ensure_utc(row.started_at),
            completed_at=ensure_utc(row.completed_at),
            error=row.error,
            summary=row.summary,
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
            meta=try_decode_meta(row.queue_meta),
            queue_meta_raw=row.queue_meta,
            step_count=step_count,
            exception_count=exception_count,
        )


class StepRecord(_Record):
    id: str
    run_id: str
    step_order: int
    name: str
    status: StepStatus
    input_json: Optional[Any] = None
    output_json: Optional[Any] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row: AgentStepModel) -> StepRecord:
        return cls(
            id=row.id,
            run_id=row.run_id,
            step_order=row.step_order,
            name=row.name,
            status=row.status,
            input_json=row.input_json,
            output_json=row.output_json,
            error=row.error,
            started_at=ensure_utc(row.started_at),
            completed_at=ensure_utc(row.completed_at),
        )


class ExceptionRecord(_Record):
    id: str
    run_id: Optional[str]
    property_id: Optional[str]
    severity: ExceptionSeverity
    category: ExceptionCategory
    title: str
    details: str
    context_json: Optional[Any]
    status: ExceptionStatus
    requires_by: Optional[datetime]
    resolved_at: Optional[datetime]
    resolved_by: Optional[str]
    created_at: datetime

    @classmethod
    def from_model(cls, row: AgentExceptionModel) -> ExceptionRecord:
        return cls(
            id=row.id,
            run_id=row.run_id,
            property_id=row.property_id,
            severity=row.severity,
            category=row.category,
            title=row.title,
            details=row.details,
            context_json=row.context_json,
            status=row.status,
            requires_by=ensure_utc(row.requires_by),
            resolved_at=ensure_utc(row.resolved_at),
            resolved_by=row.resolved_by,
            created_at=ensure_utc(row.created_at),
        )


class ActionRecord(_Record):
    id: str
    manager_id: str
    run_id: Optional[str]
    action_type: str
    payload: Optional[Any]
    status: ActionStatus
    responded_at: Optional[datetime]
    executed_at: Optional[datetime]
    result: Optional[Any]
    created_at: datetime

    @classmethod
    def from_model(cls, row: AgentActionModel) -> ActionRecord:
        return cls(
            id=row.id,
            manager_id=row.manager_id,
            run_id=row.run_id,
            action_type=row.action_type,
            payload=row.payload,
            status=row.status,
            responded_at=ensure_utc(row.responded_at),
            executed_at=ensure_utc(row.executed_at),
            result=row.result,
            created_at=ensure_utc(row.created_at),
        )


class GovernorStateRecord(_Record):
    scope: str
    kill_switch: bool
    auto_pause_until: Optional[datetime]
    reason: Optional[str]
    failure_threshold_pct: int
    critical_open_threshold: int
    window_hours: int
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row: GovernorStateModel) -> GovernorStateRecord:
        return cls(
            scope=row.scope,
            kill_switch=row.kill_switch,
            auto_pause_until=ensure_utc(row.auto_pause_until),
            reason=row.reason,
            failure_threshold_pct=row.failure_threshold_pct,
            critical_open_threshold=row.critical_open_threshold,
            window_hours=row.window_hours,
            updated_at=ensure_utc(row.updated_at),
        )
