from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Optional
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLAlchemyEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    false as sa_false,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from propflow.core.defaults import (
    DEFAULT_CRITICAL_OPEN_THRESHOLD,
    DEFAULT_FAILURE_THRESHOLD_PCT,
    DEFAULT_WINDOW_HOURS,
)
from propflow.core.types.status import (
    ActionLogType,
    ActionStatus,
    ExceptionCategory,
    ExceptionSeverity,
    ExceptionStatus,
    MessageChannel,
    RunStatus,
    StepStatus,
    TriggerType,
    WorkflowType,
)

# JSONB on PostgreSQL, plain JSON text elsewhere
JsonColumn = JSON().with_variant(JSONB(), 'postgresql')


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for propflow models"""

    pass


class AgentRunModel(Base):
    """
    One unit of autonomous work.

    - id: str # uuid4
    - workflow_type: WorkflowType # selects the handler
    - trigger_type: TriggerType # event, schedule, manual, inbound
    - trigger_ref: str # dedupe key; unique across all runs
    - property_id: str # scope; nullable for global work
    - status: RunStatus # QUEUED, RUNNING, COMPLETED, FAILED, ESCALATED
    - started_at: datetime # set on claim, cleared on governor requeue
    - completed_at: datetime # set on any terminal transition
    - error: str # last failure or block reason
    - summary: str # handler-provided result summary
    - queue_meta: str # versioned JSON scheduling metadata (see codec.meta)
    - created_at / updated_at: datetime
    """

    __tablename__ = 'propflow_agent_runs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    workflow_type: Mapped[WorkflowType] = mapped_column(
        SQLAlchemyEnum(WorkflowType, native_enum=False, length=32), nullable=False
    )
    trigger_type: Mapped[TriggerType] = mapped_column(
        SQLAlchemyEnum(TriggerType, native_enum=False, length=16), nullable=False
    )
    trigger_ref: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    property_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[RunStatus] = mapped_column(
        SQLAlchemyEnum(RunStatus, native_enum=False, length=16),
        nullable=False,
        default=RunStatus.QUEUED,
        index=True,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    queue_meta: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index('idx_propflow_runs_status_created', 'status', 'created_at', 'id'),
        Index('idx_propflow_runs_completed_at', 'completed_at'),
    )


class AgentStepModel(Base):
    __tablename__ = 'propflow_agent_steps'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey('propflow_agent_runs.id', ondelete='CASCADE'), index=True
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[StepStatus] = mapped_column(
        SQLAlchemyEnum(StepStatus, native_enum=False, length=16),
        nullable=False,
        default=StepStatus.PLANNED,
    )
    input_json: Mapped[Optional[Any]] = mapped_column(JsonColumn, nullable=True)
    output_json: Mapped[Optional[Any]] = mapped_column(JsonColumn, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class AgentActionLogModel(Base):
    """Audit trail of what a handler looked at, called and decided."""

    __tablename__ = 'propflow_agent_action_logs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey('propflow_agent_runs.id', ondelete='CASCADE'), index=True
    )
    step_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    action_type: Mapped[ActionLogType] = mapped_column(
        SQLAlchemyEnum(ActionLogType, native_enum=False, length=16), nullable=False
    )
    target: Mapped[str] = mapped_column(String(255), nullable=False)
    request_json: Mapped[Optional[Any]] = mapped_column(JsonColumn, nullable=True)
    response_json: Mapped[Optional[Any]] = mapped_column(JsonColumn, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class AgentExceptionModel(Base):
    __tablename__ = 'propflow_agent_exceptions'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    run_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey('propflow_agent_runs.id', ondelete='SET NULL'), nullable=True
    )
    property_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    severity: Mapped[ExceptionSeverity] = mapped_column(
        SQLAlchemyEnum(ExceptionSeverity, native_enum=False, length=16), nullable=False
    )
    category: Mapped[ExceptionCategory] = mapped_column(
        SQLAlchemyEnum(ExceptionCategory, native_enum=False, length=16), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False, default='')
    context_json: Mapped[Optional[Any]] = mapped_column(JsonColumn, nullable=True)
    status: Mapped[ExceptionStatus] = mapped_column(
        SQLAlchemyEnum(ExceptionStatus, native_enum=False, length=16),
        nullable=False,
        default=ExceptionStatus.OPEN,
    )
    requires_by: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index('idx_propflow_exceptions_severity_status', 'severity', 'status'),
    )


class AgentActionModel(Base):
    """
    A side effect proposed by a handler that waits for human approval.

    - responded_at doubles as the claim timestamp while an approval is
      executing; finalization only matches that exact value.
    """

    __tablename__ = 'propflow_agent_actions'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    manager_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    run_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Optional[Any]] = mapped_column(JsonColumn, nullable=True)
    status: Mapped[ActionStatus] = mapped_column(
        SQLAlchemyEnum(ActionStatus, native_enum=False, length=24),
        nullable=False,
        default=ActionStatus.PENDING_APPROVAL,
    )
    responded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    result: Mapped[Optional[Any]] = mapped_column(JsonColumn, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class GovernorStateModel(Base):
    """Single row (scope 'global') holding the autonomy circuit breaker."""

    __tablename__ = 'propflow_governor_state'

    scope: Mapped[str] = mapped_column(String(32), primary_key=True)
    kill_switch: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=sa_false()
    )
    auto_pause_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_threshold_pct: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_FAILURE_THRESHOLD_PCT
    )
    critical_open_threshold: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_CRITICAL_OPEN_THRESHOLD
    )
    window_hours: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_WINDOW_HOURS
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class AgentPolicyModel(Base):
    __tablename__ = 'propflow_agent_policies'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    scope_type: Mapped[str] = mapped_column(String(16), nullable=False)  # global | property
    scope_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    config_json: Mapped[Optional[Any]] = mapped_column(JsonColumn, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class AgentSettingsModel(Base):
    """Per-manager automation switch consulted before dispatch."""

    __tablename__ = 'propflow_agent_settings'

    manager_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class MessageThreadModel(Base):
    __tablename__ = 'propflow_message_threads'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    property_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    channel: Mapped[MessageChannel] = mapped_column(
        SQLAlchemyEnum(MessageChannel, native_enum=False, length=8), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class MessageModel(Base):
    __tablename__ = 'propflow_messages'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    thread_id: Mapped[str] = mapped_column(
        String(36), ForeignKey('propflow_message_threads.id', ondelete='CASCADE'), index=True
    )
    channel: Mapped[MessageChannel] = mapped_column(
        SQLAlchemyEnum(MessageChannel, native_enum=False, length=8), nullable=False
    )
    sender: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
