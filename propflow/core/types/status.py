# core/types/status.py
"""
Enums shared across the engine.
This module should not import from other application modules.
"""

from enum import Enum


class RunStatus(str, Enum):
    """Agent run lifecycle status"""

    QUEUED = 'QUEUED'  # Waiting for a claimer; may carry a future next_attempt_at.
    RUNNING = 'RUNNING'  # Claimed by exactly one dispatcher.
    COMPLETED = 'COMPLETED'  # Handler returned normally.
    FAILED = 'FAILED'  # Terminal without retry (poisoned metadata, cancelled).
    ESCALATED = 'ESCALATED'  # Dead-lettered or scope disabled; needs a human.

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state."""
        return self in RUN_TERMINAL_STATES


RUN_TERMINAL_STATES: frozenset[RunStatus] = frozenset({
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.ESCALATED,
})


class TriggerType(str, Enum):
    EVENT = 'event'
    SCHEDULE = 'schedule'
    MANUAL = 'manual'
    INBOUND = 'inbound'


class WorkflowType(str, Enum):
    MAINTENANCE = 'MAINTENANCE'
    TENANT_COMMS = 'TENANT_COMMS'
    COMPLIANCE_PM = 'COMPLIANCE_PM'
    SLA_BREACH = 'SLA_BREACH'
    FINANCIAL = 'FINANCIAL'
    COMPLIANCE_LEGAL = 'COMPLIANCE_LEGAL'


class EventType(str, Enum):
    """Domain events producers may submit"""

    PM_DUE = 'PM_DUE'
    NEW_INCIDENT = 'NEW_INCIDENT'
    NEW_MESSAGE_THREAD = 'NEW_MESSAGE_THREAD'
    COMPLIANCE_DUE = 'COMPLIANCE_DUE'
    WO_SLA_BREACH = 'WO_SLA_BREACH'
    LEASE_EXPIRING = 'LEASE_EXPIRING'


class StepStatus(str, Enum):
    PLANNED = 'PLANNED'
    RUNNING = 'RUNNING'
    DONE = 'DONE'
    FAILED = 'FAILED'
    SKIPPED = 'SKIPPED'


class ActionLogType(str, Enum):
    API_CALL = 'API_CALL'
    DECISION = 'DECISION'
    ESCALATION = 'ESCALATION'
    MEMORY_READ = 'MEMORY_READ'
    MEMORY_WRITE = 'MEMORY_WRITE'


class ActionStatus(str, Enum):
    """Human-approvable side effect status"""

    PENDING_APPROVAL = 'PENDING_APPROVAL'
    AUTO_EXECUTED = 'AUTO_EXECUTED'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'
    FAILED = 'FAILED'

    @property
    def is_terminal(self) -> bool:
        return self is not ActionStatus.PENDING_APPROVAL


class ExceptionSeverity(str, Enum):
    CRITICAL = 'CRITICAL'
    HIGH = 'HIGH'
    MEDIUM = 'MEDIUM'
    LOW = 'LOW'


class ExceptionCategory(str, Enum):
    LEGAL = 'LEGAL'
    FINANCIAL = 'FINANCIAL'
    SAFETY = 'SAFETY'
    SLA = 'SLA'
    SYSTEM = 'SYSTEM'


class ExceptionStatus(str, Enum):
    OPEN = 'OPEN'
    ACK = 'ACK'
    RESOLVED = 'RESOLVED'


# Human-driven exception transitions: current -> allowed targets.
EXCEPTION_TRANSITIONS: dict[ExceptionStatus, frozenset[ExceptionStatus]] = {
    ExceptionStatus.OPEN: frozenset({ExceptionStatus.ACK, ExceptionStatus.RESOLVED}),
    ExceptionStatus.ACK: frozenset({ExceptionStatus.RESOLVED}),
    ExceptionStatus.RESOLVED: frozenset(),
}


class MessageChannel(str, Enum):
    EMAIL = 'EMAIL'
    SMS = 'SMS'
    VOICE = 'VOICE'
