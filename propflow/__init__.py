"""Propflow - autonomous workflow orchestration for property operations"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import Propflow
from .core.auth import Principal
from .core.models.app import (
    AppConfig,
    GovernorConfig,
    StreamConfig,
    ActionLockConfig,
    IntakeConfig,
    RateLimitConfig,
)
from .core.models.database import DatabaseConfig
from .core.models.queue import QueueConfig
from .core.models.scheduler import SchedulerConfig
from .core.models.records import (
    RunRecord,
    StepRecord,
    ExceptionRecord,
    ActionRecord,
    GovernorStateRecord,
)
from .core.types.status import (
    RunStatus,
    TriggerType,
    WorkflowType,
    EventType,
    StepStatus,
    ActionLogType,
    ActionStatus,
    ExceptionSeverity,
    ExceptionCategory,
    ExceptionStatus,
    MessageChannel,
    RUN_TERMINAL_STATES,
)
from .core.engine.context import WorkflowContext, WorkflowOutcome, RunRecorder
from .core.engine.router import AgentEvent, IntakeResult
from .core.engine.intake import ManualTrigger, InboundMessage
from .core.engine.governor import GovernorPatch, GovernorDecision
from .core.engine.dispatcher import DispatchOutcome, BatchResult
from .core.engine.action_lock import (
    ActionExecutor,
    LockProvider,
    LocalLockProvider,
    RedisLockProvider,
)
from .core.errors import (
    PropflowError,
    ErrorCode,
    ConfigurationError,
    EngineError,
)

__all__ = [
    # Core
    'Propflow',
    'Principal',
    # Configuration
    'AppConfig',
    'DatabaseConfig',
    'QueueConfig',
    'SchedulerConfig',
    'GovernorConfig',
    'StreamConfig',
    'ActionLockConfig',
    'IntakeConfig',
    'RateLimitConfig',
    # Records
    'RunRecord',
    'StepRecord',
    'ExceptionRecord',
    'ActionRecord',
    'GovernorStateRecord',
    # Statuses
    'RunStatus',
    'TriggerType',
    'WorkflowType',
    'EventType',
    'StepStatus',
    'ActionLogType',
    'ActionStatus',
    'ExceptionSeverity',
    'ExceptionCategory',
    'ExceptionStatus',
    'MessageChannel',
    'RUN_TERMINAL_STATES',
    # Handlers
    'WorkflowContext',
    'WorkflowOutcome',
    'RunRecorder',
    # Intake
    'AgentEvent',
    'IntakeResult',
    'ManualTrigger',
    'InboundMessage',
    # Engine
    'GovernorPatch',
    'GovernorDecision',
    'DispatchOutcome',
    'BatchResult',
    'ActionExecutor',
    'LockProvider',
    'LocalLockProvider',
    'RedisLockProvider',
    # Errors
    'PropflowError',
    'ErrorCode',
    'ConfigurationError',
    'EngineError',
]
