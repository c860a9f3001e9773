# propflow/core/engine/context.py
"""What a workflow handler receives and may return."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from propflow.core.engine.action_lock import ActionExecutor, run_action_executor
from propflow.core.errors import ConfigurationError, ErrorCode
from propflow.core.models.records import ActionRecord, ExceptionRecord
from propflow.core.store.actions import ActionStore
from propflow.core.store.exceptions import ExceptionStore
from propflow.core.store.runs import RunStore
from propflow.core.types.status import (
    ActionLogType,
    ActionStatus,
    ExceptionCategory,
    ExceptionSeverity,
    StepStatus,
    WorkflowType,
)


@dataclass(frozen=True)
class WorkflowOutcome:
    """
    Explicit handler result.

    A handler may also just return a summary string or None. Returning an
    outcome with ``error`` set is a soft failure that goes through retry.
    """

    summary: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


HandlerReturn = Union[WorkflowOutcome, str, None]


class RunRecorder:
    """Journal for one run: steps, audit log entries, escalations and proposed actions."""

    def __init__(
        self,
        run_id: str,
        property_id: Optional[str],
        runs: RunStore,
        exceptions: ExceptionStore,
        *,
        actions: Optional[ActionStore] = None,
        executor: Optional[ActionExecutor] = None,
    ):
        self.run_id = run_id
        self.property_id = property_id
        self._runs = runs
        self._exceptions = exceptions
        self._actions = actions
        self._executor = executor

    async def add_step(self, name: str, input_json: Any = None) -> str:
        return await self._runs.add_step(self.run_id, name, input_json=input_json)

    async def start_step(self, step_id: str) -> None:
        await self._runs.set_step_status(step_id, StepStatus.RUNNING)

    async def complete_step(self, step_id: str, output_json: Any = None) -> None:
        await self._runs.set_step_status(step_id, StepStatus.DONE, output_json=output_json)

    async def fail_step(self, step_id: str, error: str) -> None:
        await self._runs.set_step_status(step_id, StepStatus.FAILED, error=error)

    async def skip_step(self, step_id: str, reason: Optional[str] = None) -> None:
        await self._runs.set_step_status(step_id, StepStatus.SKIPPED, error=reason)

    async def log(
        self,
        action_type: ActionLogType,
        target: str,
        *,
        step_id: Optional[str] = None,
        request: Any = None,
        response: Any = None,
    ) -> str:
        return await self._runs.log_action(
            self.run_id,
            action_type,
            target,
            step_id=step_id,
            request_json=request,
            response_json=response,
        )

    async def raise_exception(
        self,
        severity: ExceptionSeverity,
        category: ExceptionCategory,
        title: str,
        details: str = '',
        *,
        context: Any = None,
        requires_by: Optional[datetime] = None,
    ) -> ExceptionRecord:
        record = await self._exceptions.create(
            severity=severity,
            category=category,
            title=title,
            details=details,
            run_id=self.run_id,
            property_id=self.property_id,
            context_json=context,
            requires_by=requires_by,
        )
        await self.log(
            ActionLogType.ESCALATION,
            'exception',
            request={'severity': severity.value, 'category': category.value, 'title': title},
            response={'exceptionId': record.id},
        )
        return record

    async def propose_action(
        self,
        manager_id: str,
        action_type: str,
        payload: Any = None,
        *,
        auto_execute: bool = False,
    ) -> ActionRecord:
        """
        Record a side effect for ``manager_id``.

        By default the action waits in PENDING_APPROVAL for a human. With
        ``auto_execute`` it is executed right away and stored as
        AUTO_EXECUTED, or FAILED when the executor reports failure; it is
        never approvable.

        Raises:
            ConfigurationError: no action store, or auto execution without an executor.
        """
        if self._actions is None or (auto_execute and self._executor is None):
            raise ConfigurationError(
                message='actions cannot be proposed from this run',
                code=ErrorCode.CONFIG_INVALID_LOCK,
                help_text='pass action_executor=... to Propflow to enable auto-executed actions',
            )

        status = ActionStatus.AUTO_EXECUTED if auto_execute else ActionStatus.PENDING_APPROVAL
        action = await self._actions.create(
            manager_id=manager_id,
            action_type=action_type,
            payload=payload,
            run_id=self.run_id,
            status=status,
        )
        response: dict[str, Any] = {'actionId': action.id, 'autoExecuted': auto_execute}
        if auto_execute:
            assert self._executor is not None
            ok, result = await run_action_executor(self._executor, action)
            await self._actions.record_auto_result(action.id, ok=ok, result=result)
            response['ok'] = ok
            refreshed = await self._actions.get(action.id)
            if refreshed is not None:
                action = refreshed

        await self.log(
            ActionLogType.DECISION,
            f'action:{action_type}',
            request={'managerId': manager_id, 'payload': payload},
            response=response,
        )
        return action


@dataclass
class WorkflowContext:
    run_id: str
    workflow_type: WorkflowType
    property_id: Optional[str]
    payload: dict[str, Any]
    attempt: int  # 1-based number of the attempt being executed
    max_attempts: int
    recorder: RunRecorder
    extras: dict[str, Any] = field(default_factory=dict)


WorkflowHandler = Callable[[WorkflowContext], Awaitable[HandlerReturn]]
