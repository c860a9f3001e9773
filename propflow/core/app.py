# propflow/core/app.py
from __future__ import annotations

import asyncio
import inspect
import os
from typing import Any, Callable, Optional, TypeVar

from propflow.core.engine.action_lock import (
    ActionApprovalService,
    ActionExecutor,
    LockProvider,
    build_lock_provider,
)
from propflow.core.engine.claimer import QueueClaimer
from propflow.core.engine.context import WorkflowHandler
from propflow.core.engine.dispatcher import Dispatcher, ScopeResolver
from propflow.core.engine.governor import SafetyGovernor
from propflow.core.engine.intake import InboundIntake, ManualTriggerService
from propflow.core.engine.retry import RetryController
from propflow.core.engine.router import EVENT_ROUTES, EventRouter
from propflow.core.engine.streamer import RunStatusStreamer
from propflow.core.errors import (
    ConfigurationError,
    ErrorCode,
    PropflowError,
    SourceLocation,
    handler_definition_error,
)
from propflow.core.logging import get_logger
from propflow.core.models.app import AppConfig
from propflow.core.registry.handlers import HandlerNotRegistered, HandlerRegistry
from propflow.core.store.actions import ActionStore
from propflow.core.store.database import Database
from propflow.core.store.exceptions import ExceptionStore
from propflow.core.store.governor import GovernorStore
from propflow.core.store.runs import RunStore
from propflow.core.store.settings import AgentSettingsStore
from propflow.core.store.threads import ThreadStore
from propflow.core.types.status import WorkflowType

H = TypeVar('H', bound=Callable[..., Any])


class Propflow:
    """
    Configuration-driven orchestration app.

    Holds the handler registry and lazily builds the stores and engine
    components on first use, all sharing one database engine.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        scope_resolver: Optional[ScopeResolver] = None,
        action_executor: Optional[ActionExecutor] = None,
        lock_provider: Optional[LockProvider] = None,
    ):
        self.config = config
        self.handlers: HandlerRegistry[WorkflowHandler] = HandlerRegistry()
        self.scope_resolver = scope_resolver
        self.action_executor = action_executor
        self._lock_provider = lock_provider
        self._database: Optional[Database] = None
        self._components: dict[str, Any] = {}
        self.logger = get_logger('app')
        self.logger.info('propflow initialized')

    # ----------------- handler registration -----------------

    def workflow(self, workflow_type: WorkflowType) -> Callable[[H], H]:
        """Register an ``async def handler(ctx: WorkflowContext)`` for a workflow type."""
        if not isinstance(workflow_type, WorkflowType):
            raise ConfigurationError(
                message=f'unknown workflow type: {workflow_type!r}',
                code=ErrorCode.HANDLER_INVALID_WORKFLOW_TYPE,
                help_text=f'use one of: {", ".join(w.value for w in WorkflowType)}',
            )

        def decorator(fn: H) -> H:
            if not inspect.iscoroutinefunction(fn):
                raise handler_definition_error(
                    f"handler '{getattr(fn, '__name__', fn)}' must be declared with async def",
                    code=ErrorCode.HANDLER_NOT_ASYNC,
                    fn=fn,
                    notes=[f'workflow: {workflow_type.value}'],
                    help_text='handlers run on the dispatcher event loop; make it a coroutine function',
                )
            location = SourceLocation.from_function(fn)
            source = f'{os.path.realpath(location.file)}:{location.line}' if location else None
            self.handlers.register(fn, workflow_type=workflow_type, source=source)
            return fn

        return decorator

    def list_workflows(self) -> list[WorkflowType]:
        return list(self.handlers.keys())

    # ----------------- wiring -----------------

    def get_database(self) -> Database:
        if self._database is None:
            self._database = Database(self.config.database)
        return self._database

    def _component(self, name: str, factory: Callable[[], Any]) -> Any:
        if name not in self._components:
            self._components[name] = factory()
        return self._components[name]

    @property
    def runs(self) -> RunStore:
        return self._component('runs', lambda: RunStore(self.get_database().session_factory))

    @property
    def exceptions(self) -> ExceptionStore:
        return self._component(
            'exceptions', lambda: ExceptionStore(self.get_database().session_factory)
        )

    @property
    def actions(self) -> ActionStore:
        return self._component('actions', lambda: ActionStore(self.get_database().session_factory))

    @property
    def settings(self) -> AgentSettingsStore:
        return self._component(
            'settings', lambda: AgentSettingsStore(self.get_database().session_factory)
        )

    @property
    def threads(self) -> ThreadStore:
        return self._component('threads', lambda: ThreadStore(self.get_database().session_factory))

    @property
    def governor(self) -> SafetyGovernor:
        return self._component(
            'governor',
            lambda: SafetyGovernor(
                GovernorStore(self.get_database().session_factory, self.config.governor),
                self.runs,
                self.exceptions,
                self.config.governor,
            ),
        )

    @property
    def retry(self) -> RetryController:
        return self._component('retry', lambda: RetryController(self.runs, self.config.queue))

    @property
    def claimer(self) -> QueueClaimer:
        return self._component('claimer', lambda: QueueClaimer(self.runs, self.config.queue))

    @property
    def dispatcher(self) -> Dispatcher:
        return self._component(
            'dispatcher',
            lambda: Dispatcher(
                self.runs,
                self.exceptions,
                self.settings,
                self.handlers,
                self.governor,
                self.retry,
                self.claimer,
                config=self.config.queue,
                scope_resolver=self.scope_resolver,
                actions=self.actions,
                action_executor=self.action_executor,
            ),
        )

    @property
    def router(self) -> EventRouter:
        return self._component('router', lambda: EventRouter(self.runs, self.config.queue))

    @property
    def manual(self) -> ManualTriggerService:
        return self._component(
            'manual', lambda: ManualTriggerService(self.runs, self.config.queue)
        )

    @property
    def inbound(self) -> InboundIntake:
        return self._component('inbound', lambda: InboundIntake(self.runs, self.threads))

    @property
    def streamer(self) -> RunStatusStreamer:
        return self._component(
            'streamer', lambda: RunStatusStreamer(self.runs, self.config.stream)
        )

    @property
    def approvals(self) -> ActionApprovalService:
        if self.action_executor is None:
            raise ConfigurationError(
                message='no action executor configured',
                code=ErrorCode.CONFIG_INVALID_LOCK,
                help_text='pass action_executor=... to Propflow to enable approvals',
            )
        executor = self.action_executor
        return self._component(
            'approvals',
            lambda: ActionApprovalService(
                self.actions,
                self._lock_provider or build_lock_provider(self.config.action_lock),
                executor,
                self.config.action_lock,
            ),
        )

    async def startup(self) -> None:
        await self.get_database().ensure_schema_initialized()

    async def close(self) -> None:
        close_lock = getattr(self._components.get('approvals'), 'locks', None)
        if close_lock is not None and hasattr(close_lock, 'close'):
            await close_lock.close()
        if self._database is not None:
            await self._database.close_async()
            self._database = None
        self._components.clear()

    # ----------------- validation -----------------

    def check(self, *, live: bool = False) -> list[PropflowError]:
        """
        Validate the app and return every problem found.

        Phase 1: config, already validated at construction.
        Phase 2: every workflow reachable from event or inbound intake has a handler.
        Phase 3 (if live): database connectivity and schema bootstrap.
        """
        errors: list[PropflowError] = []
        reachable = set(EVENT_ROUTES.values()) | {WorkflowType.TENANT_COMMS}
        for workflow_type in sorted(reachable, key=lambda w: w.value):
            if workflow_type not in self.handlers:
                errors.append(HandlerNotRegistered(workflow_type))
        if errors or not live:
            return errors

        async def _probe() -> None:
            database = Database(self.config.database)
            try:
                await database.ensure_schema_initialized()
            finally:
                await database.close_async()

        try:
            asyncio.run(_probe())
        except Exception as exc:
            errors.append(
                ConfigurationError(
                    message='database connectivity check failed',
                    code=ErrorCode.CONFIG_INVALID_DATABASE_URL,
                    notes=[str(exc)],
                    help_text='check PROPFLOW_DATABASE_URL',
                )
            )
        return errors
