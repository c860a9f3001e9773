# propflow/core/registry/handlers.py
from __future__ import annotations
from typing import Dict, Iterator, MutableMapping, Generic, TypeVar
from propflow.core.errors import RegistryError, ErrorCode
from propflow.core.types.status import WorkflowType

T = TypeVar('T')


class HandlerNotRegistered(RegistryError, KeyError):
    """Raised when no handler is registered for a workflow type.

    Inherits from KeyError so MutableMapping.__contains__ works correctly.
    """

    def __init__(self, workflow_type: WorkflowType) -> None:
        RegistryError.__init__(
            self,
            message=f"no handler registered for workflow '{workflow_type.value}'",
            code=ErrorCode.HANDLER_NOT_REGISTERED,
            notes=[f"requested workflow: '{workflow_type.value}'"],
            help_text='register one with @app.workflow(WorkflowType.X) before dispatching',
        )
        self.workflow_type = workflow_type


class DuplicateHandlerError(RegistryError):
    """Raised when a workflow type gets a second handler from a different source."""

    def __init__(self, workflow_type: WorkflowType, context: str = '') -> None:
        super().__init__(
            message=f"duplicate handler for workflow '{workflow_type.value}'",
            code=ErrorCode.HANDLER_DUPLICATE,
            notes=[context] if context else [],
            help_text='each workflow type has exactly one handler per app',
        )
        self.workflow_type = workflow_type


class HandlerRegistry(MutableMapping[WorkflowType, T], Generic[T]):
    """Registry mapping workflow type -> handler.

    - Same type + same source: silently skip (re-import)
    - Same type + different source: raise DuplicateHandlerError
    """

    def __init__(self) -> None:
        self._data: Dict[WorkflowType, T] = {}
        self._sources: Dict[WorkflowType, str] = {}  # workflow_type -> "file:lineno"

    def __getitem__(self, key: WorkflowType) -> T:
        try:
            return self._data[key]
        except KeyError:
            raise HandlerNotRegistered(key)

    def __setitem__(self, key: WorkflowType, value: T) -> None:
        if key in self._data:
            raise DuplicateHandlerError(key, 'detected via direct assignment')
        self._data[key] = value

    def __delitem__(self, key: WorkflowType) -> None:
        del self._data[key]
        self._sources.pop(key, None)

    def __iter__(self) -> Iterator[WorkflowType]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(self, handler: T, *, workflow_type: WorkflowType, source: str | None = None) -> T:
        if workflow_type in self._data:
            existing_source = self._sources.get(workflow_type)
            if existing_source and source and existing_source == source:
                return self._data[workflow_type]
            raise DuplicateHandlerError(workflow_type, 'a handler for this workflow already exists')
        self._data[workflow_type] = handler
        if source:
            self._sources[workflow_type] = source
        return handler
