# propflow/api/routes.py
import json
from typing import Any, AsyncIterator, Literal, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from slowapi import Limiter

from propflow.api.deps import (
    Authenticator,
    bearer_token,
    get_principal,
    get_propflow,
    require_machine,
    require_operator,
)
from propflow.core.app import Propflow
from propflow.core.auth import Principal
from propflow.core.defaults import MAX_LIST_LIMIT
from propflow.core.engine.governor import GovernorPatch
from propflow.core.engine.intake import InboundMessage, ManualTrigger
from propflow.core.engine.router import AgentEvent
from propflow.core.errors import (
    IntakeValidationError,
    RunNotFoundError,
    RunStateConflictError,
    ScopeForbiddenError,
)
from propflow.core.models.app import RateLimitConfig
from propflow.core.models.records import RunRecord
from propflow.core.types.status import ExceptionStatus, RunStatus
from propflow.core.utils.clock import utcnow

SSE_HEADERS = {
    'Cache-Control': 'no-cache',
    'Connection': 'keep-alive',
    'X-Accel-Buffering': 'no',
}


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReplayRequest(_Body):
    run_id: str


class ExceptionUpdate(_Body):
    status: Literal['ACK', 'RESOLVED']


class SettingsUpdate(_Body):
    enabled: bool


def _parse_statuses(raw: Optional[str]) -> Optional[list[RunStatus]]:
    if not raw:
        return None
    try:
        return [RunStatus(part.strip().upper()) for part in raw.split(',') if part.strip()]
    except ValueError as exc:
        raise IntakeValidationError(f'unknown run status in {raw!r}') from exc


async def _load_scoped_run(app: Propflow, run_id: str, principal: Principal) -> RunRecord:
    run = await app.runs.get_run(run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    if not principal.can_access_property(run.property_id):
        raise ScopeForbiddenError('run is outside the caller scope')
    return run


def build_router(limiter: Limiter, rate: RateLimitConfig) -> APIRouter:
    router = APIRouter(prefix='/agent')

    # ----------------- intake -----------------

    @router.post('/events', dependencies=[Depends(require_machine)])
    async def submit_event(event: AgentEvent, app: Propflow = Depends(get_propflow)) -> Any:
        return (await app.router.submit(event)).to_json()

    @router.post('/inbound', dependencies=[Depends(require_machine)])
    async def receive_inbound(
        message: InboundMessage, app: Propflow = Depends(get_propflow)
    ) -> Any:
        return (await app.inbound.receive(message)).to_json()

    @router.post('/worker', dependencies=[Depends(require_machine)])
    async def run_worker_batch(
        limit: Optional[int] = Query(default=None),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        batch = await app.dispatcher.process_queue_batch(limit)
        evaluation = await app.governor.evaluate_and_auto_pause()
        return {
            'ok': True,
            **batch.to_json(),
            'governor': {
                'failurePct': evaluation.failure_pct,
                'criticalOpen': evaluation.critical_open,
                'tripped': evaluation.tripped,
            },
        }

    # ----------------- runs -----------------

    @router.post('/runs')
    @limiter.limit(rate.manual_trigger)
    async def trigger_run(
        request: Request,
        body: ManualTrigger,
        principal: Principal = Depends(get_principal),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        run_id = await app.manual.trigger(body, principal)
        return {'ok': True, 'runId': run_id}

    @router.get('/runs')
    @limiter.limit(rate.list_runs)
    async def list_runs(
        request: Request,
        status: Optional[str] = Query(default=None),
        property_id: Optional[str] = Query(default=None, alias='propertyId'),
        limit: int = Query(default=50, ge=1),
        offset: int = Query(default=0, ge=0),
        principal: Principal = Depends(get_principal),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        if property_id is not None and not principal.can_access_property(property_id):
            raise ScopeForbiddenError('property is outside the caller scope')
        runs = await app.runs.list_runs(
            statuses=_parse_statuses(status),
            property_id=property_id,
            allowed_property_ids=principal.scope_filter,
            limit=min(limit, MAX_LIST_LIMIT),
            offset=offset,
        )
        return {'runs': [r.to_json() for r in runs], 'limit': min(limit, MAX_LIST_LIMIT), 'offset': offset}

    @router.get('/runs/{run_id}')
    async def get_run(
        run_id: str,
        principal: Principal = Depends(get_principal),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        await _load_scoped_run(app, run_id, principal)
        detail = await app.runs.get_run_detail(run_id)
        if detail is None:
            raise RunNotFoundError(run_id)
        return {
            'run': detail.run.to_json(),
            'steps': [s.to_json() for s in detail.steps],
            'exceptions': [e.to_json() for e in detail.exceptions],
        }

    @router.post('/runs/{run_id}/cancel')
    async def cancel_run(
        run_id: str,
        principal: Principal = Depends(get_principal),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        await _load_scoped_run(app, run_id, principal)
        if not await app.runs.cancel_queued(run_id, now=utcnow()):
            raise RunStateConflictError(f'run {run_id} is no longer queued')
        return {'ok': True, 'runId': run_id}

    @router.get('/runs/{run_id}/stream')
    async def stream_run(
        run_id: str,
        request: Request,
        authorization: Optional[str] = Header(default=None),
        principal: Principal = Depends(get_principal),
        app: Propflow = Depends(get_propflow),
    ) -> StreamingResponse:
        await _load_scoped_run(app, run_id, principal)
        authenticate: Authenticator = request.app.state.authenticate
        token = bearer_token(authorization) or ''

        async def authorize(run: RunRecord) -> bool:
            current = await authenticate(token)
            return current is not None and current.can_access_property(run.property_id)

        async def events() -> AsyncIterator[str]:
            async for frame in app.streamer.stream(run_id, authorize):
                yield f'data: {json.dumps(frame.to_json())}\n\n'

        return StreamingResponse(events(), media_type='text/event-stream', headers=SSE_HEADERS)

    # ----------------- actions -----------------

    @router.get('/actions')
    async def list_pending_actions(
        limit: int = Query(default=50, ge=1),
        principal: Principal = Depends(get_principal),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        if principal.manager_id is None:
            raise ScopeForbiddenError('caller is not a manager')
        actions = await app.actions.list_pending(
            principal.manager_id, limit=min(limit, MAX_LIST_LIMIT)
        )
        return {'actions': [a.to_json() for a in actions]}

    @router.post('/actions/{action_id}/approve')
    async def approve_action(
        action_id: str,
        principal: Principal = Depends(get_principal),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        return (await app.approvals.approve(action_id, principal)).to_json()

    @router.post('/actions/{action_id}/reject')
    async def reject_action(
        action_id: str,
        principal: Principal = Depends(get_principal),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        return (await app.approvals.reject(action_id, principal)).to_json()

    # ----------------- exceptions -----------------

    @router.get('/exceptions')
    async def list_exceptions(
        status: Optional[ExceptionStatus] = Query(default=None),
        limit: int = Query(default=50, ge=1),
        principal: Principal = Depends(get_principal),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        records = await app.exceptions.list_exceptions(
            statuses=[status] if status else None,
            allowed_property_ids=principal.scope_filter,
            limit=min(limit, MAX_LIST_LIMIT),
        )
        return {'exceptions': [e.to_json() for e in records]}

    @router.patch('/exceptions/{exception_id}')
    async def update_exception(
        exception_id: str,
        body: ExceptionUpdate,
        principal: Principal = Depends(get_principal),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        current = await app.exceptions.get(exception_id)
        if current is not None and not principal.can_access_property(current.property_id):
            raise ScopeForbiddenError('exception is outside the caller scope')
        record = await app.exceptions.transition(
            exception_id, ExceptionStatus(body.status), actor_id=principal.user_id
        )
        return record.to_json()

    # ----------------- settings -----------------

    @router.get('/settings')
    async def get_settings(
        principal: Principal = Depends(get_principal),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        if principal.manager_id is None:
            raise ScopeForbiddenError('caller is not a manager')
        enabled = await app.settings.get_enabled(principal.manager_id)
        return {'managerId': principal.manager_id, 'enabled': bool(enabled)}

    @router.put('/settings')
    async def put_settings(
        body: SettingsUpdate,
        principal: Principal = Depends(get_principal),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        if principal.manager_id is None:
            raise ScopeForbiddenError('caller is not a manager')
        await app.settings.set_enabled(principal.manager_id, body.enabled)
        return {'managerId': principal.manager_id, 'enabled': body.enabled}

    # ----------------- operator -----------------

    @router.get('/queue')
    async def list_dead_letters(
        limit: int = Query(default=MAX_LIST_LIMIT, ge=1),
        _: Principal = Depends(require_operator),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        runs = await app.retry.list_dead_letters(min(limit, MAX_LIST_LIMIT))
        return {'runs': [r.to_json() for r in runs]}

    @router.post('/queue/replay')
    async def replay_dead_letter(
        body: ReplayRequest,
        _: Principal = Depends(require_operator),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        run = await app.retry.replay(body.run_id)
        return {'ok': True, 'runId': run.id}

    @router.get('/governor')
    async def get_governor(
        _: Principal = Depends(require_operator),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        return (await app.governor.get_state()).to_json()

    @router.patch('/governor')
    async def patch_governor(
        patch: GovernorPatch,
        _: Principal = Depends(require_operator),
        app: Propflow = Depends(get_propflow),
    ) -> Any:
        return (await app.governor.update_state(patch)).to_json()

    return router
