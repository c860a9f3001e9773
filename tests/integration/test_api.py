"""HTTP surface tests, driving the FastAPI app in-process over httpx."""

from __future__ import annotations

import json
import time
from typing import Any, AsyncGenerator, Optional

import httpx
import pytest
import pytest_asyncio

from propflow.api.app import create_api
from propflow.core.app import Propflow
from propflow.core.auth import Principal, sign_payload
from propflow.core.engine.context import WorkflowContext
from propflow.core.models.app import AppConfig, RateLimitConfig
from propflow.core.store.runs import NewRun
from propflow.core.types.status import (
    ExceptionCategory,
    ExceptionSeverity,
    TriggerType,
    WorkflowType,
)
from propflow.core.utils.clock import utcnow

from .conftest import CRON_SECRET, WEBHOOK_SECRET, RecordingExecutor

pytestmark = pytest.mark.integration

PRINCIPALS: dict[str, Principal] = {
    'op-token': Principal(user_id='op-1', is_operator=True),
    'mgr-token': Principal(
        user_id='user-1', manager_id='mgr-1', property_ids=frozenset({'P1', 'P2'})
    ),
    'other-token': Principal(
        user_id='user-2', manager_id='mgr-2', property_ids=frozenset({'P3'})
    ),
}

OPERATOR = {'Authorization': 'Bearer op-token'}
MANAGER = {'Authorization': 'Bearer mgr-token'}
OTHER = {'Authorization': 'Bearer other-token'}
CRON = {'Authorization': f'Bearer {CRON_SECRET}'}


async def authenticate(token: str) -> Optional[Principal]:
    return PRINCIPALS.get(token)


def _client(app: Propflow) -> httpx.AsyncClient:
    api = create_api(app, authenticate=authenticate, manage_lifecycle=False)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=api), base_url='http://test')


@pytest_asyncio.fixture
async def client(app: Propflow) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with _client(app) as http:
        yield http


async def _queue(app: Propflow, property_id: str = 'P1', ref: str = 'manual-api-1') -> str:
    run = await app.runs.create_run(
        NewRun(
            workflow_type=WorkflowType.MAINTENANCE,
            trigger_type=TriggerType.MANUAL,
            trigger_ref=ref,
            property_id=property_id,
            payload={},
            max_attempts=1,
        )
    )
    assert run is not None
    return run.id


def _frames(body: str) -> list[dict[str, Any]]:
    return [
        json.loads(chunk[len('data: '):])
        for chunk in body.split('\n\n')
        if chunk.startswith('data: ')
    ]


class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_token(self, client: httpx.AsyncClient) -> None:
        response = await client.get('/agent/runs')
        assert response.status_code == 401
        assert response.json() == {'error': 'Unauthorized'}

    @pytest.mark.asyncio
    async def test_unknown_token(self, client: httpx.AsyncClient) -> None:
        response = await client.get('/agent/runs', headers={'Authorization': 'Bearer nope'})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_no_authenticator_rejects_users(self, app: Propflow) -> None:
        api = create_api(app, manage_lifecycle=False)
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=api), base_url='http://test'
        ) as http:
            response = await http.get('/agent/runs', headers=MANAGER)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_operator_endpoints_need_operator(self, client: httpx.AsyncClient) -> None:
        for method, path in [('GET', '/agent/queue'), ('GET', '/agent/governor')]:
            response = await client.request(method, path, headers=MANAGER)
            assert response.status_code == 403, path


class TestMachineIntake:
    @pytest.mark.asyncio
    async def test_event_requires_secret(self, client: httpx.AsyncClient) -> None:
        body = {'eventType': 'NEW_INCIDENT', 'propertyId': 'P1', 'entityId': 'inc-1'}
        response = await client.post('/agent/events', json=body, headers=MANAGER)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_event_dedupes(self, client: httpx.AsyncClient) -> None:
        body = {'eventType': 'NEW_INCIDENT', 'propertyId': 'P1', 'entityId': 'inc-1'}

        first = await client.post('/agent/events', json=body, headers=CRON)
        second = await client.post('/agent/events', json=body, headers=CRON)

        assert first.status_code == 200
        assert first.json()['ok'] is True
        assert first.json()['runId']
        assert first.json()['dedupeKey'].startswith('event:NEW_INCIDENT-inc-1:P1:')
        assert second.json() == {'ok': True, 'skipped': True, 'reason': 'duplicate'}

    @pytest.mark.asyncio
    async def test_unrouted_event_skipped(self, client: httpx.AsyncClient) -> None:
        body = {'eventType': 'LEASE_EXPIRING', 'propertyId': 'P1'}
        response = await client.post('/agent/events', json=body, headers=CRON)
        assert response.json()['skipped'] is True

    @pytest.mark.asyncio
    async def test_unknown_event_type_skipped(self, client: httpx.AsyncClient, app: Propflow) -> None:
        body = {'eventType': 'RENT_PAID', 'propertyId': 'P1'}
        response = await client.post('/agent/events', json=body, headers=CRON)
        assert response.status_code == 200
        assert response.json() == {
            'ok': True,
            'skipped': True,
            'reason': 'no workflow for event type',
        }
        assert await app.runs.list_queued(10) == []

    @pytest.mark.asyncio
    async def test_invalid_event_is_400(self, client: httpx.AsyncClient) -> None:
        no_type = await client.post('/agent/events', json={'propertyId': 'P1'}, headers=CRON)
        assert no_type.status_code == 400
        assert no_type.json()['error'] == 'Invalid request'

        missing = await client.post(
            '/agent/events', json={'eventType': 'WO_SLA_BREACH', 'propertyId': 'P1'}, headers=CRON
        )
        assert missing.status_code == 400
        assert 'entityId' in missing.json()['error']

    @pytest.mark.asyncio
    async def test_signed_inbound(self, client: httpx.AsyncClient, app: Propflow) -> None:
        body = json.dumps(
            {'channel': 'SMS', 'sender': '+15550100', 'body': 'Heat is out', 'propertyId': 'P1'}
        ).encode()
        timestamp = str(int(time.time()))
        headers = {
            'Content-Type': 'application/json',
            'X-Agent-Timestamp': timestamp,
            'X-Agent-Signature': 'sha256=' + sign_payload(WEBHOOK_SECRET, timestamp, body),
        }

        response = await client.post('/agent/inbound', content=body, headers=headers)

        assert response.status_code == 200
        run = await app.runs.get_run(response.json()['runId'])
        assert run is not None
        assert run.workflow_type == WorkflowType.TENANT_COMMS
        assert run.property_id == 'P1'

    @pytest.mark.asyncio
    async def test_tampered_signature(self, client: httpx.AsyncClient) -> None:
        body = json.dumps({'channel': 'SMS', 'sender': '+15550100', 'body': 'hi'}).encode()
        timestamp = str(int(time.time()))
        headers = {
            'Content-Type': 'application/json',
            'X-Agent-Timestamp': timestamp,
            'X-Agent-Signature': sign_payload(WEBHOOK_SECRET, timestamp, body + b' '),
        }
        response = await client.post('/agent/inbound', content=body, headers=headers)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_worker_batch(self, client: httpx.AsyncClient, app: Propflow) -> None:
        @app.workflow(WorkflowType.MAINTENANCE)
        async def handle(ctx: WorkflowContext) -> str:
            return 'done'

        await _queue(app)
        response = await client.post('/agent/worker', headers=CRON)

        assert response.status_code == 200
        assert response.json() == {
            'ok': True,
            'processed': 1,
            'outcomes': {'COMPLETED': 1},
            'stoppedReason': None,
            'governor': {'failurePct': 0, 'criticalOpen': 0, 'tripped': False},
        }


class TestRuns:
    @pytest.mark.asyncio
    async def test_manual_trigger_and_list(self, client: httpx.AsyncClient) -> None:
        created = await client.post(
            '/agent/runs',
            json={'workflowType': 'COMPLIANCE_PM', 'propertyId': 'P1', 'payload': {'x': 1}},
            headers=MANAGER,
        )
        assert created.status_code == 200
        run_id = created.json()['runId']

        listed = await client.get('/agent/runs', params={'status': 'queued'}, headers=MANAGER)
        assert listed.status_code == 200
        data = listed.json()
        assert [r['id'] for r in data['runs']] == [run_id]
        assert data['runs'][0]['workflowType'] == 'COMPLIANCE_PM'
        assert data['runs'][0]['meta']['payload'] == {'x': 1, 'requestedBy': 'user-1'}
        assert (data['limit'], data['offset']) == (50, 0)

        hidden = await client.get('/agent/runs', headers=OTHER)
        assert hidden.json()['runs'] == []

    @pytest.mark.asyncio
    async def test_trigger_outside_scope(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            '/agent/runs', json={'workflowType': 'MAINTENANCE', 'propertyId': 'P3'}, headers=MANAGER
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_list_filters_validated(self, client: httpx.AsyncClient) -> None:
        bad_status = await client.get('/agent/runs', params={'status': 'BOGUS'}, headers=MANAGER)
        assert bad_status.status_code == 400

        foreign = await client.get('/agent/runs', params={'propertyId': 'P3'}, headers=MANAGER)
        assert foreign.status_code == 403

        capped = await client.get('/agent/runs', params={'limit': 500}, headers=OPERATOR)
        assert capped.json()['limit'] == 100

    @pytest.mark.asyncio
    async def test_detail_scope(self, client: httpx.AsyncClient, app: Propflow) -> None:
        run_id = await _queue(app)
        await app.exceptions.create(
            severity=ExceptionSeverity.LOW,
            category=ExceptionCategory.SLA,
            title='Slow vendor',
            run_id=run_id,
            property_id='P1',
        )

        mine = await client.get(f'/agent/runs/{run_id}', headers=MANAGER)
        assert mine.status_code == 200
        assert mine.json()['run']['id'] == run_id
        assert mine.json()['steps'] == []
        assert [e['title'] for e in mine.json()['exceptions']] == ['Slow vendor']

        assert (await client.get(f'/agent/runs/{run_id}', headers=OTHER)).status_code == 403
        assert (await client.get('/agent/runs/missing', headers=MANAGER)).status_code == 404

    @pytest.mark.asyncio
    async def test_cancel(self, client: httpx.AsyncClient, app: Propflow) -> None:
        run_id = await _queue(app)

        first = await client.post(f'/agent/runs/{run_id}/cancel', headers=MANAGER)
        second = await client.post(f'/agent/runs/{run_id}/cancel', headers=MANAGER)

        assert first.json() == {'ok': True, 'runId': run_id}
        assert second.status_code == 409


class TestStream:
    @pytest.mark.asyncio
    async def test_terminal_run_single_frame(self, client: httpx.AsyncClient, app: Propflow) -> None:
        run_id = await _queue(app)
        now = utcnow()
        await app.runs.claim(run_id, now=now)
        await app.runs.complete(run_id, summary='done', now=now)

        response = await client.get(f'/agent/runs/{run_id}/stream', headers=MANAGER)

        assert response.status_code == 200
        assert response.headers['content-type'].startswith('text/event-stream')
        assert response.headers['cache-control'] == 'no-cache'
        assert response.headers['x-accel-buffering'] == 'no'
        frames = _frames(response.text)
        assert len(frames) == 1
        assert frames[0]['live'] is False
        assert frames[0]['run']['status'] == 'COMPLETED'

    @pytest.mark.asyncio
    async def test_queued_run_streams_until_cap(self, client: httpx.AsyncClient, app: Propflow) -> None:
        run_id = await _queue(app)

        response = await client.get(f'/agent/runs/{run_id}/stream', headers=MANAGER)

        frames = _frames(response.text)
        assert len(frames) >= 2
        assert all(f['live'] for f in frames)
        assert {f['run']['status'] for f in frames} == {'QUEUED'}

    @pytest.mark.asyncio
    async def test_stream_scope(self, client: httpx.AsyncClient, app: Propflow) -> None:
        run_id = await _queue(app)
        response = await client.get(f'/agent/runs/{run_id}/stream', headers=OTHER)
        assert response.status_code == 403


class TestActionsAndExceptions:
    @pytest.mark.asyncio
    async def test_approve_then_conflict(
        self, client: httpx.AsyncClient, app: Propflow, executor: RecordingExecutor
    ) -> None:
        action = await app.actions.create(manager_id='mgr-1', action_type='SEND_NOTICE')

        approved = await client.post(f'/agent/actions/{action.id}/approve', headers=MANAGER)
        again = await client.post(f'/agent/actions/{action.id}/reject', headers=MANAGER)

        assert approved.status_code == 200
        assert approved.json()['status'] == 'APPROVED'
        assert again.status_code == 409
        assert executor.executed == [action.id]

    @pytest.mark.asyncio
    async def test_pending_actions_listed_for_caller(
        self, client: httpx.AsyncClient, app: Propflow
    ) -> None:
        mine = await app.actions.create(manager_id='mgr-1', action_type='SEND_NOTICE')
        await app.actions.create(manager_id='mgr-2', action_type='SEND_NOTICE')

        listed = await client.get('/agent/actions', headers=MANAGER)
        operator = await client.get('/agent/actions', headers=OPERATOR)

        assert listed.status_code == 200
        assert [a['id'] for a in listed.json()['actions']] == [mine.id]
        assert listed.json()['actions'][0]['status'] == 'PENDING_APPROVAL'
        assert operator.status_code == 403

        await client.post(f'/agent/actions/{mine.id}/approve', headers=MANAGER)
        after = await client.get('/agent/actions', headers=MANAGER)
        assert after.json() == {'actions': []}

    @pytest.mark.asyncio
    async def test_action_scope_and_missing(self, client: httpx.AsyncClient, app: Propflow) -> None:
        action = await app.actions.create(manager_id='mgr-1', action_type='SEND_NOTICE')
        forbidden = await client.post(f'/agent/actions/{action.id}/approve', headers=OTHER)
        missing = await client.post('/agent/actions/missing/approve', headers=MANAGER)
        assert forbidden.status_code == 403
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_exception_review(self, client: httpx.AsyncClient, app: Propflow) -> None:
        mine = await app.exceptions.create(
            severity=ExceptionSeverity.HIGH,
            category=ExceptionCategory.FINANCIAL,
            title='Rent ledger mismatch',
            property_id='P1',
        )
        theirs = await app.exceptions.create(
            severity=ExceptionSeverity.HIGH,
            category=ExceptionCategory.FINANCIAL,
            title='Deposit refund overdue',
            property_id='P3',
        )

        listed = await client.get('/agent/exceptions', params={'status': 'OPEN'}, headers=MANAGER)
        assert [e['id'] for e in listed.json()['exceptions']] == [mine.id]

        acked = await client.patch(
            f'/agent/exceptions/{mine.id}', json={'status': 'ACK'}, headers=MANAGER
        )
        assert acked.json()['status'] == 'ACK'
        resolved = await client.patch(
            f'/agent/exceptions/{mine.id}', json={'status': 'RESOLVED'}, headers=MANAGER
        )
        assert resolved.json()['resolvedBy'] == 'user-1'
        reopened = await client.patch(
            f'/agent/exceptions/{mine.id}', json={'status': 'ACK'}, headers=MANAGER
        )
        assert reopened.status_code == 409

        foreign = await client.patch(
            f'/agent/exceptions/{theirs.id}', json={'status': 'ACK'}, headers=MANAGER
        )
        assert foreign.status_code == 403
        invalid = await client.patch(
            f'/agent/exceptions/{theirs.id}', json={'status': 'OPEN'}, headers=OPERATOR
        )
        assert invalid.status_code == 400


class TestSettingsAndOperator:
    @pytest.mark.asyncio
    async def test_settings_roundtrip(self, client: httpx.AsyncClient) -> None:
        initial = await client.get('/agent/settings', headers=MANAGER)
        assert initial.json() == {'managerId': 'mgr-1', 'enabled': False}

        updated = await client.put('/agent/settings', json={'enabled': True}, headers=MANAGER)
        assert updated.json() == {'managerId': 'mgr-1', 'enabled': True}
        assert (await client.get('/agent/settings', headers=MANAGER)).json()['enabled'] is True

        assert (await client.get('/agent/settings', headers=OPERATOR)).status_code == 403

    @pytest.mark.asyncio
    async def test_dead_letter_replay(self, client: httpx.AsyncClient, app: Propflow) -> None:
        run_id = await _queue(app)
        run = await app.claimer.claim_next()
        assert run is not None and run.meta is not None
        await app.retry.record_failure(run_id, run.meta, 'boom')

        listed = await client.get('/agent/queue', headers=OPERATOR)
        assert [r['id'] for r in listed.json()['runs']] == [run_id]

        replayed = await client.post(
            '/agent/queue/replay', json={'runId': run_id}, headers=OPERATOR
        )
        assert replayed.json() == {'ok': True, 'runId': run_id}
        again = await client.post('/agent/queue/replay', json={'runId': run_id}, headers=OPERATOR)
        assert again.status_code == 400

    @pytest.mark.asyncio
    async def test_governor_controls(self, client: httpx.AsyncClient) -> None:
        state = await client.get('/agent/governor', headers=OPERATOR)
        assert state.json()['killSwitch'] is False
        assert state.json()['failureThresholdPct'] == 40

        patched = await client.patch(
            '/agent/governor',
            json={'killSwitch': True, 'reason': 'maintenance window'},
            headers=OPERATOR,
        )
        assert patched.json()['killSwitch'] is True
        assert patched.json()['reason'] == 'maintenance window'

        rejected = await client.patch(
            '/agent/governor', json={'failureThresholdPct': 0}, headers=OPERATOR
        )
        assert rejected.status_code == 400


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_manual_trigger_limited_per_caller(
        self, app: Propflow, app_config: AppConfig
    ) -> None:
        limited_config = app_config.model_copy(
            update={'rate_limit': RateLimitConfig(manual_trigger='2/minute')}
        )
        limited = Propflow(limited_config)
        await limited.startup()
        try:
            async with _client(limited) as http:
                body = {'workflowType': 'MAINTENANCE', 'propertyId': 'P1'}
                codes = [
                    (await http.post('/agent/runs', json=body, headers=MANAGER)).status_code
                    for _ in range(3)
                ]
                other = await http.post(
                    '/agent/runs',
                    json={'workflowType': 'MAINTENANCE', 'propertyId': 'P3'},
                    headers=OTHER,
                )
        finally:
            await limited.close()

        assert codes == [200, 200, 429]
        assert other.status_code == 200
