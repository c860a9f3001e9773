# propflow/core/engine/action_lock.py
"""Exactly-once execution of human-approved side effects.

Approval combines a coarse lock (serializes concurrent approvers of one
action) with a claim/finalize pair of conditional updates on the action
row. The lock keeps duplicate clicks from racing; the conditional updates
keep a stale lock holder from finalizing over a newer claim.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Protocol

import redis.asyncio as aioredis

from propflow.core.auth import Principal
from propflow.core.errors import (
    ActionContentionError,
    ActionFinalizeLostError,
    ActionNotFoundError,
    ScopeForbiddenError,
)
from propflow.core.logging import get_logger
from propflow.core.models.app import ActionLockConfig
from propflow.core.models.records import ActionRecord
from propflow.core.store.actions import ActionStore
from propflow.core.types.status import ActionStatus
from propflow.core.utils.clock import utcnow

logger = get_logger('action_lock')

# Delete the key only if it still holds our token.
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class LockProvider(Protocol):
    async def acquire(self, key: str, ttl_ms: int) -> Optional[str]:
        """Return an owner token, or None when the key is held."""
        ...

    async def release(self, key: str, token: str) -> None: ...


class LocalLockProvider:
    """In-process lock with expiry. Only serializes approvers inside one process."""

    def __init__(self) -> None:
        self._held: dict[str, tuple[str, float]] = {}
        self._mutex = asyncio.Lock()

    async def acquire(self, key: str, ttl_ms: int) -> Optional[str]:
        async with self._mutex:
            now = time.monotonic()
            current = self._held.get(key)
            if current is not None and current[1] > now:
                return None
            token = uuid.uuid4().hex
            self._held[key] = (token, now + ttl_ms / 1000.0)
            return token

    async def release(self, key: str, token: str) -> None:
        async with self._mutex:
            current = self._held.get(key)
            if current is not None and current[0] == token:
                del self._held[key]


class RedisLockProvider:
    """``SET NX PX`` lock with a compare-and-delete release."""

    def __init__(self, client: aioredis.Redis, prefix: str = 'propflow:lock:'):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> RedisLockProvider:
        return cls(aioredis.from_url(url, decode_responses=True))

    async def acquire(self, key: str, ttl_ms: int) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = await self.client.set(self.prefix + key, token, nx=True, px=ttl_ms)
        return token if acquired else None

    async def release(self, key: str, token: str) -> None:
        await self.client.eval(_RELEASE_SCRIPT, 1, self.prefix + key, token)

    async def close(self) -> None:
        await self.client.aclose()


class ActionExecutor(Protocol):
    async def execute(self, action: ActionRecord) -> Mapping[str, Any]:
        """Perform the side effect; return ``{'ok': True, ...}`` or ``{'ok': False, 'error': ...}``."""
        ...


def build_lock_provider(config: ActionLockConfig) -> LockProvider:
    if config.redis_url:
        return RedisLockProvider.from_url(config.redis_url)
    return LocalLockProvider()


async def run_action_executor(
    executor: ActionExecutor, action: ActionRecord
) -> tuple[bool, dict[str, Any]]:
    """Run the side effect; executor exceptions become an ``ok=False`` result."""
    try:
        returned = await executor.execute(action)
    except Exception as exc:
        logger.error(f'Executor failed for action {action.id}: {type(exc).__name__}: {exc}')
        return False, {'ok': False, 'error': f'{type(exc).__name__}: {exc}'}
    result = dict(returned)
    ok = result.get('ok', True) is not False
    result['ok'] = ok
    return ok, result


class ActionApprovalService:
    def __init__(
        self,
        actions: ActionStore,
        locks: LockProvider,
        executor: ActionExecutor,
        config: Optional[ActionLockConfig] = None,
    ):
        self.actions = actions
        self.locks = locks
        self.executor = executor
        self.config = config or ActionLockConfig()

    async def _load_owned(self, action_id: str, principal: Principal) -> ActionRecord:
        action = await self.actions.get(action_id)
        if action is None:
            raise ActionNotFoundError(action_id)
        if principal.manager_id is None or action.manager_id != principal.manager_id:
            raise ScopeForbiddenError('action belongs to another manager')
        if action.status != ActionStatus.PENDING_APPROVAL:
            raise ActionContentionError(f'action {action_id} is already {action.status.value}')
        return action

    def _stale_before(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self.config.stale_claim_seconds)

    async def approve(self, action_id: str, principal: Principal) -> ActionRecord:
        """
        Execute an approved action exactly once.

        Raises:
            ActionNotFoundError: unknown action.
            ScopeForbiddenError: the action belongs to another manager.
            ActionContentionError: already handled, or another approval is in flight.
            ActionFinalizeLostError: the claim went stale and was taken over
                while executing.
        """
        action = await self._load_owned(action_id, principal)
        lock_key = f'action:{action_id}'
        token = await self.locks.acquire(lock_key, self.config.lock_ttl_ms)
        if token is None:
            raise ActionContentionError(f'action {action_id} is being approved elsewhere')

        try:
            claim_ts = utcnow()
            claimed = await self.actions.claim(
                action_id,
                manager_id=action.manager_id,
                claim_ts=claim_ts,
                stale_before=self._stale_before(claim_ts),
            )
            if not claimed:
                raise ActionContentionError(f'action {action_id} is already claimed or handled')

            ok, result = await run_action_executor(self.executor, action)
            finalized = await self.actions.finalize(
                action_id,
                claim_ts=claim_ts,
                status=ActionStatus.APPROVED if ok else ActionStatus.FAILED,
                result=result,
            )
            if not finalized:
                logger.error(f'Action {action_id} executed but its claim was taken over')
                raise ActionFinalizeLostError(action_id)
        finally:
            await self.locks.release(lock_key, token)

        logger.info(f'Action {action_id} {"approved" if ok else "failed"} by {principal.user_id}')
        record = await self.actions.get(action_id)
        assert record is not None
        return record

    async def reject(self, action_id: str, principal: Principal) -> ActionRecord:
        action = await self._load_owned(action_id, principal)
        now = utcnow()
        rejected = await self.actions.reject(
            action_id,
            manager_id=action.manager_id,
            now=now,
            stale_before=self._stale_before(now),
        )
        if not rejected:
            raise ActionContentionError(f'action {action_id} is already claimed or handled')
        logger.info(f'Action {action_id} rejected by {principal.user_id}')
        record = await self.actions.get(action_id)
        assert record is not None
        return record
