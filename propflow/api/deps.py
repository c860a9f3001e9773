# propflow/api/deps.py
from __future__ import annotations

from typing import Awaitable, Callable, Optional

from fastapi import Depends, Header, Request

from propflow.core.app import Propflow
from propflow.core.auth import Principal, require_machine_caller
from propflow.core.errors import IntakeAuthError, ScopeForbiddenError

# Bearer token -> principal, or None when the token is not valid.
Authenticator = Callable[[str], Awaitable[Optional[Principal]]]


def get_propflow(request: Request) -> Propflow:
    return request.app.state.propflow


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(' ')
    return token.strip() if scheme.lower() == 'bearer' and token.strip() else None


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Principal:
    authenticate: Optional[Authenticator] = request.app.state.authenticate
    token = bearer_token(authorization)
    if authenticate is None or token is None:
        raise IntakeAuthError('Unauthorized')
    principal = await authenticate(token)
    if principal is None:
        raise IntakeAuthError('Unauthorized')
    # rate limiting keys on the caller
    request.state.principal = principal
    return principal


async def require_operator(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_operator:
        raise ScopeForbiddenError('operator access required')
    return principal


async def require_machine(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_agent_signature: Optional[str] = Header(default=None),
    x_agent_timestamp: Optional[str] = Header(default=None),
) -> None:
    """Cron/producer callers: bearer secret, or a signed body when a webhook secret is set."""
    app: Propflow = request.app.state.propflow
    intake = app.config.intake
    require_machine_caller(
        authorization=authorization,
        cron_secret=intake.cron_secret,
        webhook_secret=intake.webhook_secret,
        signature=x_agent_signature,
        timestamp=x_agent_timestamp,
        body=await request.body(),
        max_skew_seconds=intake.max_skew_seconds,
    )


def rate_limit_key(request: Request) -> str:
    principal: Optional[Principal] = getattr(request.state, 'principal', None)
    if principal is not None:
        return f'user:{principal.user_id}'
    return request.client.host if request.client else 'anonymous'
