# propflow/api/app.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from propflow.api.deps import Authenticator, rate_limit_key
from propflow.api.routes import build_router
from propflow.core.app import Propflow
from propflow.core.errors import EngineError
from propflow.core.logging import get_logger

logger = get_logger('api')


def create_api(
    propflow: Propflow,
    *,
    authenticate: Optional[Authenticator] = None,
    manage_lifecycle: bool = True,
) -> FastAPI:
    """
    Build the HTTP surface for ``propflow``.

    ``authenticate`` maps a bearer token to a Principal; without it every
    user-facing endpoint answers 401 and only machine endpoints work.
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await propflow.startup()
        try:
            yield
        finally:
            if manage_lifecycle:
                await propflow.close()

    rate = propflow.config.rate_limit
    limiter = Limiter(key_func=rate_limit_key, enabled=rate.enabled)

    api = FastAPI(title='propflow', lifespan=lifespan)
    api.state.propflow = propflow
    api.state.authenticate = authenticate
    api.state.limiter = limiter
    api.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]

    @api.exception_handler(EngineError)
    async def engine_error_handler(_: Request, exc: EngineError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error(f'Unhandled engine error: {exc.message}')
        return JSONResponse(status_code=exc.http_status, content={'error': exc.message})

    @api.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={'error': 'Invalid request', 'details': jsonable_encoder(exc.errors())},
        )

    api.include_router(build_router(limiter, rate))
    return api
