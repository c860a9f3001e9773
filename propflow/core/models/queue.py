# propflow/core/models/queue.py
from __future__ import annotations

from typing import Annotated, Optional, Self
from pydantic import BaseModel, Field, model_validator
from propflow.core.defaults import (
    DEFAULT_BACKOFF_BASE_MS,
    DEFAULT_BACKOFF_CEILING_MS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_CLAIM_SCAN_LIMIT,
    DEFAULT_HANDLER_TIMEOUT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    MAX_BATCH_SIZE,
)
from propflow.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)


class QueueConfig(BaseModel):
    """
    Claiming, dispatch and retry settings.

    Fields:
    - batch_size: runs dispatched per batch invocation when the caller gives no limit
    - claim_scan_limit: oldest QUEUED rows inspected per claim attempt
    - default_max_attempts: attempts granted to runs whose producer gives none
    - backoff_base_ms / backoff_ceiling_ms: retry delay is
      min(ceiling, base * 2^(attempts - 1))
    - handler_timeout_seconds: deadline for one handler call; None disables it
    """

    batch_size: Annotated[int, Field(ge=1, le=MAX_BATCH_SIZE)] = DEFAULT_BATCH_SIZE
    claim_scan_limit: Annotated[int, Field(ge=1, le=1_000)] = DEFAULT_CLAIM_SCAN_LIMIT
    default_max_attempts: Annotated[int, Field(ge=1, le=100)] = DEFAULT_MAX_ATTEMPTS
    backoff_base_ms: Annotated[int, Field(ge=1, le=3_600_000)] = DEFAULT_BACKOFF_BASE_MS
    backoff_ceiling_ms: Annotated[int, Field(ge=1, le=86_400_000)] = (
        DEFAULT_BACKOFF_CEILING_MS
    )
    handler_timeout_seconds: Optional[Annotated[float, Field(gt=0)]] = (
        DEFAULT_HANDLER_TIMEOUT_SECONDS
    )

    @model_validator(mode='after')
    def validate_backoff(self) -> Self:
        report = ValidationReport('queue')
        if self.backoff_ceiling_ms < self.backoff_base_ms:
            report.add(
                ConfigurationError(
                    message='backoff_ceiling_ms must be >= backoff_base_ms',
                    code=ErrorCode.CONFIG_INVALID_QUEUE,
                    notes=[
                        f'backoff_base_ms={self.backoff_base_ms}ms',
                        f'backoff_ceiling_ms={self.backoff_ceiling_ms}ms',
                    ],
                    help_text='raise backoff_ceiling_ms or lower backoff_base_ms',
                )
            )
        if self.claim_scan_limit < self.batch_size:
            report.add(
                ConfigurationError(
                    message='claim_scan_limit must be >= batch_size',
                    code=ErrorCode.CONFIG_INVALID_QUEUE,
                    notes=[
                        f'batch_size={self.batch_size}',
                        f'claim_scan_limit={self.claim_scan_limit}',
                    ],
                    help_text='a claim scan smaller than a batch starves the batch',
                )
            )
        raise_collected(report)
        return self
