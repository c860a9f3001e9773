# propflow/core/models/scheduler.py
from __future__ import annotations

from typing import Annotated, Self
from pydantic import BaseModel, Field, model_validator
from propflow.core.errors import ConfigurationError, ErrorCode, ValidationReport, raise_collected


class SchedulerConfig(BaseModel):
    """
    Settings for the long-running batch loop.

    The loop runs one dispatch batch every ``batch_interval_ms`` and a
    governor evaluation every ``evaluate_interval_ms``. Transient database
    failures are retried with exponential backoff between
    ``db_retry_initial_ms`` and ``db_retry_max_ms``.
    """

    batch_interval_ms: Annotated[int, Field(ge=100, le=3_600_000)] = Field(
        default=5_000,
        description='Pause between dispatch batches (100ms-1hr)',
    )
    evaluate_interval_ms: Annotated[int, Field(ge=1_000, le=86_400_000)] = Field(
        default=60_000,
        description='Pause between governor evaluations (1s-24hr)',
    )
    db_retry_initial_ms: Annotated[int, Field(ge=100, le=60_000)] = Field(
        default=500,
        description='Initial backoff for retrying transient DB errors (100ms-60s)',
    )
    db_retry_max_ms: Annotated[int, Field(ge=500, le=300_000)] = Field(
        default=30_000,
        description='Maximum backoff for retrying transient DB errors (500ms-5min)',
    )
    db_retry_max_attempts: Annotated[int, Field(ge=0, le=10_000)] = Field(
        default=0,
        description='Maximum retry attempts for transient DB errors; 0 means infinite',
    )

    @model_validator(mode='after')
    def validate_backoff(self) -> Self:
        report = ValidationReport('scheduler')
        if self.db_retry_max_ms < self.db_retry_initial_ms:
            report.add(
                ConfigurationError(
                    message='db_retry_max_ms must be >= db_retry_initial_ms',
                    code=ErrorCode.CONFIG_INVALID_RESILIENCE,
                    notes=[
                        f'db_retry_initial_ms={self.db_retry_initial_ms}ms',
                        f'db_retry_max_ms={self.db_retry_max_ms}ms',
                    ],
                    help_text='increase db_retry_max_ms or reduce db_retry_initial_ms',
                )
            )
        raise_collected(report)
        return self
