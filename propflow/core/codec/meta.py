# propflow/core/codec/meta.py
"""Versioned scheduling metadata stored alongside each run.

The encoded form is an opaque JSON string. Anything that does not decode
into a current-version ``QueueMeta`` is treated as poisoned by the
dispatcher, so decoding never guesses.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from propflow.core.errors import MetadataDecodeError
from propflow.core.types.status import WorkflowType
from propflow.core.utils.clock import ensure_utc

QUEUE_META_VERSION = 1


class QueueMeta(BaseModel):
    """
    Orchestration bookkeeping for one run.

    - attempts: failures recorded so far
    - max_attempts: failures allowed before dead-lettering
    - next_attempt_at: earliest moment a claimer may pick the run up
    - dlq: whether the run sits in the dead-letter set
    """

    model_config = ConfigDict(frozen=True, extra='forbid')

    version: int = QUEUE_META_VERSION
    workflow_type: WorkflowType
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(ge=1)
    next_attempt_at: datetime
    dlq: bool = False

    @field_validator('next_attempt_at')
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)  # type: ignore[return-value]

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at <= now


def encode_meta(meta: QueueMeta) -> str:
    return meta.model_dump_json()


def decode_meta(raw: Optional[str]) -> QueueMeta:
    """Decode stored metadata or raise MetadataDecodeError."""
    if not raw:
        raise MetadataDecodeError('orchestration metadata is missing')
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MetadataDecodeError(f'orchestration metadata is not JSON: {exc.msg}') from exc
    if not isinstance(data, dict):
        raise MetadataDecodeError('orchestration metadata is not an object')
    version = data.get('version')
    if version != QUEUE_META_VERSION:
        raise MetadataDecodeError(f'unsupported orchestration metadata version: {version!r}')
    try:
        return QueueMeta.model_validate(data)
    except ValidationError as exc:
        raise MetadataDecodeError(
            f'invalid orchestration metadata: {exc.error_count()} error(s)'
        ) from exc


def try_decode_meta(raw: Optional[str]) -> Optional[QueueMeta]:
    try:
        return decode_meta(raw)
    except MetadataDecodeError:
        return None
