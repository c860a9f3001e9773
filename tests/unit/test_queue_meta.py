"""Unit tests for the orchestration metadata codec."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from propflow.core.codec.meta import (
    QUEUE_META_VERSION,
    QueueMeta,
    decode_meta,
    encode_meta,
    try_decode_meta,
)
from propflow.core.errors import MetadataDecodeError
from propflow.core.types.status import WorkflowType

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _meta(**overrides: object) -> QueueMeta:
    fields: dict[str, object] = {
        'workflow_type': WorkflowType.SLA_BREACH,
        'payload': {'entityId': 'wo-9'},
        'attempts': 1,
        'max_attempts': 5,
        'next_attempt_at': T0,
    }
    fields.update(overrides)
    return QueueMeta(**fields)  # type: ignore[arg-type]


@pytest.mark.unit
class TestEncodeDecode:
    def test_decoded_meta_matches_original(self) -> None:
        meta = _meta()
        decoded = decode_meta(encode_meta(meta))
        assert decoded == meta

    def test_encoded_form_carries_version(self) -> None:
        data = json.loads(encode_meta(_meta()))
        assert data['version'] == QUEUE_META_VERSION
        assert data['workflow_type'] == 'SLA_BREACH'

    def test_naive_datetime_is_treated_as_utc(self) -> None:
        meta = _meta(next_attempt_at=datetime(2024, 3, 1, 12, 0))
        assert meta.next_attempt_at == T0


@pytest.mark.unit
class TestDecodeFailures:
    """Anything that is not current-version metadata is rejected, never guessed."""

    @pytest.mark.parametrize('raw', [None, ''])
    def test_missing(self, raw: str | None) -> None:
        with pytest.raises(MetadataDecodeError, match='missing'):
            decode_meta(raw)

    def test_not_json(self) -> None:
        with pytest.raises(MetadataDecodeError, match='not JSON'):
            decode_meta('{broken')

    def test_not_an_object(self) -> None:
        with pytest.raises(MetadataDecodeError, match='not an object'):
            decode_meta('[1, 2]')

    def test_unknown_version(self) -> None:
        data = json.loads(encode_meta(_meta()))
        data['version'] = 99
        with pytest.raises(MetadataDecodeError, match='version'):
            decode_meta(json.dumps(data))

    def test_unknown_field(self) -> None:
        data = json.loads(encode_meta(_meta()))
        data['surprise'] = True
        with pytest.raises(MetadataDecodeError, match='invalid'):
            decode_meta(json.dumps(data))

    def test_negative_attempts(self) -> None:
        data = json.loads(encode_meta(_meta()))
        data['attempts'] = -1
        with pytest.raises(MetadataDecodeError):
            decode_meta(json.dumps(data))

    def test_try_decode_returns_none(self) -> None:
        assert try_decode_meta('nope') is None
        assert try_decode_meta(encode_meta(_meta())) is not None

    def test_decode_error_maps_to_server_error(self) -> None:
        assert MetadataDecodeError.http_status == 500


@pytest.mark.unit
class TestSchedulingHelpers:
    def test_is_due_at_and_after_next_attempt(self) -> None:
        meta = _meta()
        assert meta.is_due(T0) is True
        assert meta.is_due(T0 + timedelta(seconds=1)) is True
        assert meta.is_due(T0 - timedelta(seconds=1)) is False

    def test_attempts_exhausted(self) -> None:
        assert _meta(attempts=5, max_attempts=5).attempts_exhausted is True
        assert _meta(attempts=4, max_attempts=5).attempts_exhausted is False
