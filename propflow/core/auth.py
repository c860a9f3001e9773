# propflow/core/auth.py
"""Caller identity and machine-caller credential checks."""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass, field
from typing import Optional

from propflow.core.defaults import DEFAULT_SIGNATURE_MAX_SKEW_SECONDS
from propflow.core.errors import IntakeAuthError

SIGNATURE_PREFIX = 'sha256='


@dataclass(frozen=True)
class Principal:
    """
    An authenticated caller.

    ``manager_id`` owns approvable actions; ``property_ids`` is the set of
    properties the caller may see. Operators are unrestricted.
    """

    user_id: str
    manager_id: Optional[str] = None
    property_ids: frozenset[str] = field(default_factory=frozenset)
    is_operator: bool = False

    def can_access_property(self, property_id: Optional[str]) -> bool:
        if self.is_operator:
            return True
        return property_id is not None and property_id in self.property_ids

    @property
    def scope_filter(self) -> Optional[list[str]]:
        """Property filter for listings; None means unrestricted."""
        return None if self.is_operator else sorted(self.property_ids)


def verify_bearer(authorization: Optional[str], secret: Optional[str]) -> bool:
    if not secret or not authorization:
        return False
    scheme, _, token = authorization.partition(' ')
    return scheme.lower() == 'bearer' and hmac.compare_digest(token.strip(), secret)


def sign_payload(secret: str, timestamp: str, body: bytes) -> str:
    message = timestamp.encode() + b'.' + body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    *,
    secret: Optional[str],
    signature: Optional[str],
    timestamp: Optional[str],
    body: bytes,
    max_skew_seconds: int = DEFAULT_SIGNATURE_MAX_SKEW_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """HMAC-SHA256 over ``{timestamp}.{body}``, hex encoded, optionally ``sha256=``-prefixed."""
    if not secret or not signature or not timestamp:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - ts) > max_skew_seconds:
        return False
    provided = signature[len(SIGNATURE_PREFIX):] if signature.startswith(SIGNATURE_PREFIX) else signature
    expected = sign_payload(secret, timestamp, body)
    return hmac.compare_digest(provided.lower(), expected)


def require_machine_caller(
    *,
    authorization: Optional[str],
    cron_secret: Optional[str],
    webhook_secret: Optional[str] = None,
    signature: Optional[str] = None,
    timestamp: Optional[str] = None,
    body: bytes = b'',
    max_skew_seconds: int = DEFAULT_SIGNATURE_MAX_SKEW_SECONDS,
) -> None:
    """Accept a bearer secret or, when a webhook secret is configured, a valid signature."""
    if verify_bearer(authorization, cron_secret):
        return
    if webhook_secret and verify_webhook_signature(
        secret=webhook_secret,
        signature=signature,
        timestamp=timestamp,
        body=body,
        max_skew_seconds=max_skew_seconds,
    ):
        return
    raise IntakeAuthError('Unauthorized')
