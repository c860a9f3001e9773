"""Shared default constants for the propflow engine."""

# Retry backoff: min(ceiling, base * 2^(attempts - 1)).
DEFAULT_BACKOFF_BASE_MS: int = 15_000  # 15 seconds
DEFAULT_BACKOFF_CEILING_MS: int = 300_000  # 5 minutes

# Attempts granted to a run when the producer does not specify one.
DEFAULT_MAX_ATTEMPTS: int = 5

# Runs claimed per batch invocation and QUEUED rows scanned per claim.
DEFAULT_BATCH_SIZE: int = 20
MAX_BATCH_SIZE: int = 100
DEFAULT_CLAIM_SCAN_LIMIT: int = 30

# Wall-clock budget for a single handler invocation.
DEFAULT_HANDLER_TIMEOUT_SECONDS: float = 300.0

# Safety governor defaults, used when no state row exists yet.
DEFAULT_FAILURE_THRESHOLD_PCT: int = 40
DEFAULT_CRITICAL_OPEN_THRESHOLD: int = 5
DEFAULT_WINDOW_HOURS: int = 6
DEFAULT_AUTO_PAUSE_MINUTES: int = 60
GOVERNOR_SCOPE_KEY: str = 'global'

# Action approval: a claim older than this may be taken over.
DEFAULT_STALE_CLAIM_SECONDS: int = 120
DEFAULT_ACTION_LOCK_TTL_MS: int = 900_000  # 15 minutes

# Status streaming.
DEFAULT_STREAM_POLL_SECONDS: float = 2.0
DEFAULT_STREAM_MAX_SECONDS: float = 300.0

# Inbound webhook signature tolerance.
DEFAULT_SIGNATURE_MAX_SKEW_SECONDS: int = 300

# Listing endpoints clamp to this page size.
MAX_LIST_LIMIT: int = 100
