"""
Geo Presence — System-wide constants.

Tunable policy values live in ``presence.config``; the values here are fixed
by the wire format or by physics.
"""

# ---------------------------------------------------------------------------
# Geodesy
# ---------------------------------------------------------------------------

EARTH_RADIUS_M: float = 6_371_000.0

# ---------------------------------------------------------------------------
# Credential payload
# ---------------------------------------------------------------------------

# Discriminator carried by every attendance credential payload.
CREDENTIAL_TYPE: str = "attendance_check"
CREDENTIAL_ID_PREFIX: str = "attendance"

DEFAULT_TTL_SECONDS: int = 300
DEFAULT_HISTORY_SIZE: int = 10

# ---------------------------------------------------------------------------
# Scan session
# ---------------------------------------------------------------------------

DEFAULT_SETTLE_DELAY_SECONDS: float = 1.0
DEFAULT_FIX_TIMEOUT_SECONDS: float = 15.0

# ---------------------------------------------------------------------------
# Event channel
# ---------------------------------------------------------------------------

DEFAULT_BACKOFF_BASE_SECONDS: float = 2.0
DEFAULT_BACKOFF_MAX_SECONDS: float = 30.0
DEFAULT_MAX_ATTEMPTS: int = 10
DEFAULT_PROBE_TIMEOUT_SECONDS: float = 3.0

# ---------------------------------------------------------------------------
# Notification feed
# ---------------------------------------------------------------------------

DEFAULT_DEDUP_WINDOW_SECONDS: float = 5.0
DEFAULT_FEED_CAPACITY: int = 50
DEFAULT_RETENTION_DAYS: int = 7
