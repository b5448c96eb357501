"""
Centralized configuration for Geo Presence.
All settings come from environment variables for 12-factor deployment.

Components never import this module directly; ``presence.context`` reads it
once and injects the values into constructors.
"""

import os


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "on"}


# ---------------------------------------------------------------------------
# Server / process
# ---------------------------------------------------------------------------
PORT = int(os.environ.get("PORT", "8001"))
RUN_MODE = os.environ.get("RUN_MODE", "station").strip().lower()
STORE_URL = os.environ.get("STORE_URL", "http://localhost:8001").rstrip("/")
HEALTH_PATH = os.environ.get("HEALTH_PATH", "/api/health")
EVENTS_PATH = os.environ.get("EVENTS_PATH", "/api/events")

# ---------------------------------------------------------------------------
# Credential issuance
# ---------------------------------------------------------------------------
CREDENTIAL_TTL_SECONDS = int(os.environ.get("CREDENTIAL_TTL_SECONDS", "300"))
ISSUER_HISTORY_SIZE = int(os.environ.get("ISSUER_HISTORY_SIZE", "10"))
ISSUER_TICK_SECONDS = float(os.environ.get("ISSUER_TICK_SECONDS", "1"))
# Shown on the station display and carried in the payload for audit only.
ISSUER_IDENTITY = os.environ.get("ISSUER_IDENTITY", "admin")

# ---------------------------------------------------------------------------
# Geofence
# ---------------------------------------------------------------------------
GEOFENCE_LATITUDE = float(os.environ.get("GEOFENCE_LATITUDE", "5.298880"))
GEOFENCE_LONGITUDE = float(os.environ.get("GEOFENCE_LONGITUDE", "-2.001131"))
GEOFENCE_RADIUS_METERS = float(os.environ.get("GEOFENCE_RADIUS_METERS", "50"))
GEOFENCE_NAME = os.environ.get("GEOFENCE_NAME", "Authorized Attendance Area")
GEOFENCE_TAG = os.environ.get("GEOFENCE_TAG", "main_hall")

# ---------------------------------------------------------------------------
# Scan session
# ---------------------------------------------------------------------------
SETTLE_DELAY_MS = int(os.environ.get("SETTLE_DELAY_MS", "1000"))
FIX_TIMEOUT_SECONDS = float(os.environ.get("FIX_TIMEOUT_SECONDS", "15"))

# ---------------------------------------------------------------------------
# Redemption
# ---------------------------------------------------------------------------
REDEMPTION_TIMEOUT_SECONDS = float(os.environ.get("REDEMPTION_TIMEOUT_SECONDS", "10"))

# ---------------------------------------------------------------------------
# Event channel — reconnect policy
# ---------------------------------------------------------------------------
PROBE_TIMEOUT_SECONDS = float(os.environ.get("PROBE_TIMEOUT_SECONDS", "3"))
CHANNEL_BACKOFF_BASE_SECONDS = float(os.environ.get("CHANNEL_BACKOFF_BASE_SECONDS", "2"))
CHANNEL_BACKOFF_MAX_SECONDS = float(os.environ.get("CHANNEL_BACKOFF_MAX_SECONDS", "30"))
CHANNEL_MAX_ATTEMPTS = int(os.environ.get("CHANNEL_MAX_ATTEMPTS", "10"))

# ---------------------------------------------------------------------------
# Notification feed
# ---------------------------------------------------------------------------
NOTIFICATION_DEDUP_SECONDS = float(os.environ.get("NOTIFICATION_DEDUP_SECONDS", "5"))
NOTIFICATION_FEED_CAPACITY = int(os.environ.get("NOTIFICATION_FEED_CAPACITY", "50"))
NOTIFICATION_RETENTION_DAYS = int(os.environ.get("NOTIFICATION_RETENTION_DAYS", "7"))
# Forward important notifications to the store's /api/notifications.
ESCALATION_ENABLED = _env_bool("ESCALATION_ENABLED", True)

# ---------------------------------------------------------------------------
# Station runner
# ---------------------------------------------------------------------------
# When set, the current credential is rendered to this PNG on every rotation.
STATION_QR_PATH = os.environ.get("STATION_QR_PATH", "").strip()
STATION_RETRY_INITIAL_SECONDS = float(os.environ.get("STATION_RETRY_INITIAL_SECONDS", "1"))
STATION_RETRY_MAX_SECONDS = float(os.environ.get("STATION_RETRY_MAX_SECONDS", "60"))
RETENTION_SWEEP_SECONDS = float(os.environ.get("RETENTION_SWEEP_SECONDS", "3600"))
