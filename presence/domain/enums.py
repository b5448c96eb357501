"""
presence.domain.enums — All enumerations used across the package.

Keep this module import-clean (stdlib only).
"""

from enum import Enum


# ---------------------------------------------------------------------------
# Credential history
# ---------------------------------------------------------------------------

class CredentialStatus(str, Enum):
    ACTIVE  = "active"
    EXPIRED = "expired"
    STOPPED = "stopped"


class IssuerAction(str, Enum):
    """Lifecycle moments the issuer reports to its listeners."""
    STARTED = "started"
    ROTATED = "rotated"
    STOPPED = "stopped"


# ---------------------------------------------------------------------------
# Scan session
# ---------------------------------------------------------------------------

class ScanState(str, Enum):
    ACQUIRING_LOCATION = "acquiring_location"
    LOCATION_DENIED    = "location_denied"
    LOCATION_ERROR     = "location_error"
    POSITIONED         = "positioned"
    OUTSIDE            = "outside"
    INSIDE             = "inside"
    INSIDE_SETTLING    = "inside_settling"
    INSIDE_ARMED       = "inside_armed"
    CAPTURING          = "capturing"
    SUCCEEDED          = "succeeded"
    FAILED             = "failed"
    STOPPED            = "stopped"

    @property
    def is_inside(self) -> bool:
        return self in {
            ScanState.INSIDE,
            ScanState.INSIDE_SETTLING,
            ScanState.INSIDE_ARMED,
            ScanState.CAPTURING,
        }

    @property
    def is_terminal(self) -> bool:
        """States left only by an explicit reset, refresh or stop."""
        return self in {ScanState.SUCCEEDED, ScanState.FAILED, ScanState.STOPPED}


# ---------------------------------------------------------------------------
# Redemption
# ---------------------------------------------------------------------------

class RedemptionOutcome(str, Enum):
    RECORDED           = "recorded"
    ALREADY_REDEEMED   = "already_redeemed"
    MALFORMED          = "malformed_credential"
    EXPIRED            = "expired_credential"
    OUT_OF_RANGE       = "out_of_range"
    STORE_UNAVAILABLE  = "store_unavailable"

    @property
    def is_success(self) -> bool:
        """Conflict is an idempotent success from the holder's perspective."""
        return self in {RedemptionOutcome.RECORDED, RedemptionOutcome.ALREADY_REDEEMED}


# ---------------------------------------------------------------------------
# Event channel
# ---------------------------------------------------------------------------

class ChannelState(str, Enum):
    IDLE         = "idle"
    CONNECTING   = "connecting"
    CONNECTED    = "connected"
    DISCONNECTED = "disconnected"
    OFFLINE      = "offline"


class ChannelSignal(str, Enum):
    """Inputs to the channel state machine."""
    CONNECT     = "connect"       # manual connect() or a scheduled retry
    UNREACHABLE = "unreachable"   # health probe failed
    HANDSHAKE   = "handshake"     # transport opened
    DROPPED     = "dropped"       # transport failed or closed
    EXHAUSTED   = "exhausted"     # retry budget spent
    CLOSE       = "close"         # manual disconnect()


class PushEventType(str, Enum):
    """Closed set of push envelope discriminators."""
    CREDENTIAL_REDEEMED = "credential_redeemed"
    ISSUER_LIFECYCLE    = "issuer_lifecycle"
    SYSTEM_ALERT        = "system_alert"
    USER_SIGNIN         = "user_signin"
    NOTIFICATION        = "notification"


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class NotificationCategory(str, Enum):
    PRESENCE  = "presence"
    ISSUANCE  = "issuance"
    LIFECYCLE = "lifecycle"
    SYSTEM    = "system"
    SIGNIN    = "signin"


class NotificationPriority(str, Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2, "urgent": 3}[self.value]

    def at_least(self, other: "NotificationPriority") -> bool:
        return self.rank >= other.rank
