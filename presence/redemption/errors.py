"""
Redemption failure taxonomy.

Every error knows whether a manual retry could succeed and carries the
remediation message shown to the holder.
"""

from __future__ import annotations

from presence.domain.enums import RedemptionOutcome


class RedemptionError(Exception):
    outcome: RedemptionOutcome = RedemptionOutcome.STORE_UNAVAILABLE
    retryable: bool = False
    default_message: str = "Attendance could not be recorded."

    def __init__(self, detail: str = "", message: str = "") -> None:
        super().__init__(detail or self.default_message)
        self.detail = detail
        self.message = message or self.default_message


class MalformedCredential(RedemptionError):
    """Structural: not an attendance credential, or fields missing."""
    outcome = RedemptionOutcome.MALFORMED
    default_message = "Invalid QR code. Please scan a valid attendance QR code."


class ExpiredCredential(RedemptionError):
    """Temporal: the credential window has closed."""
    outcome = RedemptionOutcome.EXPIRED
    default_message = "This QR code has expired. Please scan a fresh code."


class OutOfRange(RedemptionError):
    outcome = RedemptionOutcome.OUT_OF_RANGE
    default_message = "You must be within the authorized area to record attendance."


class AlreadyRedeemed(RedemptionError):
    """Conflict: the store already holds a record for this holder."""
    outcome = RedemptionOutcome.ALREADY_REDEEMED
    default_message = "You are already marked present for this session."


class StoreUnavailable(RedemptionError):
    """Transport: network, backend or timeout failure."""
    outcome = RedemptionOutcome.STORE_UNAVAILABLE
    retryable = True
    default_message = "Failed to record attendance. Please try again."
