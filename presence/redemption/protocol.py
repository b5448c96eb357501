"""
presence.redemption.protocol — Validate a captured credential and redeem it.

Client-side validation here is a fast-fail convenience for the holder; the
store still performs the authoritative one-record-per-holder check, so the
two are deliberately kept separate.

Usage::

    protocol = RedemptionProtocol(store, boundary)
    result = await protocol.submit(raw_qr_text, "student-42", fix, distance)
    if result.success:
        ...
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from presence.api.schemas import FixPayload, RedemptionRequest
from presence.core.constants import CREDENTIAL_TYPE
from presence.core.utils import parse_timestamp, utc_now
from presence.credentials.issuer import verify_checksum
from presence.domain.enums import RedemptionOutcome
from presence.domain.models import AttendanceRecord, GeofenceBoundary, PositionFix
from presence.metrics import record_error, record_redemption
from presence.redemption.errors import (
    AlreadyRedeemed, ExpiredCredential, MalformedCredential, OutOfRange,
    RedemptionError, StoreUnavailable,
)
from presence.redemption.store import AttendanceStore

logger = logging.getLogger(__name__)

RawPayload = Union[str, bytes, Mapping[str, Any]]


# ---------------------------------------------------------------------------
# Client-side validation
# ---------------------------------------------------------------------------

def validate_structure(payload: RawPayload) -> Dict[str, Any]:
    """Decode ``payload`` and check it is an attendance credential.

    Requires the ``type`` discriminator, a non-empty ``id`` and a parseable
    ``expiresAt``.  A checksum that is present but does not match a parseable
    ``(id, issuedAt)`` is treated as malformed too.
    """
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedCredential("payload is not UTF-8") from exc
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise MalformedCredential("payload is not JSON") from exc
    if not isinstance(payload, Mapping):
        raise MalformedCredential("payload is not an object")

    data = dict(payload)
    if data.get("type") != CREDENTIAL_TYPE:
        raise MalformedCredential(f"unexpected type {data.get('type')!r}")
    credential_id = data.get("id")
    if not isinstance(credential_id, str) or not credential_id:
        raise MalformedCredential("missing id")
    if parse_timestamp(data.get("expiresAt")) is None:
        raise MalformedCredential("missing or invalid expiresAt")

    checksum = data.get("checksum")
    if checksum is not None:
        # The checksum covers issuedAt, so a damaged issuedAt fails it too
        issued_at = parse_timestamp(data.get("issuedAt"))
        if (
            issued_at is None
            or not isinstance(checksum, str)
            or not verify_checksum(credential_id, issued_at, checksum)
        ):
            raise MalformedCredential("checksum mismatch")
    return data


def validate_freshness(payload: Mapping[str, Any], now: datetime) -> None:
    expires_at = parse_timestamp(payload.get("expiresAt"))
    if expires_at is None:
        raise MalformedCredential("missing or invalid expiresAt")
    if now >= expires_at:
        raise ExpiredCredential(f"expired at {expires_at.isoformat()}")


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RedemptionResult:
    outcome: RedemptionOutcome
    message: str
    record: Optional[AttendanceRecord] = None
    retryable: bool = False
    credential_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome.is_success

    @classmethod
    def from_error(cls, exc: RedemptionError, credential_id: Optional[str] = None) -> "RedemptionResult":
        return cls(
            outcome=exc.outcome,
            message=exc.message,
            retryable=exc.retryable,
            credential_id=credential_id,
        )


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class RedemptionProtocol:
    """Validates and submits one redemption; never retries on its own."""

    def __init__(
        self,
        store: AttendanceStore,
        boundary: Optional[GeofenceBoundary] = None,
        *,
        timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._boundary = boundary
        self._timeout = timeout_seconds
        self._clock = clock

    async def redeem(
        self,
        credential: Mapping[str, Any],
        holder_identity: str,
        fix: PositionFix,
        distance: float,
    ) -> RedemptionResult:
        """Submit a validated credential to the store.

        Safe to call again after ``StoreUnavailable``: the store keeps at most
        one record per holder and answers a repeat with a conflict, which is
        raised here as ``AlreadyRedeemed``.
        """
        credential_id = str(credential.get("id", ""))
        if not holder_identity:
            raise MalformedCredential(
                "missing holder identity", message="Sign in before recording attendance.",
            )
        if self._boundary is not None and distance > self._boundary.radius_meters:
            raise OutOfRange(f"{distance:.1f}m from {self._boundary.name or 'boundary'}")

        try:
            request = RedemptionRequest(
                credential=dict(credential),
                holder_identity=holder_identity,
                fix=FixPayload(**fix.to_dict()),
                distance_meters=distance,
            )
        except ValidationError as exc:
            raise MalformedCredential(
                f"invalid redemption request: {exc.error_count()} error(s)",
            ) from exc
        try:
            resp = await asyncio.wait_for(self._store.record(request), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(f"store did not answer within {self._timeout:.0f}s") from exc

        if resp.conflict:
            raise AlreadyRedeemed(f"{credential_id} already redeemed by {holder_identity}")
        if not resp.success:
            raise StoreUnavailable("store declined the redemption")

        record = AttendanceRecord(
            credential_id=credential_id,
            holder_identity=holder_identity,
            observed_distance_meters=(
                resp.distance_meters if resp.distance_meters is not None else distance
            ),
            recorded_at=resp.recorded_at or self._clock(),
        )
        return RedemptionResult(
            outcome=RedemptionOutcome.RECORDED,
            message="Attendance recorded successfully!",
            record=record,
            credential_id=credential_id,
        )

    async def submit(
        self,
        raw_payload: RawPayload,
        holder_identity: str,
        fix: PositionFix,
        distance: float,
    ) -> RedemptionResult:
        """Holder-facing entry point: every failure becomes a result."""
        credential_id: Optional[str] = None
        try:
            payload = validate_structure(raw_payload)
            credential_id = payload["id"]
            validate_freshness(payload, self._clock())
            result = await self.redeem(payload, holder_identity, fix, distance)
        except RedemptionError as exc:
            result = RedemptionResult.from_error(exc, credential_id)
            if isinstance(exc, StoreUnavailable):
                record_error()
                logger.warning("Redemption of %s failed (retryable): %s", credential_id, exc)
            else:
                logger.info("Redemption of %s rejected: %s", credential_id, exc)

        record_redemption(result.outcome.value)
        return result
