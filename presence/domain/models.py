"""
presence.domain.models — Canonical dataclass models.

These are the single source of truth for data structures flowing through the
package.  Layers that produce or consume these models must not invent their
own parallel types.  Wire shapes (camelCase keys) are produced here so that
the issuer display, the scanner and the store agree on one format.

Import pattern::

    from presence.domain.models import Credential, GeofenceBoundary
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from presence.core.constants import CREDENTIAL_TYPE
from presence.core.utils import parse_timestamp, to_iso, utc_now
from presence.domain.enums import (
    CredentialStatus, NotificationCategory, NotificationPriority, PushEventType,
)


# ---------------------------------------------------------------------------
# Geography
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass(frozen=True)
class PositionFix:
    """A single reading from the holder device's location provider."""
    coordinate: Coordinate
    accuracy_meters: Optional[float] = None
    observed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = self.coordinate.to_dict()
        if self.accuracy_meters is not None:
            d["accuracy"] = self.accuracy_meters
        return d


@dataclass(frozen=True)
class GeofenceBoundary:
    """Circular boundary used to gate capture. Static configuration."""
    center: Coordinate
    radius_meters: float
    name: str = ""
    tag: str = ""


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Credential:
    """
    One rotation window's right to redeem presence.

    Validity depends only on ``expires_at``; whether the credential has been
    displayed or scanned before is irrelevant here (the store enforces one
    record per holder).
    """
    id: str
    issued_at: datetime
    expires_at: datetime
    checksum: str
    boundary_tag: str
    issuer_identity: Optional[str] = None

    def is_valid_at(self, now: datetime) -> bool:
        return now < self.expires_at

    def to_payload(self) -> Dict[str, Any]:
        """Flat record rendered into the QR code."""
        payload: Dict[str, Any] = {
            "id": self.id,
            "type": CREDENTIAL_TYPE,
            "issuedAt": to_iso(self.issued_at),
            "expiresAt": to_iso(self.expires_at),
            "checksum": self.checksum,
            "boundaryTag": self.boundary_tag,
        }
        if self.issuer_identity:
            payload["issuer"] = self.issuer_identity
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), separators=(",", ":"))


@dataclass
class HistoryEntry:
    """Issuer history row; ``status`` moves active → expired | stopped."""
    credential: Credential
    generated_at: datetime
    status: CredentialStatus = CredentialStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.credential.to_payload(),
            "generatedAt": to_iso(self.generated_at),
            "status": self.status.value,
        }


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AttendanceRecord:
    """Created by the store on a successful redemption."""
    credential_id: str
    holder_identity: str
    observed_distance_meters: float
    recorded_at: datetime
    status: str = "present"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credentialId": self.credential_id,
            "holderIdentity": self.holder_identity,
            "observedDistanceMeters": round(self.observed_distance_meters, 2),
            "recordedAt": to_iso(self.recorded_at),
            "status": self.status,
        }


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

@dataclass
class NotificationRecord:
    id: str
    category: NotificationCategory
    priority: NotificationPriority
    message: str
    timestamp: datetime
    title: str = ""
    read: bool = False
    action_ref: Optional[str] = None
    persistent: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "message": self.message,
            "category": self.category.value,
            "priority": self.priority.value,
            "timestamp": to_iso(self.timestamp),
            "read": self.read,
            "actionRef": self.action_ref,
            "persistent": self.persistent,
        }


# ---------------------------------------------------------------------------
# Push events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PushEvent:
    """
    Envelope pushed by the store: ``{type, payload, timestamp}``.

    ``type`` is a closed variant; ``from_envelope`` returns ``None`` for
    anything it does not recognise so callers can ignore it.
    """
    type: PushEventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    @classmethod
    def from_envelope(cls, envelope: Any) -> Optional["PushEvent"]:
        if not isinstance(envelope, dict):
            return None
        try:
            kind = PushEventType(envelope.get("type"))
        except ValueError:
            return None
        payload = envelope.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        ts = parse_timestamp(envelope.get("timestamp")) or utc_now()
        return cls(type=kind, payload=payload, timestamp=ts)

    def to_envelope(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": to_iso(self.timestamp),
        }
