"""
Geo Presence — wire schemas (Pydantic).

Shared by the HTTP store client and the reference FastAPI app so both sides
of ``/api/attendance/redeem`` agree on one contract.  Field names are
snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from presence.core.utils import utc_now


# ---------------------------------------------------------------------------
# Redemption
# ---------------------------------------------------------------------------

class FixPayload(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None


class RedemptionRequest(BaseModel):
    """Credential payload + holder identity + observed fix + computed distance."""

    credential: Dict[str, Any]
    holder_identity: str = Field(alias="holderIdentity", min_length=1)
    fix: FixPayload
    distance_meters: float = Field(alias="distanceMeters", ge=0)

    class Config:
        populate_by_name = True

    @property
    def credential_id(self) -> str:
        return str(self.credential.get("id", ""))


class RedemptionResponse(BaseModel):
    success: bool
    recorded_at: Optional[datetime] = Field(default=None, alias="recordedAt")
    conflict: bool = False
    distance_meters: Optional[float] = Field(default=None, alias="distanceMeters")

    class Config:
        populate_by_name = True


# ---------------------------------------------------------------------------
# Notifications (escalation target)
# ---------------------------------------------------------------------------

class NotificationIn(BaseModel):
    id: str
    title: str = ""
    message: str
    category: str
    priority: str
    timestamp: datetime
    read: bool = False
    action_ref: Optional[str] = Field(default=None, alias="actionRef")
    persistent: bool = False

    class Config:
        populate_by_name = True


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str
    version: str = "1.0.0"
    records: int = 0
    event_subscribers: int = 0
    redemptions_recorded: int = 0
    redemptions_conflicted: int = 0
    errors_last_hour: int = 0
    uptime_seconds: float = 0.0
    timestamp: datetime = Field(default_factory=utc_now)
