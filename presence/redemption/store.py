"""
presence.redemption.store — Attendance store adapters.

The store is the authority on the one-record-per-(credential, holder) rule;
the redemption protocol only translates its answers.

Current implementations:
    HttpAttendanceStore      — POST to a remote store over httpx
    InMemoryAttendanceStore  — process-local store (reference app, tests)
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from presence.api.schemas import RedemptionRequest, RedemptionResponse
from presence.core.utils import parse_timestamp, utc_now
from presence.domain.models import AttendanceRecord, Coordinate, GeofenceBoundary
from presence.geo import distance_meters
from presence.redemption.errors import StoreUnavailable

logger = logging.getLogger(__name__)

RecordListener = Callable[[AttendanceRecord, RedemptionRequest], None]


@dataclass(frozen=True)
class StoreResponse:
    success: bool
    recorded_at: Optional[datetime] = None
    conflict: bool = False
    distance_meters: Optional[float] = None


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------

class AttendanceStore(ABC):
    """External attendance store boundary."""

    @abstractmethod
    async def record(self, request: RedemptionRequest) -> StoreResponse:
        """Create the attendance record, or report a conflict.

        Raises ``StoreUnavailable`` on transport or backend failure.
        """

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

class HttpAttendanceStore(AttendanceStore):
    """Talks to ``POST {base_url}/api/attendance/redeem``; 409 means conflict."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def record(self, request: RedemptionRequest) -> StoreResponse:
        client = await self._get_client()
        try:
            resp = await client.post(
                f"{self._base_url}/api/attendance/redeem",
                json=request.model_dump(by_alias=True, mode="json"),
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise StoreUnavailable(f"store request failed: {exc}") from exc

        if resp.status_code == 409:
            body = _safe_json(resp) or {}
            return StoreResponse(
                success=False,
                conflict=True,
                recorded_at=parse_timestamp(body.get("recordedAt")),
            )
        if resp.status_code >= 400:
            raise StoreUnavailable(f"store returned HTTP {resp.status_code}")

        body = _safe_json(resp)
        if body is None:
            raise StoreUnavailable("store returned a non-JSON body")
        try:
            parsed = RedemptionResponse.model_validate(body)
        except ValidationError as exc:
            raise StoreUnavailable(f"store returned an unexpected body: {exc}") from exc
        return StoreResponse(
            success=parsed.success,
            recorded_at=parsed.recorded_at,
            conflict=parsed.conflict,
            distance_meters=parsed.distance_meters,
        )


def _safe_json(resp: httpx.Response) -> Optional[dict]:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryAttendanceStore(AttendanceStore):
    """Keeps one record per ``(credential_id, holder_identity)``.

    When a boundary is given the store recomputes the distance from the
    reported fix instead of trusting the client's number.
    """

    def __init__(
        self,
        boundary: Optional[GeofenceBoundary] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._boundary = boundary
        self._clock = clock
        self._records: Dict[Tuple[str, str], AttendanceRecord] = {}
        self._lock = asyncio.Lock()
        self._listeners: List[RecordListener] = []

    def subscribe(self, listener: RecordListener) -> None:
        self._listeners.append(listener)

    @property
    def records(self) -> List[AttendanceRecord]:
        return sorted(self._records.values(), key=lambda r: r.recorded_at)

    async def record(self, request: RedemptionRequest) -> StoreResponse:
        key = (request.credential_id, request.holder_identity)
        async with self._lock:
            existing = self._records.get(key)
            if existing is not None:
                logger.info(
                    "Duplicate redemption ignored: credential=%s holder=%s",
                    key[0], key[1],
                )
                return StoreResponse(
                    success=False,
                    conflict=True,
                    recorded_at=existing.recorded_at,
                    distance_meters=existing.observed_distance_meters,
                )

            distance = request.distance_meters
            if self._boundary is not None:
                fix = Coordinate(request.fix.latitude, request.fix.longitude)
                distance = distance_meters(fix, self._boundary.center)

            rec = AttendanceRecord(
                credential_id=key[0],
                holder_identity=key[1],
                observed_distance_meters=distance,
                recorded_at=self._clock(),
            )
            self._records[key] = rec

        for listener in list(self._listeners):
            try:
                listener(rec, request)
            except Exception:
                logger.exception("Store listener failed for %s", rec.credential_id)

        return StoreResponse(
            success=True,
            recorded_at=rec.recorded_at,
            distance_meters=rec.observed_distance_meters,
        )
