"""
Holder-device location boundary.

A provider answers one-shot position requests.  The scan session always asks
for a fresh high-accuracy fix (``max_age_seconds=0``) and bounds the wait
with its own timeout.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from presence.domain.models import Coordinate, PositionFix


class LocationPermissionDenied(Exception):
    """The holder refused location access."""


class LocationUnavailable(Exception):
    """No fix could be produced (no signal, hardware error)."""


class LocationProvider(ABC):
    @abstractmethod
    async def current_fix(
        self,
        *,
        high_accuracy: bool = True,
        max_age_seconds: float = 0.0,
    ) -> PositionFix:
        """Return a position fix or raise one of the location errors."""


class StaticLocationProvider(LocationProvider):
    """Always reports the same coordinate.

    Used for kiosk deployments pinned to one spot and for demos; set
    ``denied`` to simulate a refused permission prompt.
    """

    def __init__(
        self,
        latitude: float,
        longitude: float,
        accuracy_meters: Optional[float] = 5.0,
        *,
        denied: bool = False,
    ) -> None:
        self._coordinate = Coordinate(latitude, longitude)
        self._accuracy = accuracy_meters
        self.denied = denied

    def move_to(self, latitude: float, longitude: float) -> None:
        self._coordinate = Coordinate(latitude, longitude)

    async def current_fix(
        self,
        *,
        high_accuracy: bool = True,
        max_age_seconds: float = 0.0,
    ) -> PositionFix:
        if self.denied:
            raise LocationPermissionDenied("location access was denied")
        return PositionFix(self._coordinate, accuracy_meters=self._accuracy)
