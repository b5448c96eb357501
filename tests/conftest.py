"""
Pytest configuration and shared fixtures.

Fixtures available to all tests:
  • clock             — settable UTC wall clock (``clock.advance(seconds)``)
  • ticker            — settable monotonic clock for settle-delay checks
  • boundary          — 50 m geofence around a fixed centre
  • make_fix(...)     — PositionFix factory, optionally offset north in metres
  • make_locator(...) — StaticLocationProvider at the same offsets
"""

from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Ensure the project root is on the path so all presence imports resolve.
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from presence.domain.models import Coordinate, GeofenceBoundary, PositionFix  # noqa: E402
from presence.metrics import reset_metrics_for_tests  # noqa: E402
from presence.scanning.location import StaticLocationProvider  # noqa: E402

# One degree of latitude is ~111.2 km on the 6,371 km sphere.
METERS_PER_DEGREE_LAT = 111_194.93

CENTER = Coordinate(5.298880, -2.001131)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeTicker:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics_for_tests()
    yield
    reset_metrics_for_tests()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 4, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def ticker():
    return FakeTicker()


@pytest.fixture
def boundary():
    return GeofenceBoundary(center=CENTER, radius_meters=50.0, name="Main Hall", tag="main_hall")


@pytest.fixture
def make_fix():
    def _factory(north_meters: float = 0.0, accuracy: float = 5.0) -> PositionFix:
        return PositionFix(
            Coordinate(CENTER.latitude + north_meters / METERS_PER_DEGREE_LAT, CENTER.longitude),
            accuracy_meters=accuracy,
        )
    return _factory


@pytest.fixture
def make_locator():
    def _factory(north_meters: float = 0.0, **kwargs) -> StaticLocationProvider:
        return StaticLocationProvider(
            CENTER.latitude + north_meters / METERS_PER_DEGREE_LAT, CENTER.longitude, **kwargs,
        )
    return _factory
