"""
Unit tests for presence.scanning.session.

Tests cover:
  • Location outcomes (inside, outside, denied, error, timeout)
  • Settle delay gating of the capture device
  • Single-shot capture and redemption results
  • Frames arriving after the holder left the boundary
  • Reset / refresh / stop and the capture latch
"""

from __future__ import annotations

import asyncio

import pytest

from presence.credentials.issuer import issue
from presence.domain.enums import RedemptionOutcome, ScanState
from presence.domain.models import Coordinate, GeofenceBoundary
from presence.redemption.protocol import RedemptionProtocol
from presence.redemption.store import InMemoryAttendanceStore
from presence.scanning import (
    CaptureLatch, DeviceBusy, LocationProvider, LocationUnavailable,
    ManualCaptureDevice, ScanSession, StaticLocationProvider,
)
from presence.scanning.session import SettleElapsed


@pytest.fixture
def store(boundary, clock):
    return InMemoryAttendanceStore(boundary, clock=clock)


@pytest.fixture
def protocol(store, boundary, clock):
    return RedemptionProtocol(store, boundary, timeout_seconds=1.0, clock=clock)


@pytest.fixture
def device():
    return ManualCaptureDevice()


@pytest.fixture
def latch():
    return CaptureLatch()


@pytest.fixture
def credential(clock):
    return issue("main_hall", "admin", clock())


@pytest.fixture
def make_session(boundary, protocol, device, latch, make_locator):
    def _factory(locator=None, settle=0.01, **kwargs) -> ScanSession:
        return ScanSession(
            boundary,
            "student-1",
            locator or make_locator(),
            device,
            protocol,
            latch=latch,
            settle_delay_seconds=settle,
            **kwargs,
        )
    return _factory


async def _armed(make_session):
    session = make_session()
    await session.start()
    await session.drain()
    assert session.state is ScanState.INSIDE_ARMED
    return session


# ---------------------------------------------------------------------------
# Location
# ---------------------------------------------------------------------------

class TestLocation:
    @pytest.mark.asyncio
    async def test_inside_settles_then_arms(self, make_session, device):
        session = make_session()
        seen = []
        session.subscribe(lambda old, new: seen.append(new))

        assert await session.start() is ScanState.INSIDE_SETTLING
        assert not device.armed
        await session.drain()

        assert session.state is ScanState.INSIDE_ARMED
        assert device.armed
        assert seen == [
            ScanState.POSITIONED, ScanState.INSIDE,
            ScanState.INSIDE_SETTLING, ScanState.INSIDE_ARMED,
        ]
        session.stop()

    @pytest.mark.asyncio
    async def test_same_point_is_inside_tiny_boundary(self, protocol, device, latch):
        tiny = GeofenceBoundary(Coordinate(5.636096, -0.196608), 5.0)
        session = ScanSession(
            tiny, "student-1", StaticLocationProvider(5.636096, -0.196608),
            device, protocol, latch=latch, settle_delay_seconds=0.01,
        )
        await session.start()
        assert session.last_distance == 0
        assert session.state.is_inside
        session.stop()

    @pytest.mark.asyncio
    async def test_outside_never_arms(self, make_session, make_locator, device):
        session = make_session(make_locator(80))
        assert await session.start() is ScanState.OUTSIDE
        await session.drain()
        assert device.arm_count == 0
        assert session.last_distance == pytest.approx(80, abs=0.1)

    @pytest.mark.asyncio
    async def test_denied(self, make_session, make_locator):
        session = make_session(make_locator(denied=True))
        assert await session.start() is ScanState.LOCATION_DENIED
        assert session.error

    @pytest.mark.asyncio
    async def test_unavailable(self, make_session):
        class NoSignal(LocationProvider):
            async def current_fix(self, *, high_accuracy=True, max_age_seconds=0.0):
                raise LocationUnavailable("no satellites")

        session = make_session(NoSignal())
        assert await session.start() is ScanState.LOCATION_ERROR
        assert session.error == "no satellites"

    @pytest.mark.asyncio
    async def test_timeout(self, make_session):
        class Hanging(LocationProvider):
            async def current_fix(self, *, high_accuracy=True, max_age_seconds=0.0):
                await asyncio.sleep(10)

        session = make_session(Hanging(), fix_timeout_seconds=0.05)
        assert await session.start() is ScanState.LOCATION_ERROR

    @pytest.mark.asyncio
    async def test_requests_fresh_high_accuracy_fix(self, make_session, make_fix):
        calls = []

        class Recording(LocationProvider):
            async def current_fix(self, *, high_accuracy=True, max_age_seconds=0.0):
                calls.append((high_accuracy, max_age_seconds))
                return make_fix()

        session = make_session(Recording())
        await session.start()
        assert calls == [(True, 0.0)]
        session.stop()


# ---------------------------------------------------------------------------
# Settle delay
# ---------------------------------------------------------------------------

class TestSettle:
    @pytest.mark.asyncio
    async def test_frames_ignored_while_settling(self, make_session, device, store, credential, ticker):
        session = make_session(settle=1.0, monotonic=ticker)
        await session.start()

        assert device.feed(credential.to_json()) is False
        session.frame_captured(credential.to_json())

        assert session.state is ScanState.INSIDE_SETTLING
        assert store.records == []
        session.stop()

    @pytest.mark.asyncio
    async def test_timer_alone_does_not_arm(self, make_session, device, ticker):
        session = make_session(settle=1.0, monotonic=ticker)
        await session.start()

        ticker.advance(0.5)
        session.handle(SettleElapsed(session.epoch))
        assert session.state is ScanState.INSIDE_SETTLING
        assert not device.armed

        ticker.advance(0.5)
        session.handle(SettleElapsed(session.epoch))
        assert session.state is ScanState.INSIDE_ARMED
        session.stop()

    @pytest.mark.asyncio
    async def test_stale_timer_discarded(self, make_session, device, ticker, make_fix):
        session = make_session(settle=1.0, monotonic=ticker)
        await session.start()
        old_epoch = session.epoch

        session.position_update(make_fix(80))
        session.position_update(make_fix(0))
        ticker.advance(5)
        session.handle(SettleElapsed(old_epoch))

        assert session.state is ScanState.INSIDE_SETTLING
        assert not device.armed
        session.stop()


# ---------------------------------------------------------------------------
# Capture and redemption
# ---------------------------------------------------------------------------

class TestCapture:
    @pytest.mark.asyncio
    async def test_success(self, make_session, device, store, credential):
        session = await _armed(make_session)

        assert device.feed(credential.to_json()) is True
        assert session.state is ScanState.CAPTURING
        assert not device.armed
        await session.drain()

        assert session.state is ScanState.SUCCEEDED
        assert session.last_result.outcome is RedemptionOutcome.RECORDED
        assert len(store.records) == 1

    @pytest.mark.asyncio
    async def test_single_shot(self, make_session, device, credential):
        await _armed(make_session)
        device.feed(credential.to_json())
        assert device.feed(credential.to_json()) is False

    @pytest.mark.asyncio
    async def test_empty_frame_ignored(self, make_session, device):
        session = await _armed(make_session)
        device.feed("")
        assert session.state is ScanState.INSIDE_ARMED
        session.stop()

    @pytest.mark.asyncio
    async def test_frame_after_leaving_is_discarded(self, make_session, device, store, credential, make_fix):
        session = await _armed(make_session)
        callback = session.frame_captured    # what the device was holding

        session.position_update(make_fix(80))
        assert session.state is ScanState.OUTSIDE
        assert not device.armed

        callback(credential.to_json())
        await session.drain()
        assert session.state is ScanState.OUTSIDE
        assert store.records == []

    @pytest.mark.asyncio
    async def test_expired_fails_and_reset_rearms(self, make_session, device, credential, clock):
        session = await _armed(make_session)
        clock.advance(301)
        device.feed(credential.to_json())
        await session.drain()

        assert session.state is ScanState.FAILED
        assert session.last_result.outcome is RedemptionOutcome.EXPIRED
        fix_before = session.last_fix

        assert session.reset() is ScanState.INSIDE_SETTLING
        assert session.last_fix is fix_before
        assert session.holder_identity == "student-1"
        await session.drain()
        assert session.state is ScanState.INSIDE_ARMED
        session.stop()

    @pytest.mark.asyncio
    async def test_reset_when_outside(self, make_session, device, credential, make_fix):
        session = await _armed(make_session)
        device.feed("garbage")
        await session.drain()
        assert session.state is ScanState.FAILED

        session.position_update(make_fix(80))
        assert session.state is ScanState.FAILED
        assert session.reset() is ScanState.OUTSIDE

    @pytest.mark.asyncio
    async def test_duplicate_scan_is_success(self, make_session, device, store, credential):
        session = await _armed(make_session)
        device.feed(credential.to_json())
        await session.drain()
        session.reset()
        await session.drain()
        device.feed(credential.to_json())
        await session.drain()

        assert session.state is ScanState.SUCCEEDED
        assert session.last_result.outcome is RedemptionOutcome.ALREADY_REDEEMED
        assert len(store.records) == 1


# ---------------------------------------------------------------------------
# Refresh, stop and the latch
# ---------------------------------------------------------------------------

class TestControl:
    @pytest.mark.asyncio
    async def test_refresh_relocates(self, boundary, protocol, device, latch, make_locator):
        locator = make_locator(80)
        session = ScanSession(boundary, "student-1", locator, device, protocol,
                              latch=latch, settle_delay_seconds=0.01)
        assert await session.start() is ScanState.OUTSIDE

        locator.move_to(boundary.center.latitude, boundary.center.longitude)
        assert await session.refresh() is ScanState.INSIDE_SETTLING
        await session.drain()
        assert session.state is ScanState.INSIDE_ARMED
        session.stop()

    @pytest.mark.asyncio
    async def test_refresh_disarms(self, make_session, device):
        session = await _armed(make_session)
        await session.refresh()
        await session.drain()
        assert device.arm_count == 2
        session.stop()

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self, make_session, device, latch):
        session = await _armed(make_session)
        session.stop()

        assert session.state is ScanState.STOPPED
        assert not device.armed
        assert not latch.held
        session.position_update(session.last_fix)
        assert session.state is ScanState.STOPPED

    @pytest.mark.asyncio
    async def test_stopped_session_cannot_restart(self, make_session, device, latch):
        session = await _armed(make_session)
        session.stop()

        assert await session.start() is ScanState.STOPPED
        await session.drain()

        assert session.state is ScanState.STOPPED
        assert not latch.held
        assert not device.armed
        assert device.arm_count == 1

    @pytest.mark.asyncio
    async def test_stop_during_capture_discards_result(self, make_session, device, store, credential):
        session = await _armed(make_session)
        device.feed(credential.to_json())
        session.stop()
        await session.drain()
        assert session.state is ScanState.STOPPED
        assert session.last_result is None

    @pytest.mark.asyncio
    async def test_second_session_is_refused(self, make_session):
        first = make_session()
        await first.start()
        second = make_session()
        with pytest.raises(DeviceBusy):
            await second.start()

        first.stop()
        assert await second.start() is ScanState.INSIDE_SETTLING
        second.stop()
