"""
presence.scanning.session — Geofence-gated, single-shot credential capture.

State machine (one instance per scan attempt)::

    ACQUIRING_LOCATION ─┬─> LOCATION_DENIED
                        ├─> LOCATION_ERROR
                        └─> POSITIONED ─┬─> OUTSIDE
                                        └─> INSIDE ─> INSIDE_SETTLING ─> INSIDE_ARMED
                                                 ─> CAPTURING ─┬─> SUCCEEDED
                                                               └─> FAILED

``Refresh`` returns any state to ACQUIRING_LOCATION, ``Reset`` leaves a
terminal state, ``Stop`` releases the capture device for good.

Every input goes through ``handle(event)``.  Asynchronous continuations (fix
request, settle timer, redemption round-trip) carry the epoch they were
started in; when they complete the session checks the epoch and its current
state at that moment, so a callback that fires after the holder left the
boundary, or after a stop, is discarded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Set, Union

from presence.core.constants import DEFAULT_FIX_TIMEOUT_SECONDS, DEFAULT_SETTLE_DELAY_SECONDS
from presence.domain.enums import ScanState
from presence.domain.models import GeofenceBoundary, PositionFix
from presence.geo import distance_meters
from presence.redemption.errors import StoreUnavailable
from presence.redemption.protocol import RedemptionProtocol, RedemptionResult
from presence.scanning.capture import CaptureDevice, CaptureLatch, DeviceBusy
from presence.scanning.location import (
    LocationPermissionDenied, LocationProvider, LocationUnavailable,
)

logger = logging.getLogger(__name__)

TransitionListener = Callable[[ScanState, ScanState], None]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FixAcquired:
    fix: PositionFix
    epoch: Optional[int] = None     # None: unsolicited position update


@dataclass(frozen=True)
class FixFailed:
    denied: bool
    reason: str = ""
    epoch: Optional[int] = None


@dataclass(frozen=True)
class SettleElapsed:
    epoch: int


@dataclass(frozen=True)
class FrameCaptured:
    payload: Union[str, bytes]


@dataclass(frozen=True)
class RedemptionFinished:
    result: RedemptionResult
    epoch: int


@dataclass(frozen=True)
class Refresh:
    pass


@dataclass(frozen=True)
class Reset:
    pass


@dataclass(frozen=True)
class Stop:
    pass


ScanEvent = Union[
    FixAcquired, FixFailed, SettleElapsed, FrameCaptured,
    RedemptionFinished, Refresh, Reset, Stop,
]


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class ScanSession:
    def __init__(
        self,
        boundary: GeofenceBoundary,
        holder_identity: str,
        locator: LocationProvider,
        device: CaptureDevice,
        protocol: RedemptionProtocol,
        *,
        latch: CaptureLatch,
        settle_delay_seconds: float = DEFAULT_SETTLE_DELAY_SECONDS,
        fix_timeout_seconds: float = DEFAULT_FIX_TIMEOUT_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.boundary = boundary
        self.holder_identity = holder_identity
        self._locator = locator
        self._device = device
        self._protocol = protocol
        self._latch = latch
        self._settle_delay = max(0.0, float(settle_delay_seconds))
        self._fix_timeout = fix_timeout_seconds
        self._monotonic = monotonic

        self._state = ScanState.ACQUIRING_LOCATION
        self._epoch = 0
        self._armed = False
        self._inside_since: Optional[float] = None
        self._last_check_inside = False
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[TransitionListener] = []

        # Preserved across a manual retry so the holder need not re-position.
        self.last_fix: Optional[PositionFix] = None
        self.last_distance: Optional[float] = None
        self.last_result: Optional[RedemptionResult] = None
        self.error: Optional[str] = None

        self._handlers = {
            ScanState.ACQUIRING_LOCATION: self._on_acquiring,
            ScanState.OUTSIDE: self._on_positioned,
            ScanState.INSIDE_SETTLING: self._on_settling,
            ScanState.INSIDE_ARMED: self._on_armed,
            ScanState.CAPTURING: self._on_capturing,
            ScanState.SUCCEEDED: self._on_terminal,
            ScanState.FAILED: self._on_terminal,
        }

    # -- views --------------------------------------------------------------

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def epoch(self) -> int:
        return self._epoch

    def subscribe(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    # -- public driver ------------------------------------------------------

    async def start(self) -> ScanState:
        """Claim the capture device and request the first fix.

        A stopped session stays stopped; build a new one to scan again.
        """
        if self._state is ScanState.STOPPED:
            return self._state
        if not self._latch.acquire(self):
            raise DeviceBusy("another scan session holds the capture device")
        self._enter_acquiring()
        await self._request_fix(self._epoch)
        return self._state

    async def refresh(self) -> ScanState:
        """Manual refresh: drop everything and locate again."""
        self.handle(Refresh())
        if self._state is ScanState.ACQUIRING_LOCATION:
            await self._request_fix(self._epoch)
        return self._state

    def reset(self) -> ScanState:
        return self.handle(Reset())

    def stop(self) -> None:
        self.handle(Stop())

    def frame_captured(self, payload: Union[str, bytes]) -> None:
        """Capture device callback."""
        self.handle(FrameCaptured(payload))

    def position_update(self, fix: PositionFix) -> None:
        """Unsolicited fix from a position watch; re-checks the boundary."""
        self.handle(FixAcquired(fix))

    async def drain(self) -> None:
        """Wait for in-flight timers and submissions (tests, shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- state machine ------------------------------------------------------

    def handle(self, event: ScanEvent) -> ScanState:
        if self._state is ScanState.STOPPED:
            return self._state
        if isinstance(event, Stop):
            self._stop()
        elif isinstance(event, Refresh):
            self._enter_acquiring()
        elif isinstance(event, (FixAcquired, FixFailed)) and event.epoch not in (None, self._epoch):
            logger.debug("Discarding fix result from epoch %s", event.epoch)
        else:
            handler = self._handlers.get(self._state)
            if handler is None:
                logger.debug("Ignoring %s in %s", type(event).__name__, self._state.value)
            else:
                handler(event)
        return self._state

    def _on_acquiring(self, event: ScanEvent) -> None:
        if isinstance(event, FixAcquired):
            self._apply_fix(event.fix)
        elif isinstance(event, FixFailed):
            self.error = event.reason
            self._transition(ScanState.LOCATION_DENIED if event.denied else ScanState.LOCATION_ERROR)

    def _on_positioned(self, event: ScanEvent) -> None:
        if isinstance(event, FixAcquired):
            self._apply_fix(event.fix)

    def _on_settling(self, event: ScanEvent) -> None:
        if isinstance(event, FixAcquired):
            self._apply_fix(event.fix)
        elif isinstance(event, SettleElapsed) and event.epoch == self._epoch:
            if self._settled():
                self._transition(ScanState.INSIDE_ARMED)
            else:
                self._spawn(self._settle_timer(self._epoch, self._settle_remaining()))
        elif isinstance(event, FrameCaptured):
            logger.debug("Frame ignored while settling")

    def _on_armed(self, event: ScanEvent) -> None:
        if isinstance(event, FixAcquired):
            self._apply_fix(event.fix)
        elif isinstance(event, FrameCaptured):
            # Re-validated here, at execution time, not when the frame was queued
            if not (self._armed and self._last_check_inside and self._settled()):
                return
            if not event.payload:
                return
            self._transition(ScanState.CAPTURING)
            self._spawn(self._redeem(event.payload, self._epoch))

    def _on_capturing(self, event: ScanEvent) -> None:
        if isinstance(event, RedemptionFinished) and event.epoch == self._epoch:
            self.last_result = event.result
            self._transition(ScanState.SUCCEEDED if event.result.success else ScanState.FAILED)
        elif isinstance(event, FixAcquired):
            # The payload is already submitted; only remember where we are.
            self._record_fix(event.fix)

    def _on_terminal(self, event: ScanEvent) -> None:
        if isinstance(event, FixAcquired):
            self._record_fix(event.fix)
        elif isinstance(event, Reset):
            if self._last_check_inside:
                self._enter_settling()
            else:
                self._epoch += 1
                self._transition(ScanState.OUTSIDE)

    # -- transitions --------------------------------------------------------

    def _transition(self, new_state: ScanState) -> None:
        old = self._state
        if old is new_state:
            return
        if old is ScanState.INSIDE_ARMED:
            self._disarm()
        self._state = new_state
        if new_state is ScanState.INSIDE_ARMED:
            self._arm()
        logger.debug("Scan session %s -> %s", old.value, new_state.value)
        for listener in list(self._listeners):
            try:
                listener(old, new_state)
            except Exception:
                logger.exception("Scan transition listener failed")

    def _enter_acquiring(self) -> None:
        self._epoch += 1
        self._disarm()
        self._inside_since = None
        self.error = None
        self._transition(ScanState.ACQUIRING_LOCATION)

    def _enter_settling(self) -> None:
        self._epoch += 1
        self._inside_since = self._monotonic()
        self._transition(ScanState.INSIDE_SETTLING)
        self._spawn(self._settle_timer(self._epoch, self._settle_delay))

    def _record_fix(self, fix: PositionFix) -> bool:
        distance = distance_meters(fix.coordinate, self.boundary.center)
        self.last_fix = fix
        self.last_distance = distance
        self._last_check_inside = distance <= self.boundary.radius_meters
        return self._last_check_inside

    def _apply_fix(self, fix: PositionFix) -> None:
        was_inside = self._state.is_inside
        inside = self._record_fix(fix)

        if self._state is ScanState.ACQUIRING_LOCATION:
            self._transition(ScanState.POSITIONED)

        if not inside:
            if self._state is not ScanState.OUTSIDE:
                self._epoch += 1
                self._inside_since = None
                self._transition(ScanState.OUTSIDE)
            return

        if not was_inside:
            self._transition(ScanState.INSIDE)
            self._enter_settling()

    def _settled(self) -> bool:
        if self._inside_since is None:
            return False
        return self._monotonic() - self._inside_since >= self._settle_delay

    def _settle_remaining(self) -> float:
        if self._inside_since is None:
            return self._settle_delay
        return max(0.0, self._settle_delay - (self._monotonic() - self._inside_since))

    def _arm(self) -> None:
        if self._armed:
            return
        self._armed = True
        self._device.arm(self.frame_captured)

    def _disarm(self) -> None:
        # Single shot: the device is released before any redemption starts
        if not self._armed:
            return
        self._armed = False
        self._device.disarm()

    def _stop(self) -> None:
        self._epoch += 1
        self._disarm()
        self._transition(ScanState.STOPPED)
        self._latch.release(self)
        for task in list(self._tasks):
            task.cancel()

    # -- async continuations ------------------------------------------------

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _request_fix(self, epoch: int) -> None:
        try:
            fix = await asyncio.wait_for(
                self._locator.current_fix(high_accuracy=True, max_age_seconds=0.0),
                timeout=self._fix_timeout,
            )
        except LocationPermissionDenied as exc:
            self.handle(FixFailed(denied=True, reason=str(exc) or "Location access was denied.", epoch=epoch))
        except asyncio.TimeoutError:
            self.handle(FixFailed(denied=False, reason="Location request timed out.", epoch=epoch))
        except LocationUnavailable as exc:
            self.handle(FixFailed(denied=False, reason=str(exc) or "Location unavailable.", epoch=epoch))
        else:
            self.handle(FixAcquired(fix, epoch=epoch))

    async def _settle_timer(self, epoch: int, delay: float) -> None:
        await asyncio.sleep(delay)
        self.handle(SettleElapsed(epoch))

    async def _redeem(self, payload: Union[str, bytes], epoch: int) -> None:
        fix = self.last_fix
        distance = self.last_distance
        if fix is None or distance is None:
            return
        try:
            result = await self._protocol.submit(payload, self.holder_identity, fix, distance)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Redemption submit crashed")
            result = RedemptionResult.from_error(StoreUnavailable(str(exc)))
        self.handle(RedemptionFinished(result, epoch))
