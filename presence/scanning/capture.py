"""
Capture device boundary and its single-owner latch.

Only one scan session may hold the camera at a time.  A second session is
refused outright rather than queued: only one session is meaningful per
holder device.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)

FrameCallback = Callable[[Union[str, bytes]], None]


class DeviceBusy(Exception):
    """Another scan session already owns the capture device."""


class CaptureLatch:
    def __init__(self) -> None:
        self._owner: Optional[object] = None

    @property
    def held(self) -> bool:
        return self._owner is not None

    def acquire(self, owner: object) -> bool:
        if self._owner is not None and self._owner is not owner:
            return False
        self._owner = owner
        return True

    def release(self, owner: object) -> None:
        if self._owner is owner:
            self._owner = None


class CaptureDevice(ABC):
    """Camera-like source of decoded QR payloads.

    While armed the device calls ``on_frame`` with each decoded payload; it
    must stop polling the hardware as soon as ``disarm`` is called.
    """

    @abstractmethod
    def arm(self, on_frame: FrameCallback) -> None:
        ...

    @abstractmethod
    def disarm(self) -> None:
        ...


class ManualCaptureDevice(CaptureDevice):
    """Device fed by hand (tests, CLI input, an external decoder process)."""

    def __init__(self) -> None:
        self._callback: Optional[FrameCallback] = None
        self.arm_count = 0

    @property
    def armed(self) -> bool:
        return self._callback is not None

    def arm(self, on_frame: FrameCallback) -> None:
        self._callback = on_frame
        self.arm_count += 1

    def disarm(self) -> None:
        self._callback = None

    def feed(self, payload: Union[str, bytes]) -> bool:
        """Deliver a decoded payload. Returns False when not armed."""
        if self._callback is None:
            logger.debug("Frame dropped: capture device not armed")
            return False
        self._callback(payload)
        return True
