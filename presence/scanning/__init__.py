"""Holder-side scanning: location, capture device and the scan session."""

from presence.scanning.capture import CaptureDevice, CaptureLatch, DeviceBusy, ManualCaptureDevice
from presence.scanning.location import (
    LocationPermissionDenied, LocationProvider, LocationUnavailable, StaticLocationProvider,
)
from presence.scanning.session import ScanSession

__all__ = [
    "CaptureDevice",
    "CaptureLatch",
    "DeviceBusy",
    "LocationPermissionDenied",
    "LocationProvider",
    "LocationUnavailable",
    "ManualCaptureDevice",
    "ScanSession",
    "StaticLocationProvider",
]
