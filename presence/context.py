"""
presence.context — Explicit wiring of the running components.

There are no module-level singletons for the feed, the channel or the capture
latch: a ``PresenceContext`` owns them and is passed to whatever needs them.
``build_context()`` is the only place that reads ``presence.config``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from presence import config
from presence.credentials.issuer import CredentialIssuer
from presence.domain.models import Coordinate, GeofenceBoundary
from presence.notifications.escalation import Escalator, build_escalator
from presence.notifications.router import NotificationRouter
from presence.realtime.channel import EventChannel
from presence.realtime.transport import (
    HealthProbe, HttpHealthProbe, HttpStreamTransport, Transport,
)
from presence.redemption.protocol import RedemptionProtocol
from presence.redemption.store import AttendanceStore, HttpAttendanceStore
from presence.scanning.capture import CaptureDevice, CaptureLatch
from presence.scanning.location import LocationProvider
from presence.scanning.session import ScanSession

logger = logging.getLogger(__name__)


@dataclass
class PresenceContext:
    boundary: GeofenceBoundary
    issuer: CredentialIssuer
    store: AttendanceStore
    protocol: RedemptionProtocol
    router: NotificationRouter
    channel: EventChannel
    latch: CaptureLatch = field(default_factory=CaptureLatch)
    settle_delay_seconds: float = 1.0
    fix_timeout_seconds: float = 15.0

    def new_scan_session(
        self,
        holder_identity: str,
        locator: LocationProvider,
        device: CaptureDevice,
    ) -> ScanSession:
        """One session per scan attempt; all of them share the latch."""
        return ScanSession(
            self.boundary,
            holder_identity,
            locator,
            device,
            self.protocol,
            latch=self.latch,
            settle_delay_seconds=self.settle_delay_seconds,
            fix_timeout_seconds=self.fix_timeout_seconds,
        )

    async def aclose(self) -> None:
        """Release the network clients held by the channel and the store."""
        await self.channel.aclose()
        await self.store.close()


def boundary_from_config() -> GeofenceBoundary:
    return GeofenceBoundary(
        center=Coordinate(config.GEOFENCE_LATITUDE, config.GEOFENCE_LONGITUDE),
        radius_meters=config.GEOFENCE_RADIUS_METERS,
        name=config.GEOFENCE_NAME,
        tag=config.GEOFENCE_TAG,
    )


def build_context(
    store: Optional[AttendanceStore] = None,
    transport: Optional[Transport] = None,
    probe: Optional[HealthProbe] = None,
    escalator: Optional[Escalator] = None,
) -> PresenceContext:
    """Assemble a context from environment configuration.

    Any collaborator may be injected instead (tests, embedding); the rest are
    built against ``STORE_URL``.
    """
    boundary = boundary_from_config()
    store = store or HttpAttendanceStore(
        config.STORE_URL, timeout_seconds=config.REDEMPTION_TIMEOUT_SECONDS,
    )
    issuer = CredentialIssuer(
        boundary.tag,
        config.ISSUER_IDENTITY or None,
        ttl_seconds=config.CREDENTIAL_TTL_SECONDS,
        history_size=config.ISSUER_HISTORY_SIZE,
    )
    protocol = RedemptionProtocol(
        store, boundary, timeout_seconds=config.REDEMPTION_TIMEOUT_SECONDS,
    )
    router = NotificationRouter(
        escalator or build_escalator(config.ESCALATION_ENABLED, config.STORE_URL),
        dedup_window_seconds=config.NOTIFICATION_DEDUP_SECONDS,
        capacity=config.NOTIFICATION_FEED_CAPACITY,
        retention_days=config.NOTIFICATION_RETENTION_DAYS,
    )
    channel = EventChannel(
        transport or HttpStreamTransport(config.STORE_URL, config.EVENTS_PATH),
        probe or HttpHealthProbe(
            config.STORE_URL, config.HEALTH_PATH, timeout_seconds=config.PROBE_TIMEOUT_SECONDS,
        ),
        backoff_base_seconds=config.CHANNEL_BACKOFF_BASE_SECONDS,
        backoff_max_seconds=config.CHANNEL_BACKOFF_MAX_SECONDS,
        max_attempts=config.CHANNEL_MAX_ATTEMPTS,
    )
    logger.info(
        "Context built: boundary=%s radius=%.0fm store=%s",
        boundary.tag, boundary.radius_meters, config.STORE_URL,
    )
    return PresenceContext(
        boundary=boundary,
        issuer=issuer,
        store=store,
        protocol=protocol,
        router=router,
        channel=channel,
        settle_delay_seconds=config.SETTLE_DELAY_MS / 1000.0,
        fix_timeout_seconds=config.FIX_TIMEOUT_SECONDS,
    )
