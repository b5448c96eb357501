"""
presence.realtime — Push-event channel and its transport.
"""

from presence.realtime.channel import EventChannel  # noqa: F401
from presence.realtime.transport import (  # noqa: F401
    HealthProbe,
    HttpHealthProbe,
    HttpStreamTransport,
    Transport,
    TransportError,
)
