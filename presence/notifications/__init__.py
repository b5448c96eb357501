"""
presence.notifications — Dashboard feed and upstream escalation.
"""

from presence.notifications.escalation import (  # noqa: F401
    CompositeEscalator,
    Escalator,
    HttpEscalator,
    NullEscalator,
    build_escalator,
)
from presence.notifications.router import NotificationRouter  # noqa: F401
