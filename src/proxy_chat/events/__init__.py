"""In-process publish/subscribe for transcript observers."""

from .bus import Event, EventBus
from .domain import (
    MESSAGE_DELTA,
    MESSAGE_FINALIZED,
    NOTIFICATION,
    TURN_STARTED,
)

__all__ = [
    "EventBus",
    "Event",
    "MESSAGE_DELTA",
    "MESSAGE_FINALIZED",
    "NOTIFICATION",
    "TURN_STARTED",
]
