"""Models package for the Jódete server."""

from .events import ACTION_EVENTS, EventType, GameEvent
from .actions import Action, parse_action

__all__ = [
    "ACTION_EVENTS",
    "EventType",
    "GameEvent",
    "Action",
    "parse_action",
]
