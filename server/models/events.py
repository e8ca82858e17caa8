"""
Event definitions emitted by the Jódete game engine.

Every committed mutation of a match produces one GameEvent. Events flow
through an outbox (see services/match_recorder.py) to the persistence
gateway, so gameplay never waits for storage.

Player references inside events use the player's stable token, which
survives reconnects, never the transport connection id.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class EventType(str, Enum):
    """All possible event types in a Jódete match."""

    # Lifecycle events
    PLAYER_JOINED = "player_joined"
    PLAYER_RECONNECTED = "player_reconnected"
    PLAYER_DISCONNECTED = "player_disconnected"
    PLAYER_LEFT = "player_left"
    MATCH_STARTED = "match_started"
    MATCH_FINISHED = "match_finished"
    MATCH_ABANDONED = "match_abandoned"
    MATCH_RESET = "match_reset"

    # Gameplay events
    CARD_PLAYED = "card_played"
    CARD_DRAWN = "card_drawn"
    PENALTY = "penalty"
    LAST_CARD_DECLARED = "last_card_declared"
    JODETE_CALLED = "jodete_called"


# Events that end up as rows in the match action history
ACTION_EVENTS = frozenset({
    EventType.MATCH_STARTED,
    EventType.CARD_PLAYED,
    EventType.CARD_DRAWN,
    EventType.PENALTY,
    EventType.LAST_CARD_DECLARED,
    EventType.JODETE_CALLED,
    EventType.MATCH_FINISHED,
})


@dataclass
class GameEvent:
    """
    Immutable record of something that happened in a room.

    Attributes:
        event_type: The type of event (from EventType enum).
        room_id: Room the event belongs to.
        match_key: Id of the match run (None while the room is in the lobby).
        sequence_num: Monotonically increasing sequence number within the room.
        timestamp: When the event occurred (UTC).
        player_id: Stable token of the player who triggered the event.
        data: Event-specific payload data.
    """

    event_type: EventType
    room_id: str
    sequence_num: int
    match_key: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    player_id: Optional[str] = None
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Serialize event to dictionary for JSON storage."""
        return {
            "event_type": self.event_type.value,
            "room_id": self.room_id,
            "match_key": self.match_key,
            "sequence_num": self.sequence_num,
            "timestamp": self.timestamp.isoformat(),
            "player_id": self.player_id,
            "data": self.data,
        }

