"""
Persistence boundary between the game server and durable storage.

Gameplay never depends on this layer. The server runs with NullGateway
when no database is configured, and MatchRecorder (services/match_recorder.py)
is the only caller of a real gateway.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class StatsDelta:
    """
    Lifetime stat increments for one player after one match.

    Attributes:
        won_match: Whether the player won.
        special_cards_played: Action cards played, keyed by card value.
        jodetes_called: Successful Jodete calls made.
        jodetes_received: Jodete penalties received.
        play_duration_seconds: Length of the match.
    """

    won_match: bool
    special_cards_played: dict[int, int] = field(default_factory=dict)
    jodetes_called: int = 0
    jodetes_received: int = 0
    play_duration_seconds: int = 0


class PersistenceGateway:
    """
    Storage interface for match history and player stats.

    Subclasses raise on failure. Callers are expected to catch and log.
    """

    async def save_match_snapshot(
        self,
        match_id: Optional[str],
        room_id: str,
        phase: str,
        cards_per_player: Optional[int],
        turn_count: int,
        state: dict,
        started_at: Optional[datetime],
        finished_at: Optional[datetime] = None,
        winner_identity: Optional[str] = None,
    ) -> Optional[str]:
        """
        Create or update a match record.

        Args:
            match_id: Durable id from a previous call, or None to create.
            room_id: Room the match was played in.
            phase: Match phase at snapshot time.
            cards_per_player: Hand size dealt.
            turn_count: Committed plays and draws so far.
            state: Full serialized match state.
            started_at: When the match started.
            finished_at: When it ended, if it has.
            winner_identity: Winner's authenticated account id, if any.

        Returns:
            The durable match id.
        """
        raise NotImplementedError

    async def append_action_record(
        self,
        match_id: str,
        action_type: str,
        player_ref: Optional[str],
        description: str,
        card_played: Optional[dict],
        turn_number: int,
    ) -> None:
        raise NotImplementedError

    async def update_player_lifetime_stats(
        self,
        identity: str,
        delta: StatsDelta,
    ) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class NullGateway(PersistenceGateway):
    """Gateway that stores nothing."""

    async def save_match_snapshot(self, match_id, room_id, *args, **kwargs) -> Optional[str]:
        return match_id

    async def append_action_record(self, *args, **kwargs) -> None:
        return None

    async def update_player_lifetime_stats(self, identity, delta) -> None:
        return None
