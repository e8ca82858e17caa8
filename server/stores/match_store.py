"""
PostgreSQL-backed match history and player stats.

Tables:
- matches: one row per match run, with the latest serialized state
- match_actions: append-only log of plays, draws, penalties and calls
- player_stats: lifetime counters per authenticated account
"""

import json
import logging
from datetime import datetime
from typing import Optional

import asyncpg

from services.persistence import PersistenceGateway, StatsDelta

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
-- One row per match run
CREATE TABLE IF NOT EXISTS matches (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    room_id VARCHAR(64) NOT NULL,
    phase VARCHAR(20) NOT NULL,           -- playing, finished, abandoned
    winner_id VARCHAR(64),
    cards_per_player INT,
    total_turns INT DEFAULT 0,
    game_state JSONB,
    started_at TIMESTAMPTZ,
    finished_at TIMESTAMPTZ,
    duration_seconds INT,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

-- Append-only action history
CREATE TABLE IF NOT EXISTS match_actions (
    id BIGSERIAL PRIMARY KEY,
    match_id UUID NOT NULL REFERENCES matches(id) ON DELETE CASCADE,
    action_type VARCHAR(20) NOT NULL,     -- start, play, draw, penalty, declare, jodete, finish
    player_ref VARCHAR(64),
    description TEXT NOT NULL,
    card_played JSONB,
    turn_number INT NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

-- Lifetime counters per account
CREATE TABLE IF NOT EXISTS player_stats (
    user_id VARCHAR(64) PRIMARY KEY,
    games_played INT DEFAULT 0,
    games_won INT DEFAULT 0,
    games_lost INT DEFAULT 0,
    special_cards_2 INT DEFAULT 0,
    special_cards_4 INT DEFAULT 0,
    special_cards_10 INT DEFAULT 0,
    special_cards_11 INT DEFAULT 0,
    special_cards_12 INT DEFAULT 0,
    jodetes_called INT DEFAULT 0,
    jodetes_received INT DEFAULT 0,
    total_play_seconds INT DEFAULT 0,
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_matches_room ON matches(room_id);
CREATE INDEX IF NOT EXISTS idx_matches_finished ON matches(finished_at) WHERE phase = 'finished';
CREATE INDEX IF NOT EXISTS idx_match_actions_match ON match_actions(match_id, id);
CREATE INDEX IF NOT EXISTS idx_player_stats_won ON player_stats(games_won DESC);
"""


class MatchStore(PersistenceGateway):
    """
    PostgreSQL persistence gateway.

    Uses asyncpg for async database access.
    """

    def __init__(self, pool: asyncpg.Pool):
        """
        Initialize match store with connection pool.

        Args:
            pool: asyncpg connection pool.
        """
        self.pool = pool

    @classmethod
    async def create(cls, postgres_url: str) -> "MatchStore":
        """
        Create a MatchStore with a new connection pool.

        Args:
            postgres_url: PostgreSQL connection URL.

        Returns:
            Configured MatchStore instance.
        """
        pool = await asyncpg.create_pool(postgres_url, min_size=2, max_size=10)
        store = cls(pool)
        await store.initialize_schema()
        return store

    async def initialize_schema(self) -> None:
        """Create database tables if they don't exist."""
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Match store schema initialized")

    async def close(self) -> None:
        """Close the connection pool."""
        await self.pool.close()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

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
        duration = None
        if started_at and finished_at:
            duration = int((finished_at - started_at).total_seconds())

        async with self.pool.acquire() as conn:
            if match_id is None:
                row = await conn.fetchrow(
                    """
                    INSERT INTO matches (room_id, phase, winner_id, cards_per_player,
                                         total_turns, game_state, started_at,
                                         finished_at, duration_seconds)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    RETURNING id
                    """,
                    room_id,
                    phase,
                    winner_identity,
                    cards_per_player,
                    turn_count,
                    json.dumps(state),
                    started_at,
                    finished_at,
                    duration,
                )
                return str(row["id"])

            await conn.execute(
                """
                UPDATE matches
                SET phase = $2,
                    winner_id = COALESCE($3, winner_id),
                    cards_per_player = $4,
                    total_turns = $5,
                    game_state = $6,
                    finished_at = $7,
                    duration_seconds = $8,
                    updated_at = NOW()
                WHERE id = $1
                """,
                match_id,
                phase,
                winner_identity,
                cards_per_player,
                turn_count,
                json.dumps(state),
                finished_at,
                duration,
            )
            return match_id

    async def append_action_record(
        self,
        match_id: str,
        action_type: str,
        player_ref: Optional[str],
        description: str,
        card_played: Optional[dict],
        turn_number: int,
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO match_actions (match_id, action_type, player_ref,
                                           description, card_played, turn_number)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                match_id,
                action_type,
                player_ref,
                description,
                json.dumps(card_played) if card_played else None,
                turn_number,
            )

    async def update_player_lifetime_stats(self, identity: str, delta: StatsDelta) -> None:
        special = delta.special_cards_played
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO player_stats (user_id, games_played, games_won, games_lost,
                                          special_cards_2, special_cards_4, special_cards_10,
                                          special_cards_11, special_cards_12,
                                          jodetes_called, jodetes_received, total_play_seconds)
                VALUES ($1, 1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                ON CONFLICT (user_id) DO UPDATE SET
                    games_played = player_stats.games_played + 1,
                    games_won = player_stats.games_won + EXCLUDED.games_won,
                    games_lost = player_stats.games_lost + EXCLUDED.games_lost,
                    special_cards_2 = player_stats.special_cards_2 + EXCLUDED.special_cards_2,
                    special_cards_4 = player_stats.special_cards_4 + EXCLUDED.special_cards_4,
                    special_cards_10 = player_stats.special_cards_10 + EXCLUDED.special_cards_10,
                    special_cards_11 = player_stats.special_cards_11 + EXCLUDED.special_cards_11,
                    special_cards_12 = player_stats.special_cards_12 + EXCLUDED.special_cards_12,
                    jodetes_called = player_stats.jodetes_called + EXCLUDED.jodetes_called,
                    jodetes_received = player_stats.jodetes_received + EXCLUDED.jodetes_received,
                    total_play_seconds = player_stats.total_play_seconds + EXCLUDED.total_play_seconds,
                    updated_at = NOW()
                """,
                identity,
                1 if delta.won_match else 0,
                0 if delta.won_match else 1,
                special.get(2, 0),
                special.get(4, 0),
                special.get(10, 0),
                special.get(11, 0),
                special.get(12, 0),
                delta.jodetes_called,
                delta.jodetes_received,
                delta.play_duration_seconds,
            )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_player_stats(self, identity: str) -> Optional[dict]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM player_stats WHERE user_id = $1",
                identity,
            )
            return dict(row) if row else None


# Global match store instance (initialized on first use)
_match_store: Optional[MatchStore] = None


async def get_match_store(postgres_url: str) -> MatchStore:
    """Get or create the global match store instance."""
    global _match_store
    if _match_store is None:
        _match_store = await MatchStore.create(postgres_url)
    return _match_store


async def close_match_store() -> None:
    """Close the global match store connection pool."""
    global _match_store
    if _match_store is not None:
        await _match_store.close()
        _match_store = None
