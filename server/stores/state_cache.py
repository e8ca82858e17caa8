"""
Redis-backed room snapshot cache.

Each room's full server-side state is written to Redis after every
committed change, so a restarted server can bring its rooms back and let
players reconnect with their tokens.

This is a CACHE, not the source of truth for history. Finished matches and
their actions live in PostgreSQL (see stores/match_store.py).

Key patterns:
- jodete:room:{room_id}     -> JSON (full room snapshot)
- jodete:rooms:active       -> Set (room ids with a snapshot)
"""

import json
import logging
from datetime import timedelta
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


def _decode(value) -> str:
    return value.decode() if isinstance(value, bytes) else value


class StateCache:
    """Redis-backed room snapshot cache."""

    # Key patterns
    ROOM_KEY = "jodete:room:{room_id}"
    ACTIVE_ROOMS_KEY = "jodete:rooms:active"

    # Rooms nobody touches for a day are gone
    ROOM_TTL = timedelta(hours=24)

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize state cache with Redis client.

        Args:
            redis_client: Async Redis client.
        """
        self.redis = redis_client

    @classmethod
    async def create(cls, redis_url: str) -> "StateCache":
        """
        Create a StateCache with a new Redis connection.

        Args:
            redis_url: Redis connection URL.

        Returns:
            Configured StateCache instance.
        """
        client = redis.from_url(redis_url, decode_responses=False)
        await client.ping()
        logger.info("StateCache connected to Redis")
        return cls(client)

    async def close(self) -> None:
        """Close the Redis connection."""
        await self.redis.close()

    async def save_room(self, room_id: str, snapshot: dict) -> None:
        """
        Store a room snapshot and mark the room active.

        Args:
            room_id: Room id.
            snapshot: Output of Game.to_snapshot().
        """
        pipe = self.redis.pipeline()
        pipe.set(
            self.ROOM_KEY.format(room_id=room_id),
            json.dumps(snapshot),
            ex=int(self.ROOM_TTL.total_seconds()),
        )
        pipe.sadd(self.ACTIVE_ROOMS_KEY, room_id)
        await pipe.execute()

    async def get_room(self, room_id: str) -> Optional[dict]:
        """
        Get a room snapshot.

        Returns:
            Snapshot dict, or None if not cached.
        """
        data = await self.redis.get(self.ROOM_KEY.format(room_id=room_id))
        if not data:
            return None
        return json.loads(_decode(data))

    async def delete_room(self, room_id: str) -> None:
        pipe = self.redis.pipeline()
        pipe.delete(self.ROOM_KEY.format(room_id=room_id))
        pipe.srem(self.ACTIVE_ROOMS_KEY, room_id)
        await pipe.execute()
        logger.debug(f"Deleted cached room {room_id}")

    async def get_active_rooms(self) -> set[str]:
        """Get all room ids marked active."""
        rooms = await self.redis.smembers(self.ACTIVE_ROOMS_KEY)
        return {_decode(r) for r in rooms}

    async def load_rooms(self) -> list[dict]:
        """
        Load every cached room snapshot.

        Ids in the active set whose snapshot has expired are dropped from
        the set.
        """
        snapshots = []
        for room_id in await self.get_active_rooms():
            snapshot = await self.get_room(room_id)
            if snapshot is None:
                await self.redis.srem(self.ACTIVE_ROOMS_KEY, room_id)
                continue
            snapshots.append(snapshot)
        return snapshots


# Global state cache instance (initialized on first use)
_state_cache: Optional[StateCache] = None


async def get_state_cache(redis_url: str) -> StateCache:
    """Get or create the global state cache instance."""
    global _state_cache
    if _state_cache is None:
        _state_cache = await StateCache.create(redis_url)
    return _state_cache


async def close_state_cache() -> None:
    """Close the global state cache connection."""
    global _state_cache
    if _state_cache is not None:
        await _state_cache.close()
        _state_cache = None
