"""
Room management for multiplayer Jódete matches.

This module owns the room directory, the connection registry and the
connection -> room mapping, and it is the only place that talks to
WebSockets on behalf of a room.

A Room contains:
    - A unique id and a display name
    - A Game instance with the actual match state
    - An asyncio.Lock serializing every mutation of that match
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Optional

from fastapi import WebSocket

from constants import MAX_ROOM_NAME_LENGTH, PHASE_PRIORITY
from errors import DeckExhausted, GameError, NotInRoom, RoomNotFound
from game import Game, clean_name
from logging_config import get_logger
from models.events import GameEvent

logger = get_logger(__name__)


@dataclass
class Room:
    """
    A room hosting one Jódete match at a time.

    Attributes:
        game: The Game instance containing actual match state.
        lock: asyncio.Lock for serializing match mutations.
    """

    game: Game
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def id(self) -> str:
        return self.game.room_id

    @property
    def name(self) -> str:
        return self.game.room_name


# Action type -> engine call, for actions routed through RoomManager.dispatch
ENGINE_OPERATIONS: dict[str, Callable[[Game, str, Any], Any]] = {
    "start": lambda game, conn_id, action: game.start(conn_id, action.cards_per_player),
    "play_card": lambda game, conn_id, action: game.play(conn_id, action.card_id, action.chosen_suit),
    "draw_card": lambda game, conn_id, action: game.draw(conn_id),
    "declare_last_card": lambda game, conn_id, action: game.declare_last_card(conn_id),
    "call_jodete": lambda game, conn_id, action: game.call_jodete(conn_id, action.target_id),
    "reset": lambda game, conn_id, action: game.reset(conn_id),
}


class RoomManager:
    """
    Manages all active rooms and the connections bound to them.

    A single RoomManager instance is used by the server and passed to every
    handler.

    Args:
        event_sink: Callback given to every match as its event emitter.
        state_cache: Optional StateCache that receives a room snapshot after
            every committed change.
        room_timeout_minutes: Idle time after which an unattended room is
            cleaned up.
    """

    def __init__(
        self,
        event_sink: Optional[Callable[[GameEvent], None]] = None,
        state_cache=None,
        room_timeout_minutes: int = 60,
    ) -> None:
        self.rooms: dict[str, Room] = {}
        self.connections: dict[str, WebSocket] = {}
        self.connection_rooms: dict[str, str] = {}
        self.event_sink = event_sink
        self.state_cache = state_cache
        self.room_timeout = timedelta(minutes=room_timeout_minutes)
        self._room_counter = 0
        self._background: set[asyncio.Task] = set()
        self._cache_writes: dict[str, asyncio.Task] = {}

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def register_connection(self, connection_id: str, websocket: WebSocket) -> None:
        self.connections[connection_id] = websocket

    def unregister_connection(self, connection_id: str) -> None:
        self.connections.pop(connection_id, None)

    async def send_to(self, connection_id: str, message: dict) -> bool:
        """
        Send a message to one connection.

        A failed send is logged and reported as False; it never raises.
        """
        websocket = self.connections.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(message)
            return True
        except Exception as e:
            logger.with_context(connection_id=connection_id).warning(
                f"Failed to send {message.get('type')}: {e}"
            )
            return False

    async def send_state(self, room: Room, connection_id: str) -> None:
        await self.send_to(connection_id, {
            "type": "state",
            "state": room.game.get_state(connection_id),
        })

    async def broadcast_state(self, room: Room) -> None:
        """Send every connected player in the room their own view of the match."""
        for player in list(room.game.players):
            if player.connected and player.id in self.connections:
                await self.send_state(room, player.id)

    async def send_rooms(self, connection_id: str) -> None:
        await self.send_to(connection_id, {"type": "rooms", "rooms": self.list_rooms()})

    async def broadcast_rooms(self) -> None:
        message = {"type": "rooms", "rooms": self.list_rooms()}
        for connection_id in list(self.connections):
            await self.send_to(connection_id, message)

    # -------------------------------------------------------------------------
    # Directory
    # -------------------------------------------------------------------------

    def _add_room(self, game: Game) -> Room:
        if self.event_sink:
            game.set_event_emitter(self.event_sink)
        room = Room(game=game)
        self.rooms[room.id] = room
        self._room_counter += 1
        return room

    def create_room(self, name: Optional[str] = None) -> Room:
        """
        Create a new room with an empty lobby.

        Args:
            name: Display name. Blank names become "Room N".

        Returns:
            The newly created Room.
        """
        room_name = clean_name(name, MAX_ROOM_NAME_LENGTH) or f"Room {self._room_counter + 1}"
        room = self._add_room(Game(room_name=room_name))
        logger.with_context(room_id=room.id).info(f"Created room '{room.name}'")
        return room

    def get_room(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(room_id)

    def find_connection_room(self, connection_id: str) -> Optional[Room]:
        room_id = self.connection_rooms.get(connection_id)
        return self.rooms.get(room_id) if room_id else None

    def list_rooms(self) -> list[dict]:
        """
        Summaries of every room, most joinable first.

        Ordered by connected players (desc), then phase (playing, lobby,
        finished), then newest first.
        """
        games = sorted(
            (room.game for room in self.rooms.values()),
            key=lambda g: (
                g.connected_count(),
                PHASE_PRIORITY.get(g.phase.value, 0),
                g.created_at,
            ),
            reverse=True,
        )
        return [g.get_summary() for g in games]

    def _remove_room(self, room: Room) -> None:
        self.rooms.pop(room.id, None)
        for connection_id, room_id in list(self.connection_rooms.items()):
            if room_id == room.id:
                del self.connection_rooms[connection_id]
        if self.state_cache:
            self._queue_cache_write(room.id, partial(self.state_cache.delete_room, room.id))
        logger.with_context(room_id=room.id).info(f"Removed room '{room.name}'")

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    async def join_room(
        self,
        connection_id: str,
        room_id: str,
        name: Optional[str],
        token: Optional[str] = None,
        auth_user_id: Optional[str] = None,
    ) -> Room:
        """
        Bind a connection to a room as a player.

        A connection bound to another room is released from it first, as an
        involuntary leave.

        Raises:
            RoomNotFound: Unknown room id.
            MatchInProgress: A new player tried to join a started match.
        """
        room = self.rooms.get(room_id)
        if room is None:
            raise RoomNotFound()

        previous_room_id = self.connection_rooms.get(connection_id)
        if previous_room_id and previous_room_id != room_id:
            await self.leave_room(connection_id, voluntary=False)

        async with room.lock:
            player, previous_id = room.game.join(connection_id, name, token, auth_user_id)
            if previous_id and previous_id != connection_id:
                if self.connection_rooms.get(previous_id) == room.id:
                    del self.connection_rooms[previous_id]
            self.connection_rooms[connection_id] = room.id

            logger.with_context(room_id=room.id, connection_id=connection_id).info(
                f"{player.name} joined" + (" (reconnected)" if previous_id else "")
            )
            await self.send_to(connection_id, {
                "type": "joined_room",
                "room_id": room.id,
                "room_name": room.name,
            })
            await self.broadcast_state(room)
            self._save_snapshot(room)

        await self.broadcast_rooms()
        return room

    async def leave_room(self, connection_id: str, voluntary: bool = True) -> None:
        """
        Release a connection from its room.

        Raises:
            NotInRoom: The connection is not bound to any room.
        """
        room_id = self.connection_rooms.pop(connection_id, None)
        if room_id is None:
            raise NotInRoom()

        room = self.rooms.get(room_id)
        if room is None:
            return

        async with room.lock:
            player = room.game.leave(connection_id, voluntary=voluntary)
            if player:
                logger.with_context(room_id=room.id, connection_id=connection_id).info(
                    f"{player.name} {'left' if voluntary else 'disconnected'}"
                )

            if room.game.is_empty():
                self._remove_room(room)
            else:
                await self.broadcast_state(room)
                self._save_snapshot(room)

        if voluntary:
            await self.send_to(connection_id, {"type": "left_room"})
        await self.broadcast_rooms()

    async def handle_disconnect(self, connection_id: str) -> None:
        """Drop a closed connection and mark its player disconnected."""
        self.unregister_connection(connection_id)
        try:
            await self.leave_room(connection_id, voluntary=False)
        except NotInRoom:
            pass

    # -------------------------------------------------------------------------
    # Match actions
    # -------------------------------------------------------------------------

    async def dispatch(self, connection_id: str, action) -> Any:
        """
        Apply a match action for a connection.

        On success the room gets fresh state. On failure the caller still
        gets a fresh copy of their own state (everybody does, if the failed
        action changed the match), and the original error propagates.

        Raises:
            NotInRoom: The connection is not in a room.
            GameError: The engine rejected the action.
            DeckExhausted: Card conservation broke.
        """
        room = self.find_connection_room(connection_id)
        if room is None:
            raise NotInRoom()

        operation = ENGINE_OPERATIONS[action.type]

        async with room.lock:
            phase_before = room.game.phase
            try:
                result = operation(room.game, connection_id, action)
            except GameError as e:
                if e.state_changed:
                    await self.broadcast_state(room)
                    self._save_snapshot(room)
                else:
                    await self.send_state(room, connection_id)
                raise
            except DeckExhausted:
                logger.with_context(room_id=room.id, connection_id=connection_id).critical(
                    f"Deck exhausted during {action.type}", exc_info=True
                )
                await self.send_state(room, connection_id)
                raise

            await self.broadcast_state(room)
            self._save_snapshot(room)
            phase_changed = room.game.phase != phase_before

        if phase_changed:
            await self.broadcast_rooms()
        return result

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    async def cleanup_idle_rooms(self, now: Optional[datetime] = None) -> list[str]:
        """
        Delete rooms nobody is connected to that have been idle too long.

        Running matches in those rooms are marked abandoned first.

        Returns:
            Ids of the removed rooms.
        """
        now = now or datetime.now(timezone.utc)
        removed = []
        for room in list(self.rooms.values()):
            async with room.lock:
                game = room.game
                if game.connected_count() > 0:
                    continue
                if now - game.updated_at < self.room_timeout:
                    continue
                game.abandon()
                self._remove_room(room)
                removed.append(room.id)

        if removed:
            logger.info(f"Cleaned up {len(removed)} idle room(s)")
            await self.broadcast_rooms()
        return removed

    def restore_rooms(self, snapshots: list[dict]) -> int:
        """
        Rebuild rooms from cached snapshots.

        Restored players are disconnected until they rejoin with their token.

        Returns:
            Number of rooms restored.
        """
        restored = 0
        for snapshot in snapshots:
            try:
                game = Game.from_snapshot(snapshot)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable room snapshot {snapshot.get('room_id')}: {e}")
                continue
            if game.room_id in self.rooms or game.is_empty():
                continue
            self._add_room(game)
            restored += 1

        if restored:
            logger.info(f"Restored {restored} room(s) from cache")
        return restored

    def _save_snapshot(self, room: Room) -> None:
        if self.state_cache is None:
            return
        snapshot = room.game.to_snapshot()
        self._queue_cache_write(
            room.id, lambda: self.state_cache.save_room(room.id, snapshot), skippable=True
        )

    def _queue_cache_write(
        self,
        room_id: str,
        write: Callable[[], Awaitable[None]],
        skippable: bool = False,
    ) -> None:
        """
        Run a cache write after every earlier write for the same room.

        A skippable write (a snapshot save) is dropped when a newer write
        for the room is already queued behind it.
        """
        previous = self._cache_writes.get(room_id)
        task = asyncio.create_task(self._write_after(previous, write, room_id, skippable))
        self._cache_writes[room_id] = task
        self._background.add(task)
        task.add_done_callback(partial(self._cache_write_done, room_id))

    def _cache_write_done(self, room_id: str, task: asyncio.Task) -> None:
        self._background.discard(task)
        if self._cache_writes.get(room_id) is task:
            del self._cache_writes[room_id]

    async def _write_after(
        self,
        previous: Optional[asyncio.Task],
        write: Callable[[], Awaitable[None]],
        room_id: str,
        skippable: bool,
    ) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        if skippable and self._cache_writes.get(room_id) is not asyncio.current_task():
            return
        try:
            await write()
        except Exception as e:
            logger.with_context(room_id=room_id).error(f"State cache write failed: {e}")

    async def flush_cache_writes(self) -> None:
        """Wait until every queued cache write has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        """Close every connection and wait for pending cache writes."""
        for connection_id, websocket in list(self.connections.items()):
            try:
                await websocket.close(code=1001, reason="Server shutting down")
            except Exception as e:
                logger.debug(f"Close failed for {connection_id}: {e}")
        self.connections.clear()
        await self.flush_cache_writes()
