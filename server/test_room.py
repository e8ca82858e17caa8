"""
Test suite for Room and RoomManager.

Covers:
- Room creation and naming
- Join/leave/disconnect with connection -> room mapping
- Reconnection by token and room switching
- Room list ordering
- Action dispatch, error refresh and broadcast isolation
- Idle cleanup and restore from snapshots

Run with: pytest test_room.py -v
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from errors import CardNotInHand, NotInRoom, NotYourTurn, RoomNotFound, SeatTaken
from game import GamePhase
from models.actions import parse_action
from models.events import EventType
from room import RoomManager


# =============================================================================
# Mock helpers
# =============================================================================

class MockWebSocket:
    """Mock WebSocket that collects sent messages."""

    def __init__(self):
        self.messages: list[dict] = []

    async def send_json(self, data: dict):
        self.messages.append(data)

    def messages_of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.messages if m.get("type") == msg_type]

    def last_state(self) -> dict:
        return self.messages_of_type("state")[-1]["state"]


class BrokenWebSocket(MockWebSocket):
    """WebSocket whose sends always fail."""

    async def send_json(self, data: dict):
        raise RuntimeError("connection reset")


class FakeStateCache:
    def __init__(self):
        self.saved: dict[str, dict] = {}
        self.deleted: list[str] = []

    async def save_room(self, room_id: str, snapshot: dict) -> None:
        self.saved[room_id] = snapshot

    async def delete_room(self, room_id: str) -> None:
        self.saved.pop(room_id, None)
        self.deleted.append(room_id)


class SlowStateCache(FakeStateCache):
    """State cache whose first save is slow and whose failing saves raise."""

    def __init__(self, delay: float = 0.05):
        super().__init__()
        self.delay = delay
        self.calls: list[str] = []
        self.fail_next_save = False

    async def save_room(self, room_id: str, snapshot: dict) -> None:
        self.calls.append("save")
        if len(self.calls) == 1:
            await asyncio.sleep(self.delay)
        if self.fail_next_save:
            self.fail_next_save = False
            raise ConnectionError("redis went away")
        await super().save_room(room_id, snapshot)

    async def delete_room(self, room_id: str) -> None:
        self.calls.append("delete")
        await super().delete_room(room_id)


def connect(rm: RoomManager, connection_id: str, ws=None) -> MockWebSocket:
    ws = ws or MockWebSocket()
    rm.register_connection(connection_id, ws)
    return ws


# =============================================================================
# Directory tests
# =============================================================================

class TestCreateRoom:

    def test_default_names_are_numbered(self):
        rm = RoomManager()
        assert rm.create_room().name == "Room 1"
        assert rm.create_room("  ").name == "Room 2"

    def test_name_trimmed_and_capped(self):
        rm = RoomManager()
        room = rm.create_room("  " + "a" * 60)
        assert room.name == "a" * 48

    def test_room_starts_in_lobby(self):
        rm = RoomManager()
        room = rm.create_room("Table")
        assert room.game.phase == GamePhase.LOBBY
        assert rm.get_room(room.id) is room


class TestListRooms:

    @pytest.mark.asyncio
    async def test_ordering(self):
        """Busy rooms first, then playing over lobby, then newest."""
        rm = RoomManager()
        now = datetime.now(timezone.utc)

        empty_old = rm.create_room("empty old")
        empty_old.game.created_at = now - timedelta(minutes=5)
        empty_new = rm.create_room("empty new")
        empty_new.game.created_at = now

        busy = rm.create_room("busy")
        for conn in ("a", "b"):
            connect(rm, conn)
            await rm.join_room(conn, busy.id, conn)

        names = [r["name"] for r in rm.list_rooms()]
        assert names == ["busy", "empty new", "empty old"]

    @pytest.mark.asyncio
    async def test_playing_before_lobby(self):
        rm = RoomManager()
        lobby = rm.create_room("lobby")
        playing = rm.create_room("playing")
        for conn, room in (("a", lobby), ("b", playing)):
            connect(rm, conn)
            await rm.join_room(conn, room.id, conn)
        playing.game.phase = GamePhase.PLAYING
        lobby.game.created_at = playing.game.created_at + timedelta(seconds=1)

        names = [r["name"] for r in rm.list_rooms()]
        assert names == ["playing", "lobby"]

    def test_summary_fields(self):
        rm = RoomManager()
        rm.create_room("Table")
        summary = rm.list_rooms()[0]
        assert set(summary) >= {
            "id", "name", "phase", "created_at", "player_count",
            "total_players", "host_name", "players",
        }


# =============================================================================
# Membership tests
# =============================================================================

class TestJoinRoom:

    @pytest.mark.asyncio
    async def test_unknown_room(self):
        rm = RoomManager()
        connect(rm, "a")
        with pytest.raises(RoomNotFound):
            await rm.join_room("a", "nope", "Alice")

    @pytest.mark.asyncio
    async def test_join_notifies_everyone(self):
        rm = RoomManager()
        room = rm.create_room("Table")
        ws_a = connect(rm, "a")
        ws_b = connect(rm, "b")
        ws_watcher = connect(rm, "watcher")

        await rm.join_room("a", room.id, "Alice")
        await rm.join_room("b", room.id, "Bob")

        joined = ws_b.messages_of_type("joined_room")[-1]
        assert joined == {"type": "joined_room", "room_id": room.id, "room_name": "Table"}
        assert [p["name"] for p in ws_a.last_state()["players"]] == ["Alice", "Bob"]
        assert ws_b.last_state()["me"]["name"] == "Bob"
        assert ws_watcher.messages_of_type("rooms")[-1]["rooms"][0]["player_count"] == 2
        assert ws_watcher.messages_of_type("state") == []
        assert rm.connection_rooms == {"a": room.id, "b": room.id}

    @pytest.mark.asyncio
    async def test_switching_rooms_releases_previous(self):
        rm = RoomManager()
        first = rm.create_room("first")
        second = rm.create_room("second")
        connect(rm, "a")
        connect(rm, "b")
        await rm.join_room("a", first.id, "Alice")
        await rm.join_room("b", first.id, "Bob")

        await rm.join_room("b", second.id, "Bob")

        assert first.game.get_player("b") is None
        assert second.game.get_player("b") is not None
        assert rm.connection_rooms["b"] == second.id

    @pytest.mark.asyncio
    async def test_reconnect_by_token_rekeys_connection(self):
        rm = RoomManager()
        room = rm.create_room()
        connect(rm, "a")
        ws_b = connect(rm, "b")
        await rm.join_room("a", room.id, "Alice")
        await rm.join_room("b", room.id, "Bob")
        await rm.dispatch("a", parse_action({"type": "start"}))
        token = ws_b.last_state()["me"]["token"]

        await rm.handle_disconnect("b")
        assert room.game.get_player("b").connected is False

        ws_b2 = connect(rm, "b2")
        await rm.join_room("b2", room.id, "Bob", token=token)

        assert "b" not in rm.connection_rooms
        assert rm.connection_rooms["b2"] == room.id
        state = ws_b2.last_state()
        assert state["me"]["token"] == token
        assert len(state["me"]["hand"]) == 7

    @pytest.mark.asyncio
    async def test_token_of_another_seat_rejected(self):
        rm = RoomManager()
        room = rm.create_room()
        connect(rm, "a")
        ws_b = connect(rm, "b")
        await rm.join_room("a", room.id, "Alice")
        await rm.join_room("b", room.id, "Bob")
        token_b = ws_b.last_state()["me"]["token"]

        with pytest.raises(SeatTaken):
            await rm.join_room("a", room.id, "Alice", token=token_b)

        assert room.game.get_player("b").token == token_b
        assert rm.connection_rooms == {"a": room.id, "b": room.id}


class TestLeaveRoom:

    @pytest.mark.asyncio
    async def test_not_in_room(self):
        rm = RoomManager()
        connect(rm, "a")
        with pytest.raises(NotInRoom):
            await rm.leave_room("a")

    @pytest.mark.asyncio
    async def test_last_player_out_deletes_room(self):
        rm = RoomManager(state_cache=FakeStateCache())
        room = rm.create_room()
        ws = connect(rm, "a")
        await rm.join_room("a", room.id, "Alice")

        await rm.leave_room("a")
        await rm.flush_cache_writes()

        assert room.id not in rm.rooms
        assert rm.state_cache.deleted == [room.id]
        assert ws.messages_of_type("left_room") == [{"type": "left_room"}]
        assert ws.messages_of_type("rooms")[-1]["rooms"] == []

    @pytest.mark.asyncio
    async def test_disconnect_without_room_is_noop(self):
        rm = RoomManager()
        connect(rm, "a")
        await rm.handle_disconnect("a")
        assert "a" not in rm.connections

    @pytest.mark.asyncio
    async def test_disconnect_mid_match_keeps_room(self):
        rm = RoomManager()
        room = rm.create_room()
        connect(rm, "a")
        ws_b = connect(rm, "b")
        await rm.join_room("a", room.id, "Alice")
        await rm.join_room("b", room.id, "Bob")
        await rm.dispatch("a", parse_action({"type": "start"}))

        await rm.handle_disconnect("a")

        assert room.id in rm.rooms
        assert room.game.phase == GamePhase.PLAYING
        alice = ws_b.last_state()["players"][0]
        assert alice["connected"] is False


# =============================================================================
# Dispatch tests
# =============================================================================

class TestDispatch:

    @pytest.mark.asyncio
    async def test_requires_room(self):
        rm = RoomManager()
        connect(rm, "a")
        with pytest.raises(NotInRoom):
            await rm.dispatch("a", parse_action({"type": "draw_card"}))

    @pytest.mark.asyncio
    async def test_start_broadcasts_state_and_rooms(self):
        rm = RoomManager()
        room = rm.create_room()
        ws_a = connect(rm, "a")
        ws_b = connect(rm, "b")
        await rm.join_room("a", room.id, "Alice")
        await rm.join_room("b", room.id, "Bob")
        rooms_before = len(ws_b.messages_of_type("rooms"))

        await rm.dispatch("a", parse_action({"type": "start"}))

        assert ws_a.last_state()["phase"] == "playing"
        assert ws_b.last_state()["phase"] == "playing"
        assert len(ws_b.messages_of_type("rooms")) == rooms_before + 1

    @pytest.mark.asyncio
    async def test_rejected_action_refreshes_caller(self):
        rm = RoomManager()
        room = rm.create_room()
        ws_a = connect(rm, "a")
        ws_b = connect(rm, "b")
        await rm.join_room("a", room.id, "Alice")
        await rm.join_room("b", room.id, "Bob")
        await rm.dispatch("a", parse_action({"type": "start"}))
        states_a = len(ws_a.messages_of_type("state"))
        states_b = len(ws_b.messages_of_type("state"))

        with pytest.raises(CardNotInHand):
            await rm.dispatch("a", parse_action({"type": "play_card", "card_id": "bogus"}))

        assert len(ws_a.messages_of_type("state")) == states_a + 1
        assert len(ws_b.messages_of_type("state")) == states_b

    @pytest.mark.asyncio
    async def test_out_of_turn_penalty_reaches_everyone(self):
        rm = RoomManager()
        room = rm.create_room()
        connect(rm, "a")
        ws_b = connect(rm, "b")
        await rm.join_room("a", room.id, "Alice")
        await rm.join_room("b", room.id, "Bob")
        await rm.dispatch("a", parse_action({"type": "start"}))

        with pytest.raises(NotYourTurn):
            await rm.dispatch("b", parse_action({"type": "draw_card"}))

        assert len(ws_b.last_state()["me"]["hand"]) == 9

    @pytest.mark.asyncio
    async def test_dead_connection_does_not_block_others(self):
        rm = RoomManager()
        room = rm.create_room()
        connect(rm, "a", BrokenWebSocket())
        ws_b = connect(rm, "b")
        await rm.join_room("a", room.id, "Alice")
        await rm.join_room("b", room.id, "Bob")

        await rm.dispatch("a", parse_action({"type": "start"}))

        assert ws_b.last_state()["phase"] == "playing"

    @pytest.mark.asyncio
    async def test_committed_action_is_cached(self):
        cache = FakeStateCache()
        rm = RoomManager(state_cache=cache)
        room = rm.create_room()
        connect(rm, "a")
        connect(rm, "b")
        await rm.join_room("a", room.id, "Alice")
        await rm.join_room("b", room.id, "Bob")
        await rm.dispatch("a", parse_action({"type": "start"}))
        await rm.flush_cache_writes()

        assert cache.saved[room.id]["phase"] == "playing"


# =============================================================================
# Cache write tests
# =============================================================================

class TestCacheWrites:

    @pytest.mark.asyncio
    async def test_deleted_room_stays_deleted(self):
        """A slow save still in flight must not bring a deleted room back."""
        cache = SlowStateCache()
        rm = RoomManager(state_cache=cache)
        room = rm.create_room()
        connect(rm, "a")
        await rm.join_room("a", room.id, "Alice")
        await asyncio.sleep(0)

        await rm.leave_room("a")
        await rm.flush_cache_writes()

        assert cache.calls == ["save", "delete"]
        assert room.id not in cache.saved

    @pytest.mark.asyncio
    async def test_latest_snapshot_wins(self):
        cache = SlowStateCache()
        rm = RoomManager(state_cache=cache)
        room = rm.create_room()
        connect(rm, "a")
        connect(rm, "b")
        await rm.join_room("a", room.id, "Alice")
        await asyncio.sleep(0)
        await rm.join_room("b", room.id, "Bob")

        await rm.flush_cache_writes()

        assert cache.calls == ["save", "save"]
        assert [p["name"] for p in cache.saved[room.id]["players"]] == ["Alice", "Bob"]

    @pytest.mark.asyncio
    async def test_queued_saves_collapse(self):
        cache = SlowStateCache(delay=0)
        rm = RoomManager(state_cache=cache)
        room = rm.create_room()
        connect(rm, "a")
        connect(rm, "b")
        await rm.join_room("a", room.id, "Alice")
        await rm.join_room("b", room.id, "Bob")
        await rm.dispatch("a", parse_action({"type": "start"}))

        await rm.flush_cache_writes()

        assert cache.calls == ["save"]
        assert cache.saved[room.id]["phase"] == "playing"

    @pytest.mark.asyncio
    async def test_failed_save_does_not_block_later_writes(self):
        cache = SlowStateCache()
        cache.fail_next_save = True
        rm = RoomManager(state_cache=cache)
        room = rm.create_room()
        connect(rm, "a")
        connect(rm, "b")
        await rm.join_room("a", room.id, "Alice")
        await asyncio.sleep(0)
        await rm.join_room("b", room.id, "Bob")

        await rm.flush_cache_writes()

        assert cache.calls == ["save", "save"]
        assert len(cache.saved[room.id]["players"]) == 2


# =============================================================================
# Housekeeping tests
# =============================================================================

class TestCleanup:

    @pytest.mark.asyncio
    async def test_idle_abandoned_room_removed(self):
        events = []
        rm = RoomManager(event_sink=events.append, room_timeout_minutes=60)
        room = rm.create_room()
        connect(rm, "a")
        connect(rm, "b")
        await rm.join_room("a", room.id, "Alice")
        await rm.join_room("b", room.id, "Bob")
        await rm.dispatch("a", parse_action({"type": "start"}))
        await rm.handle_disconnect("a")
        await rm.handle_disconnect("b")

        later = datetime.now(timezone.utc) + timedelta(minutes=61)
        removed = await rm.cleanup_idle_rooms(later)

        assert removed == [room.id]
        assert room.id not in rm.rooms
        assert room.game.phase == GamePhase.ABANDONED
        assert events[-1].event_type == EventType.MATCH_ABANDONED

    @pytest.mark.asyncio
    async def test_connected_room_kept(self):
        rm = RoomManager(room_timeout_minutes=60)
        room = rm.create_room()
        connect(rm, "a")
        await rm.join_room("a", room.id, "Alice")

        later = datetime.now(timezone.utc) + timedelta(hours=5)
        assert await rm.cleanup_idle_rooms(later) == []
        assert room.id in rm.rooms

    @pytest.mark.asyncio
    async def test_recent_room_kept(self):
        rm = RoomManager(room_timeout_minutes=60)
        room = rm.create_room()
        assert await rm.cleanup_idle_rooms() == []
        assert room.id in rm.rooms


class TestRestore:

    @pytest.mark.asyncio
    async def test_restore_and_rejoin(self):
        source = RoomManager()
        room = source.create_room("Saved")
        connect(source, "a")
        ws_b = connect(source, "b")
        await source.join_room("a", room.id, "Alice")
        await source.join_room("b", room.id, "Bob")
        await source.dispatch("a", parse_action({"type": "start"}))
        token = ws_b.last_state()["me"]["token"]
        snapshot = room.game.to_snapshot()

        events = []
        rm = RoomManager(event_sink=events.append)
        assert rm.restore_rooms([snapshot, {"broken": True}]) == 1

        restored = rm.get_room(room.id)
        assert restored.name == "Saved"
        assert restored.game.connected_count() == 0

        ws = connect(rm, "b-again")
        await rm.join_room("b-again", room.id, "Bob", token=token)
        assert ws.last_state()["me"]["token"] == token
        assert events[-1].event_type == EventType.PLAYER_RECONNECTED
