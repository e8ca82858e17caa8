"""
Tests for match recording and room persistence.

These tests cover:
- MatchRecorder: engine events -> persistence gateway calls
- StateCache: Redis-backed room snapshots
- MatchStore: SQL issued through an asyncpg-style pool
- Restoring cached rooms into a RoomManager

Redis and PostgreSQL are replaced with in-memory fakes.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from errors import PersistenceError
from game import Game, GamePhase
from models.events import EventType, GameEvent
from room import RoomManager
from services.match_recorder import MatchRecorder
from services.persistence import NullGateway, PersistenceGateway, StatsDelta
from stores.match_store import MatchStore
from stores.state_cache import StateCache


# =============================================================================
# Fixtures
# =============================================================================

class RecordingGateway(PersistenceGateway):
    """Gateway that keeps every call in memory."""

    def __init__(self):
        self.snapshots: list[dict] = []
        self.actions: list[dict] = []
        self.stats: dict[str, StatsDelta] = {}
        self.fail_saves = 0
        self.fail_stats_for: set[str] = set()
        self._next_id = 0

    async def save_match_snapshot(
        self,
        match_id,
        room_id,
        phase,
        cards_per_player,
        turn_count,
        state,
        started_at,
        finished_at=None,
        winner_identity=None,
    ):
        if self.fail_saves:
            self.fail_saves -= 1
            raise ConnectionError("database unavailable")
        if match_id is None:
            self._next_id += 1
            match_id = f"match-{self._next_id}"
        self.snapshots.append({
            "match_id": match_id,
            "room_id": room_id,
            "phase": phase,
            "cards_per_player": cards_per_player,
            "winner_identity": winner_identity,
            "finished_at": finished_at,
        })
        return match_id

    async def append_action_record(
        self, match_id, action_type, player_ref, description, card_played, turn_number
    ):
        self.actions.append({
            "match_id": match_id,
            "action_type": action_type,
            "player_ref": player_ref,
            "description": description,
        })

    async def update_player_lifetime_stats(self, identity, delta):
        if identity in self.fail_stats_for:
            raise ConnectionError(f"cannot update {identity}")
        self.stats[identity] = delta


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def mock_redis():
    """Mock Redis client backed by dicts. Pipeline commands are buffered like redis-py's."""
    mock = AsyncMock()
    data = {}
    sets = {}
    ttls = {}

    async def mock_get(key):
        return data.get(key)

    async def mock_smembers(key):
        return {v.encode() for v in sets.get(key, set())}

    async def mock_srem(key, *values):
        sets.get(key, set()).difference_update(values)

    def mock_pipeline():
        pipe = MagicMock()
        commands = []

        def pipe_set(key, value, ex=None):
            commands.append(lambda: (data.__setitem__(key, value.encode()), ttls.__setitem__(key, ex)))
            return pipe

        def pipe_sadd(key, *values):
            commands.append(lambda: sets.setdefault(key, set()).update(values))
            return pipe

        def pipe_delete(*keys):
            commands.append(lambda: [data.pop(k, None) for k in keys])
            return pipe

        def pipe_srem(key, *values):
            commands.append(lambda: sets.get(key, set()).difference_update(values))
            return pipe

        async def execute():
            return [command() for command in commands]

        pipe.set = pipe_set
        pipe.sadd = pipe_sadd
        pipe.delete = pipe_delete
        pipe.srem = pipe_srem
        pipe.execute = execute
        return pipe

    mock.get = mock_get
    mock.smembers = mock_smembers
    mock.srem = mock_srem
    mock.pipeline = mock_pipeline
    mock.close = AsyncMock()

    mock._data = data
    mock._sets = sets
    mock._ttls = ttls
    return mock


@pytest.fixture
def state_cache(mock_redis):
    return StateCache(mock_redis)


def two_player_game(emitter=None) -> Game:
    game = Game(room_name="Mesa")
    if emitter:
        game.set_event_emitter(emitter)
    game.join("a", "Ana", auth_user_id="user-ana")
    game.join("b", "Bea", auth_user_id="user-bea")
    return game


def make_event(event_type, match_key="m1", **data) -> GameEvent:
    return GameEvent(
        event_type=event_type,
        room_id="room-1",
        sequence_num=1,
        match_key=match_key,
        player_id="tok-a",
        data=data,
    )


# =============================================================================
# MatchRecorder Tests
# =============================================================================

class TestMatchRecorder:
    """Tests for the event outbox consumer."""

    @pytest.mark.asyncio
    async def test_match_lifecycle_recorded(self, gateway):
        recorder = MatchRecorder(gateway)
        recorder.start()
        game = two_player_game(recorder.emit)

        game.start("a")
        game.leave("b", voluntary=True)
        await recorder.flush()
        await recorder.stop()

        assert [s["phase"] for s in gateway.snapshots] == ["playing", "finished"]
        assert {s["match_id"] for s in gateway.snapshots} == {"match-1"}
        assert gateway.snapshots[-1]["winner_identity"] == "user-ana"
        assert gateway.snapshots[-1]["finished_at"] is not None

        action_types = [a["action_type"] for a in gateway.actions]
        assert action_types == ["start", "finish"]

        assert set(gateway.stats) == {"user-ana", "user-bea"}
        assert gateway.stats["user-ana"].won_match is True
        assert gateway.stats["user-bea"].won_match is False
        assert recorder.match_ids == {}

    @pytest.mark.asyncio
    async def test_lobby_events_not_recorded(self, gateway):
        recorder = MatchRecorder(gateway)
        recorder.start()
        two_player_game(recorder.emit)

        await recorder.flush()
        await recorder.stop()

        assert gateway.snapshots == []
        assert gateway.actions == []

    @pytest.mark.asyncio
    async def test_action_without_durable_match_skipped(self, gateway):
        recorder = MatchRecorder(gateway)
        await recorder.process(make_event(EventType.CARD_PLAYED, description="Ana played"))
        assert gateway.actions == []

    @pytest.mark.asyncio
    async def test_action_uses_durable_id(self, gateway):
        recorder = MatchRecorder(gateway)
        recorder.match_ids["m1"] = "match-9"

        await recorder.process(make_event(EventType.JODETE_CALLED, description="Jodete!"))

        assert gateway.actions == [{
            "match_id": "match-9",
            "action_type": "jodete",
            "player_ref": "tok-a",
            "description": "Jodete!",
        }]

    @pytest.mark.asyncio
    async def test_abandoned_match_saved_and_forgotten(self, gateway):
        recorder = MatchRecorder(gateway)
        recorder.match_ids["m1"] = "match-3"

        await recorder.process(make_event(
            EventType.MATCH_ABANDONED,
            snapshot={"phase": "abandoned"},
            turn_number=4,
        ))

        assert gateway.snapshots[-1]["match_id"] == "match-3"
        assert gateway.snapshots[-1]["phase"] == "abandoned"
        assert "m1" not in recorder.match_ids

    @pytest.mark.asyncio
    async def test_gateway_failure_wrapped(self, gateway):
        gateway.fail_saves = 1
        recorder = MatchRecorder(gateway)

        with pytest.raises(PersistenceError):
            await recorder.process(make_event(EventType.MATCH_STARTED, snapshot={"phase": "playing"}))

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_worker(self, gateway, caplog):
        gateway.fail_saves = 1
        recorder = MatchRecorder(gateway)
        recorder.start()

        with caplog.at_level(logging.ERROR, logger="services.match_recorder"):
            recorder.emit(make_event(EventType.MATCH_STARTED, match_key="m1", snapshot={"phase": "playing"}))
            recorder.emit(make_event(EventType.MATCH_STARTED, match_key="m2", snapshot={"phase": "playing"}))
            await recorder.flush()
        await recorder.stop()

        assert "Failed to record match_started" in caplog.text
        assert len(gateway.snapshots) == 1
        assert recorder.match_ids == {"m2": "match-1"}

    @pytest.mark.asyncio
    async def test_stats_failure_isolated_per_player(self, gateway):
        gateway.fail_stats_for = {"user-1"}
        recorder = MatchRecorder(gateway)
        now = datetime.now(timezone.utc)

        event = make_event(
            EventType.MATCH_FINISHED,
            snapshot={"phase": "finished"},
            started_at=(now - timedelta(minutes=3)).isoformat(),
            finished_at=now.isoformat(),
            players=[
                {"token": "tok-a", "auth_user_id": "user-1"},
                {
                    "token": "tok-b",
                    "auth_user_id": "user-2",
                    "special_cards_played": {"2": 3, "11": 1},
                    "jodetes_received": 1,
                },
                {"token": "tok-c", "auth_user_id": None},
            ],
        )

        with pytest.raises(PersistenceError, match="user-1"):
            await recorder.process(event)

        delta = gateway.stats["user-2"]
        assert delta.won_match is False
        assert delta.special_cards_played == {2: 3, 11: 1}
        assert delta.jodetes_received == 1
        assert delta.play_duration_seconds == 180

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self, gateway):
        recorder = MatchRecorder(gateway)
        recorder.start()
        recorder.emit(make_event(EventType.MATCH_STARTED, snapshot={"phase": "playing"}))

        await recorder.stop()

        assert len(gateway.snapshots) == 1

    @pytest.mark.asyncio
    async def test_null_gateway(self):
        gateway = NullGateway()
        assert await gateway.save_match_snapshot("m", "r", "playing", 7, 0, {}, None) == "m"
        assert await gateway.update_player_lifetime_stats("u", StatsDelta(won_match=True)) is None


# =============================================================================
# StateCache Tests
# =============================================================================

class TestStateCache:
    """Tests for StateCache class."""

    @pytest.mark.asyncio
    async def test_save_and_get_room(self, state_cache, mock_redis):
        snapshot = {"room_id": "r1", "phase": "lobby"}

        await state_cache.save_room("r1", snapshot)

        assert await state_cache.get_room("r1") == snapshot
        assert await state_cache.get_active_rooms() == {"r1"}
        assert mock_redis._ttls["jodete:room:r1"] == 24 * 3600

    @pytest.mark.asyncio
    async def test_get_missing_room(self, state_cache):
        assert await state_cache.get_room("nope") is None

    @pytest.mark.asyncio
    async def test_delete_room(self, state_cache, mock_redis):
        await state_cache.save_room("r1", {"room_id": "r1"})

        await state_cache.delete_room("r1")

        assert await state_cache.get_room("r1") is None
        assert await state_cache.get_active_rooms() == set()

    @pytest.mark.asyncio
    async def test_load_rooms_drops_expired(self, state_cache, mock_redis):
        await state_cache.save_room("r1", {"room_id": "r1"})
        mock_redis._sets[StateCache.ACTIVE_ROOMS_KEY].add("expired")

        snapshots = await state_cache.load_rooms()

        assert snapshots == [{"room_id": "r1"}]
        assert mock_redis._sets[StateCache.ACTIVE_ROOMS_KEY] == {"r1"}

    @pytest.mark.asyncio
    async def test_snapshot_restores_into_room_manager(self, state_cache):
        game = two_player_game()
        game.start("a")
        await state_cache.save_room(game.room_id, game.to_snapshot())

        rm = RoomManager()
        restored = rm.restore_rooms(await state_cache.load_rooms())

        assert restored == 1
        room = rm.get_room(game.room_id)
        assert room.game.phase == GamePhase.PLAYING
        assert room.game.card_count() == 40
        assert all(not p.connected for p in room.game.players)


# =============================================================================
# MatchStore Tests
# =============================================================================

class FakeConnection:
    def __init__(self):
        self.executed: list[tuple] = []
        self.fetchrow = AsyncMock(return_value={"id": "6f1c1e9a-0000-4000-8000-000000000001"})

    async def execute(self, query, *args):
        self.executed.append((query, args))


class FakePool:
    def __init__(self):
        self.conn = FakeConnection()
        self.close = AsyncMock()

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


class TestMatchStore:
    """Tests for the PostgreSQL gateway."""

    @pytest.mark.asyncio
    async def test_new_match_inserted(self):
        pool = FakePool()
        store = MatchStore(pool)

        match_id = await store.save_match_snapshot(
            None, "room-1", "playing", 7, 0, {"phase": "playing"},
            datetime.now(timezone.utc),
        )

        assert match_id == "6f1c1e9a-0000-4000-8000-000000000001"
        query, *args = pool.conn.fetchrow.call_args.args
        assert "INSERT INTO matches" in query
        assert json.loads(args[5]) == {"phase": "playing"}

    @pytest.mark.asyncio
    async def test_existing_match_updated_with_duration(self):
        pool = FakePool()
        store = MatchStore(pool)
        started = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

        match_id = await store.save_match_snapshot(
            "match-1", "room-1", "finished", 7, 12, {},
            started, started + timedelta(minutes=5), "user-1",
        )

        assert match_id == "match-1"
        query, args = pool.conn.executed[-1]
        assert query.strip().startswith("UPDATE matches")
        assert args[0] == "match-1"
        assert args[2] == "user-1"
        assert args[-1] == 300

    @pytest.mark.asyncio
    async def test_lifetime_stats_upsert(self):
        pool = FakePool()
        store = MatchStore(pool)

        await store.update_player_lifetime_stats("user-1", StatsDelta(
            won_match=True,
            special_cards_played={2: 1, 12: 2},
            jodetes_called=1,
            play_duration_seconds=90,
        ))

        query, args = pool.conn.executed[-1]
        assert "ON CONFLICT (user_id)" in query
        assert args == ("user-1", 1, 0, 1, 0, 0, 0, 2, 1, 0, 90)

    @pytest.mark.asyncio
    async def test_action_record(self):
        pool = FakePool()
        store = MatchStore(pool)

        await store.append_action_record("match-1", "draw", "tok-a", "Ana drew a card", None, 3)

        query, args = pool.conn.executed[-1]
        assert "INSERT INTO match_actions" in query
        assert args == ("match-1", "draw", "tok-a", "Ana drew a card", None, 3)
