"""
Fire-and-forget match recording.

The engine emits a GameEvent after every committed mutation. MatchRecorder
queues those events and a single background task turns them into
persistence gateway calls, so gameplay never waits on the database and a
storage failure never reaches a player.

Usage:
    # In main.py lifespan
    recorder = MatchRecorder(gateway)
    recorder.start()
    room_manager = RoomManager(event_sink=recorder.emit)
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from errors import PersistenceError
from models.events import EventType, GameEvent
from services.persistence import NullGateway, PersistenceGateway, StatsDelta

log = logging.getLogger(__name__)


# Engine event -> action_type column of the action history
ACTION_TYPES = {
    EventType.MATCH_STARTED: "start",
    EventType.CARD_PLAYED: "play",
    EventType.CARD_DRAWN: "draw",
    EventType.PENALTY: "penalty",
    EventType.LAST_CARD_DECLARED: "declare",
    EventType.JODETE_CALLED: "jodete",
    EventType.MATCH_FINISHED: "finish",
}


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class MatchRecorder:
    """
    Outbox consumer that writes match history through a gateway.

    Attributes:
        gateway: Where records go.
        match_ids: Durable match id for each running match_key.
    """

    def __init__(self, gateway: Optional[PersistenceGateway] = None):
        self.gateway = gateway or NullGateway()
        self.match_ids: dict[str, str] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def emit(self, event: GameEvent) -> None:
        """Engine event callback. Never blocks and never raises."""
        self._queue.put_nowait(event)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self, timeout: float = 5.0) -> None:
        """Drain pending events (bounded by timeout) and stop the worker."""
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            log.warning(f"Dropped {self._queue.qsize()} unrecorded match events on shutdown")
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def flush(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.process(event)
            except PersistenceError as e:
                log.error(f"Failed to record {event.event_type.value} for room {event.room_id}: {e}")
            except Exception:
                log.exception(f"Unexpected error recording {event.event_type.value}")
            finally:
                self._queue.task_done()

    async def _call(self, what: str, coro):
        try:
            return await coro
        except Exception as e:
            raise PersistenceError(f"{what} failed: {e}") from e

    # -------------------------------------------------------------------------
    # Event mapping
    # -------------------------------------------------------------------------

    async def process(self, event: GameEvent) -> None:
        """
        Record one event.

        Raises:
            PersistenceError: If a gateway call fails.
        """
        if event.event_type == EventType.MATCH_STARTED:
            await self._save_snapshot(event)
            await self._append_action(event)
        elif event.event_type == EventType.MATCH_FINISHED:
            await self._append_action(event)
            await self._save_snapshot(event, winner_identity=event.data.get("winner_auth_user_id"))
            self.match_ids.pop(event.match_key, None)
            await self._update_stats(event)
        elif event.event_type == EventType.MATCH_ABANDONED:
            await self._save_snapshot(event)
            self.match_ids.pop(event.match_key, None)
        elif event.event_type in ACTION_TYPES:
            await self._append_action(event)

    async def _save_snapshot(self, event: GameEvent, winner_identity: Optional[str] = None) -> None:
        data = event.data
        snapshot = data.get("snapshot", {})
        match_id = await self._call(
            "save_match_snapshot",
            self.gateway.save_match_snapshot(
                self.match_ids.get(event.match_key),
                event.room_id,
                snapshot.get("phase", "playing"),
                data.get("cards_per_player"),
                data.get("turn_number", 0),
                snapshot,
                _parse_time(data.get("started_at")),
                _parse_time(data.get("finished_at")),
                winner_identity,
            ),
        )
        if match_id and event.match_key:
            self.match_ids[event.match_key] = match_id

    async def _append_action(self, event: GameEvent) -> None:
        match_id = self.match_ids.get(event.match_key)
        if match_id is None:
            log.debug(f"No durable match for {event.match_key}, skipping {event.event_type.value}")
            return

        await self._call(
            "append_action_record",
            self.gateway.append_action_record(
                match_id,
                ACTION_TYPES[event.event_type],
                event.player_id,
                event.data.get("description", event.event_type.value),
                event.data.get("card"),
                event.data.get("turn_number", 0),
            ),
        )

    async def _update_stats(self, event: GameEvent) -> None:
        """Add this match to every authenticated player's lifetime stats."""
        started = _parse_time(event.data.get("started_at"))
        finished = _parse_time(event.data.get("finished_at"))
        duration = int((finished - started).total_seconds()) if started and finished else 0

        failures = []
        for player in event.data.get("players", []):
            identity = player.get("auth_user_id")
            if not identity:
                continue

            delta = StatsDelta(
                won_match=player["token"] == event.player_id,
                special_cards_played={
                    int(k): v for k, v in player.get("special_cards_played", {}).items()
                },
                jodetes_called=player.get("jodetes_called", 0),
                jodetes_received=player.get("jodetes_received", 0),
                play_duration_seconds=duration,
            )
            try:
                await self._call(
                    "update_player_lifetime_stats",
                    self.gateway.update_player_lifetime_stats(identity, delta),
                )
            except PersistenceError as e:
                failures.append(str(e))

        if failures:
            raise PersistenceError("; ".join(failures))
