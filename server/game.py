"""
Game logic for Jódete.

This module implements the authoritative rules engine for a single match:
the Spanish deck, player hands, turn order, special card effects, penalties
and win detection. One Game instance lives in each room.

Jódete Rules Summary:
    - 40-card Spanish deck (oros/copas/espadas/bastos, values 1-7 and 10-12)
    - Each player gets 4-7 cards depending on the table size
    - On your turn: play a card matching the top card's suit or value, or draw
    - 2 stacks a forced draw, 4 skips, 10 is wild, 11 plays again, 12 reverses
    - Announce your last card, or anyone can call "¡Jodete!" for +2 cards
    - First player to empty their hand wins

Turn Order:
    Players act in list order. direction is +1 or -1 and flips on every 12.
    A 12 with only two connected players also skips the opponent, so it
    behaves like a 4.
"""

import logging
import random
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from constants import (
    ACTION_LOG_LIMIT,
    ACTION_LOG_TAIL,
    ACTION_VALUES,
    CARD_VALUES,
    DRAW_TWO_PENALTY,
    JODETE_PENALTY,
    MAX_PLAYER_NAME_LENGTH,
    MIN_PLAYERS,
    OUT_OF_TURN_PENALTY,
    START_CARD_MAX_ATTEMPTS,
    VALUE_NAMES,
    allowed_hand_sizes,
)
from errors import (
    AlreadyStarted,
    CardNotInHand,
    CardNotPlayable,
    DeckExhausted,
    InsufficientPlayers,
    InvalidTarget,
    MatchInProgress,
    MatchNotInProgress,
    MissingSuitChoice,
    MustFollowRepeatConstraint,
    MustRespondToPendingDraw,
    NotEligible,
    NotHost,
    NotInRoom,
    NotYourTurn,
    SeatTaken,
    UnsupportedPlayerCount,
)
from models.events import EventType, GameEvent

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def clean_name(name: Optional[str], limit: int = MAX_PLAYER_NAME_LENGTH) -> str:
    """Trim a display name and cap its length. Returns "" for blank names."""
    return (name or "").strip()[:limit]


class Suit(Enum):
    """The four suits of the Spanish deck."""

    GOLD = "gold"        # oros
    CUPS = "cups"        # copas
    SWORDS = "swords"    # espadas
    CLUBS = "clubs"      # bastos


def parse_suit(value: Any) -> Optional[Suit]:
    """Convert a client-supplied suit to a Suit, or None if invalid."""
    if isinstance(value, Suit):
        return value
    try:
        return Suit(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class Card:
    """
    A single card. Immutable; ids are unique within a deck.

    Attributes:
        suit: The card's suit.
        value: One of 1-7, 10, 11, 12.
        id: Opaque identifier used by clients to reference the card.
    """

    suit: Suit
    value: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_action(self) -> bool:
        return self.value in ACTION_VALUES

    def describe(self) -> str:
        return f"{VALUE_NAMES[self.value]} of {self.suit.value}"

    def to_dict(self) -> dict:
        return {"id": self.id, "suit": self.suit.value, "value": self.value}

    @classmethod
    def from_dict(cls, d: dict) -> "Card":
        return cls(suit=Suit(d["suit"]), value=d["value"], id=d["id"])


class Deck:
    """
    Draw pile and discard pile of one match.

    The top of the draw pile is index 0. The top of the discard pile is the
    last element. When the draw pile runs out, every discard except the top
    one is reshuffled into a new draw pile.
    """

    def __init__(
        self,
        draw_pile: Optional[list[Card]] = None,
        discard_pile: Optional[list[Card]] = None,
        seed: Optional[int] = None,
    ) -> None:
        """
        Initialize a deck.

        Args:
            draw_pile: Existing draw pile (restoring a snapshot). If None, a
                fresh shuffled 40-card deck is built.
            discard_pile: Existing discard pile.
            seed: Optional seed for deterministic shuffles. If None, a random
                seed is generated and stored.
        """
        self.seed: int = seed if seed is not None else random.randint(0, 2**31 - 1)
        self._rng = random.Random(self.seed)
        self.draw_pile: list[Card] = (
            list(draw_pile) if draw_pile is not None else self.build(self._rng)
        )
        self.discard_pile: list[Card] = list(discard_pile or [])

    @staticmethod
    def build(rng: Optional[random.Random] = None) -> list[Card]:
        """Create all 40 cards and return them uniformly shuffled."""
        cards = [Card(suit, value) for suit in Suit for value in CARD_VALUES]
        (rng or random.Random()).shuffle(cards)
        return cards

    def top(self) -> Optional[Card]:
        """Get the top card of the discard pile (if any)."""
        if self.discard_pile:
            return self.discard_pile[-1]
        return None

    def available(self) -> int:
        """Number of cards that can be drawn, counting recyclable discards."""
        return len(self.draw_pile) + max(0, len(self.discard_pile) - 1)

    def recycle(self) -> None:
        """Shuffle all discards but the top one back into the draw pile."""
        if len(self.discard_pile) <= 1:
            return
        top = self.discard_pile[-1]
        recycled = self.discard_pile[:-1]
        self._rng.shuffle(recycled)
        self.draw_pile = recycled
        self.discard_pile = [top]
        logger.debug(f"Recycled {len(recycled)} discards into the draw pile")

    def draw(self) -> Card:
        """
        Remove and return the top card of the draw pile.

        Raises:
            DeckExhausted: If no card is left even after recycling.
        """
        if not self.draw_pile:
            self.recycle()
        if not self.draw_pile:
            raise DeckExhausted("No cards left to draw")
        return self.draw_pile.pop(0)

    def draw_many(self, count: int) -> list[Card]:
        """
        Draw several cards, or none at all if not enough are available.

        Raises:
            DeckExhausted: If fewer than `count` cards can be drawn.
        """
        if count > self.available():
            raise DeckExhausted(
                f"Cannot draw {count} cards, only {self.available()} available"
            )
        return [self.draw() for _ in range(count)]

    def discard(self, card: Card) -> None:
        self.discard_pile.append(card)

    def put_bottom(self, card: Card) -> None:
        self.draw_pile.append(card)

    def return_cards(self, cards: list[Card]) -> None:
        """Put cards back into the draw pile and reshuffle it."""
        self.draw_pile.extend(cards)
        self._rng.shuffle(self.draw_pile)

    def to_dict(self) -> dict:
        return {
            "seed": self.seed,
            "draw_pile": [c.to_dict() for c in self.draw_pile],
            "discard_pile": [c.to_dict() for c in self.discard_pile],
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Deck":
        return cls(
            draw_pile=[Card.from_dict(c) for c in d["draw_pile"]],
            discard_pile=[Card.from_dict(c) for c in d["discard_pile"]],
            seed=d.get("seed"),
        )


@dataclass
class Player:
    """
    A player in a Jódete match.

    Attributes:
        id: Current connection id. Changes when the player reconnects.
        name: Display name.
        token: Stable reconnection token, only ever shown to its owner.
        hand: Cards held. Order has no rule meaning but is kept stable.
        declared_last_card: Whether the player announced their last card.
        connected: Whether the player's connection is alive.
        auth_user_id: Authenticated account id (None for guests).
        special_cards_played: Count of action cards played, by value.
        jodetes_called: Successful Jodete calls made this match.
        jodetes_received: Jodete penalties received this match.
    """

    id: str
    name: str
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    hand: list[Card] = field(default_factory=list)
    declared_last_card: bool = False
    connected: bool = True
    auth_user_id: Optional[str] = None
    special_cards_played: dict[int, int] = field(default_factory=dict)
    jodetes_called: int = 0
    jodetes_received: int = 0

    def find_card(self, card_id: str) -> Optional[int]:
        """Return the hand index of a card id, or None."""
        for i, card in enumerate(self.hand):
            if card.id == card_id:
                return i
        return None

    def clear_match_state(self) -> None:
        """Drop hand, declaration and per-match counters."""
        self.hand = []
        self.declared_last_card = False
        self.special_cards_played = {}
        self.jodetes_called = 0
        self.jodetes_received = 0

    def stats_dict(self) -> dict:
        return {
            "token": self.token,
            "name": self.name,
            "auth_user_id": self.auth_user_id,
            "special_cards_played": {str(k): v for k, v in self.special_cards_played.items()},
            "jodetes_called": self.jodetes_called,
            "jodetes_received": self.jodetes_received,
            "cards_left": len(self.hand),
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "token": self.token,
            "hand": [c.to_dict() for c in self.hand],
            "declared_last_card": self.declared_last_card,
            "auth_user_id": self.auth_user_id,
            "special_cards_played": {str(k): v for k, v in self.special_cards_played.items()},
            "jodetes_called": self.jodetes_called,
            "jodetes_received": self.jodetes_received,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Player":
        return cls(
            id=d["id"],
            name=d["name"],
            token=d["token"],
            hand=[Card.from_dict(c) for c in d.get("hand", [])],
            declared_last_card=d.get("declared_last_card", False),
            connected=False,
            auth_user_id=d.get("auth_user_id"),
            special_cards_played={int(k): v for k, v in d.get("special_cards_played", {}).items()},
            jodetes_called=d.get("jodetes_called", 0),
            jodetes_received=d.get("jodetes_received", 0),
        )


@dataclass
class RepeatConstraint:
    """Obligation left by an 11: the same player plays again, same suit or another 11."""

    player_token: str
    suit: Suit


class GamePhase(Enum):
    """
    Phases of a Jódete match.

    Flow: LOBBY -> PLAYING -> FINISHED | ABANDONED
    A host reset brings FINISHED/ABANDONED (or PLAYING) back to LOBBY.
    """

    LOBBY = "lobby"            # Waiting for players, host can start
    PLAYING = "playing"        # Cards dealt, taking turns
    FINISHED = "finished"      # Someone emptied their hand (or won by forfeit)
    ABANDONED = "abandoned"    # Everyone went away mid-match


@dataclass
class Game:
    """
    Main game state and rules controller for one room.

    All operations either fully apply or raise before mutating anything, with
    one documented exception: acting out of turn draws the 2-card penalty
    and then raises NotYourTurn (with state_changed=True).

    Attributes:
        room_id: Id of the room that owns this match.
        room_name: Display name of the room.
        created_at: When the room was created.
        players: Players in turn order.
        host_id: Connection id of the host.
        deck: Draw and discard piles (None in the lobby).
        phase: Current match phase.
        current_player_index: Index of the player whose turn it is.
        direction: +1 or -1.
        pending_draw: Cards owed by the next player from stacked 2s.
        repeat_constraint: Unresolved "play again" obligation from an 11.
        suit_override: Suit chosen with the last wildcard 10.
        winner_token: Stable token of the winner (None if no winner).
        turn_number: Count of committed plays and draws.
        cards_per_player: Hand size dealt at start.
        match_key: Id of the current match run (new on every start).
        departed: Match stats of players who left the running match.
        messages: Bounded action log.
    """

    room_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    room_name: str = ""
    created_at: datetime = field(default_factory=_now)
    players: list[Player] = field(default_factory=list)
    host_id: Optional[str] = None
    deck: Optional[Deck] = None
    phase: GamePhase = GamePhase.LOBBY
    current_player_index: int = 0
    direction: int = 1
    pending_draw: int = 0
    repeat_constraint: Optional[RepeatConstraint] = None
    suit_override: Optional[Suit] = None
    winner_token: Optional[str] = None
    winner_name: Optional[str] = None
    turn_number: int = 0
    cards_per_player: Optional[int] = None
    match_key: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=_now)
    last_action: Optional[str] = None
    messages: deque = field(default_factory=lambda: deque(maxlen=ACTION_LOG_LIMIT))
    departed: list[dict] = field(default_factory=list)

    _players_by_token: dict[str, Player] = field(
        default_factory=dict, repr=False, compare=False
    )
    _event_emitter: Optional[Callable[[GameEvent], None]] = field(
        default=None, repr=False, compare=False
    )
    _sequence_num: int = field(default=0, repr=False, compare=False)

    def set_event_emitter(self, emitter: Callable[[GameEvent], None]) -> None:
        """
        Set callback for event emission.

        The emitter is called synchronously with each GameEvent after a
        mutation has been fully applied. It must not block.
        """
        self._event_emitter = emitter

    def _emit(self, event_type: EventType, player: Optional[Player] = None, **data: Any) -> None:
        if self._event_emitter is None:
            return

        self._sequence_num += 1
        event = GameEvent(
            event_type=event_type,
            room_id=self.room_id,
            match_key=self.match_key,
            sequence_num=self._sequence_num,
            player_id=player.token if player else None,
            data=data,
        )
        self._event_emitter(event)

    def _log(self, text: str, action: bool = False) -> None:
        """Append to the action log. `action` also makes it the last action."""
        now = _now()
        self.messages.append({
            "id": uuid.uuid4().hex,
            "text": text,
            "timestamp": now.isoformat(),
        })
        self.updated_at = now
        if action:
            self.last_action = text

    # -------------------------------------------------------------------------
    # Player Management
    # -------------------------------------------------------------------------

    def get_player(self, player_id: str) -> Optional[Player]:
        """Find a player by connection id."""
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def get_player_by_token(self, token: str) -> Optional[Player]:
        return self._players_by_token.get(token)

    def current_player(self) -> Optional[Player]:
        """Get the player whose turn it currently is."""
        if self.players:
            return self.players[self.current_player_index]
        return None

    def connected_players(self) -> list[Player]:
        return [p for p in self.players if p.connected]

    def connected_count(self) -> int:
        return sum(1 for p in self.players if p.connected)

    def is_empty(self) -> bool:
        return not self.players

    def host(self) -> Optional[Player]:
        return self.get_player(self.host_id) if self.host_id else None

    def join(
        self,
        connection_id: str,
        name: Optional[str],
        token: Optional[str] = None,
        auth_user_id: Optional[str] = None,
    ) -> tuple[Player, Optional[str]]:
        """
        Add a player, or rebind a returning one.

        A known token rebinds that player to the new connection. A known
        connection id just refreshes the player. New players are only
        accepted in the lobby.

        Args:
            connection_id: Transport identity of the joining connection.
            name: Requested display name.
            token: Stable token issued on a previous join, if any.
            auth_user_id: Authenticated account id (None for guests).

        Returns:
            (player, previous connection id). The previous id is only set
            for a reconnection by token; the caller must re-key any
            connection -> room mapping that used it.

        Raises:
            MatchInProgress: A new player tried to join a started match.
            SeatTaken: The connection already holds a different seat.
        """
        display_name = clean_name(name)

        if token:
            player = self._players_by_token.get(token)
            if player:
                seated = self.get_player(connection_id)
                if seated is not None and seated is not player:
                    raise SeatTaken()
                previous_id = player.id
                player.id = connection_id
                player.name = display_name or player.name
                player.connected = True
                if auth_user_id:
                    player.auth_user_id = auth_user_id
                if self.host_id == previous_id:
                    self.host_id = connection_id
                self._log(f"{player.name} reconnected to the match.")
                self._emit(EventType.PLAYER_RECONNECTED, player, player_name=player.name)
                return player, previous_id

        existing = self.get_player(connection_id)
        if existing:
            existing.name = display_name or existing.name
            existing.connected = True
            self._log(f"{existing.name} reconnected.")
            return existing, None

        if self.phase != GamePhase.LOBBY:
            raise MatchInProgress()

        player = Player(
            id=connection_id,
            name=display_name or "Player",
            auth_user_id=auth_user_id,
        )
        self.players.append(player)
        self._players_by_token[player.token] = player
        if self.host_id is None:
            self.host_id = connection_id
        self._log(f"{player.name} joined the match.")
        self._emit(
            EventType.PLAYER_JOINED,
            player,
            player_name=player.name,
            auth_user_id=auth_user_id,
        )
        return player, None

    def leave(self, connection_id: str, voluntary: bool = False) -> Optional[Player]:
        """
        Handle a player leaving or dropping.

        A network drop outside the lobby only marks the player disconnected:
        they keep their hand and seat and can reconnect with their token.
        A voluntary leave (or any drop in the lobby) removes the player.

        Returns:
            The affected player, or None if the connection is not a player.
        """
        index = self._index_of(connection_id)
        if index is None:
            return None
        player = self.players[index]

        if not voluntary and self.phase != GamePhase.LOBBY:
            player.connected = False
            self._log(f"{player.name} disconnected.")
            self._emit(EventType.PLAYER_DISCONNECTED, player)
            return player

        if self.phase == GamePhase.PLAYING:
            self.departed.append(player.stats_dict())
        self._remove_at(index)
        self._log(f"{player.name} left the match.")
        self._emit(EventType.PLAYER_LEFT, player, voluntary=voluntary)

        if self.phase == GamePhase.PLAYING and len(self.players) <= 1:
            winner = self.players[0] if self.players else None
            self._finish(winner, forfeit=True)

        return player

    def _index_of(self, connection_id: str) -> Optional[int]:
        for i, player in enumerate(self.players):
            if player.id == connection_id:
                return i
        return None

    def _remove_at(self, index: int) -> Player:
        player = self.players.pop(index)
        self._players_by_token.pop(player.token, None)
        player.connected = False

        if self.phase == GamePhase.PLAYING:
            if player.hand and self.deck:
                # Keep all 40 cards in play
                self.deck.return_cards(player.hand)
                player.hand = []
            if self.repeat_constraint and self.repeat_constraint.player_token == player.token:
                self.repeat_constraint = None

            if self.players:
                if index < self.current_player_index:
                    self.current_player_index -= 1
                elif index == self.current_player_index and self.direction == -1:
                    self.current_player_index = index - 1
                self.current_player_index %= len(self.players)
            else:
                self.current_player_index = 0
        elif self.players:
            self.current_player_index %= len(self.players)
        else:
            self.current_player_index = 0

        if self.host_id == player.id:
            self.host_id = self.players[0].id if self.players else None
            if self.players:
                self._log(f"{self.players[0].name} is the new host.")

        return player

    # -------------------------------------------------------------------------
    # Match Lifecycle
    # -------------------------------------------------------------------------

    def allowed_hand_sizes(self) -> list[int]:
        """Hand sizes the host may pick for the current connected players."""
        return allowed_hand_sizes(self.connected_count())

    def start(self, requester_id: str, cards_per_player: Optional[int] = None) -> None:
        """
        Deal a new match.

        Args:
            requester_id: Connection id asking to start (must be the host).
            cards_per_player: Requested hand size. Falls back to the default
                for the table size if not allowed.

        Raises:
            NotHost, AlreadyStarted, InsufficientPlayers, UnsupportedPlayerCount.
        """
        if requester_id != self.host_id:
            raise NotHost("Only the host can start the match")
        if self.phase != GamePhase.LOBBY:
            raise AlreadyStarted()

        connected = self.connected_players()
        if len(connected) < MIN_PLAYERS:
            raise InsufficientPlayers()

        allowed = allowed_hand_sizes(len(connected))
        if not allowed:
            raise UnsupportedPlayerCount()

        hand_size = cards_per_player if cards_per_player in allowed else allowed[0]

        for player in [p for p in self.players if not p.connected]:
            self._remove_at(self.players.index(player))

        self.deck = Deck()
        for player in self.players:
            player.clear_match_state()
            player.hand = self.deck.draw_many(hand_size)

        self.deck.discard(self._pick_starting_card())

        self.phase = GamePhase.PLAYING
        self.current_player_index = 0
        self.direction = 1
        self.pending_draw = 0
        self.repeat_constraint = None
        self.suit_override = None
        self.winner_token = None
        self.winner_name = None
        self.turn_number = 0
        self.cards_per_player = hand_size
        self.match_key = str(uuid.uuid4())
        self.departed = []
        self.started_at = _now()
        self.finished_at = None

        first = self.current_player()
        self._log(f"The match started. {first.name} goes first.", action=True)
        logger.info(
            f"Match {self.match_key} started in room {self.room_id}: "
            f"{len(self.players)} players, {hand_size} cards each"
        )
        self._emit(
            EventType.MATCH_STARTED,
            first,
            description=self.last_action,
            turn_number=self.turn_number,
            cards_per_player=hand_size,
            started_at=_isoformat(self.started_at),
            players=[p.stats_dict() for p in self.players],
            snapshot=self.to_snapshot(),
        )

    def _pick_starting_card(self) -> Card:
        """
        Draw the first discard, avoiding action cards.

        Rejected action cards go to the bottom of the draw pile. After
        START_CARD_MAX_ATTEMPTS rejections the last drawn card is used
        whatever its value.
        """
        card = self.deck.draw()
        attempts = 0
        while card.is_action and attempts < START_CARD_MAX_ATTEMPTS:
            self.deck.put_bottom(card)
            card = self.deck.draw()
            attempts += 1

        if card.is_action:
            logger.warning(
                f"No non-action starting card after {attempts} attempts in room "
                f"{self.room_id}, starting with {card.describe()}"
            )
        return card

    def _finish(self, winner: Optional[Player], forfeit: bool = False) -> None:
        self.phase = GamePhase.FINISHED
        self.finished_at = _now()
        self.winner_token = winner.token if winner else None
        self.winner_name = winner.name if winner else None

        if winner is None:
            text = "The match ended with no winner."
        elif forfeit:
            text = f"{winner.name} won the match by forfeit."
        else:
            text = f"{winner.name} won the match. Congratulations!"
        self._log(text, action=True)
        logger.info(f"Match {self.match_key} finished in room {self.room_id}: {text}")

        self._emit(
            EventType.MATCH_FINISHED,
            winner,
            description=text,
            turn_number=self.turn_number,
            forfeit=forfeit,
            winner_auth_user_id=winner.auth_user_id if winner else None,
            cards_per_player=self.cards_per_player,
            started_at=_isoformat(self.started_at),
            finished_at=_isoformat(self.finished_at),
            players=[p.stats_dict() for p in self.players] + self.departed,
            snapshot=self.to_snapshot(),
        )

    def abandon(self) -> bool:
        """
        Mark a running match as abandoned.

        Returns:
            True if the match was playing and is now abandoned.
        """
        if self.phase != GamePhase.PLAYING:
            return False
        self.phase = GamePhase.ABANDONED
        self.finished_at = _now()
        self._log("The match was abandoned.", action=True)
        logger.info(f"Match {self.match_key} abandoned in room {self.room_id}")
        self._emit(
            EventType.MATCH_ABANDONED,
            turn_number=self.turn_number,
            cards_per_player=self.cards_per_player,
            started_at=_isoformat(self.started_at),
            finished_at=_isoformat(self.finished_at),
            snapshot=self.to_snapshot(),
        )
        return True

    def reset(self, requester_id: str) -> None:
        """
        Return the room to the lobby, keeping connected players.

        Raises:
            NotHost: The requester is not the host.
        """
        if requester_id != self.host_id:
            raise NotHost("Only the host can reset the match")

        self.abandon()

        preserved = [p for p in self.players if p.connected]
        for player in preserved:
            player.clear_match_state()
        self.players = preserved
        self._players_by_token = {p.token: p for p in preserved}
        self.host_id = preserved[0].id if preserved else None

        self.deck = None
        self.phase = GamePhase.LOBBY
        self.current_player_index = 0
        self.direction = 1
        self.pending_draw = 0
        self.repeat_constraint = None
        self.suit_override = None
        self.winner_token = None
        self.winner_name = None
        self.turn_number = 0
        self.cards_per_player = None
        self.match_key = None
        self.started_at = None
        self.finished_at = None
        self.last_action = None
        self.departed = []
        self.messages.clear()

        self._log("The match was reset. Waiting for the host to start again.")
        self._emit(EventType.MATCH_RESET)

    # -------------------------------------------------------------------------
    # Turn Actions
    # -------------------------------------------------------------------------

    def _require_playing(self) -> None:
        if self.phase != GamePhase.PLAYING:
            raise MatchNotInProgress()

    def _require_player(self, player_id: str) -> Player:
        player = self.get_player(player_id)
        if player is None:
            raise NotInRoom("You are not a player in this match")
        return player

    def _validate_turn(self, player_id: str) -> Player:
        """Check the caller is the active player; penalize them if not."""
        self._require_playing()
        player = self._require_player(player_id)
        active = self.current_player()
        if active is None or active.id != player_id:
            self._penalize(player, OUT_OF_TURN_PENALTY, "acting out of turn")
            raise NotYourTurn(state_changed=True)
        return player

    def _penalize(self, player: Player, count: int, reason: str) -> list[Card]:
        cards = self.deck.draw_many(count)
        player.hand.extend(cards)
        player.declared_last_card = False
        self._log(f"{player.name} drew {count} penalty card(s). Reason: {reason}.")
        self._emit(
            EventType.PENALTY,
            player,
            count=count,
            reason=reason,
            description=f"{player.name} drew {count} penalty card(s): {reason}",
            turn_number=self.turn_number,
        )
        return cards

    def current_suit(self) -> Optional[Suit]:
        """The suit to follow: the wildcard choice if any, else the top card's suit."""
        if self.suit_override:
            return self.suit_override
        top = self.deck.top() if self.deck else None
        return top.suit if top else None

    def is_playable(self, card: Card, player: Optional[Player] = None) -> bool:
        """
        Check whether a card can be played on the current discard top.

        When `player` is given and an 11 obliges that player to play again,
        only cards of the constrained suit or another 11 count as playable.
        """
        top = self.deck.top() if self.deck else None
        if top is None:
            return True

        if self.pending_draw > 0:
            return card.value == 2

        constraint = self.repeat_constraint
        if player is not None and constraint and constraint.player_token == player.token:
            if card.value != 11 and card.suit != constraint.suit:
                return False

        if card.value == 10:
            return True
        if card.value == top.value:
            return True
        return card.suit == self.current_suit()

    def playable_card_ids(self, player: Player) -> list[str]:
        return [c.id for c in player.hand if self.is_playable(c, player)]

    def _has_playable(self, player: Player) -> bool:
        return any(self.is_playable(c, player) for c in player.hand)

    def _advance_turn(self, skip_next: bool = False) -> None:
        if not self.players:
            return
        steps = 2 if skip_next else 1
        self.current_player_index = (
            self.current_player_index + steps * self.direction
        ) % len(self.players)

    def play(self, player_id: str, card_id: str, chosen_suit: Any = None) -> Card:
        """
        Play a card from the active player's hand.

        Args:
            player_id: Connection id of the player.
            card_id: Id of the card to play.
            chosen_suit: Suit to follow after a wildcard 10.

        Returns:
            The played card.

        Raises:
            MatchNotInProgress, NotInRoom, NotYourTurn, CardNotInHand,
            MustRespondToPendingDraw, MustFollowRepeatConstraint,
            CardNotPlayable, MissingSuitChoice.
        """
        player = self._validate_turn(player_id)

        index = player.find_card(card_id)
        if index is None:
            raise CardNotInHand()
        card = player.hand[index]

        if self.pending_draw > 0 and card.value != 2:
            raise MustRespondToPendingDraw()

        constraint = self.repeat_constraint
        if (
            constraint
            and constraint.player_token == player.token
            and card.value != 11
            and card.suit != constraint.suit
        ):
            raise MustFollowRepeatConstraint()

        if not self.is_playable(card, player):
            raise CardNotPlayable()

        suit = None
        if card.value == 10:
            suit = parse_suit(chosen_suit)
            if suit is None:
                raise MissingSuitChoice()

        # --- Validation done, apply ---
        player.hand.pop(index)
        self.deck.discard(card)
        self.turn_number += 1

        message = f"{player.name} played {card.describe()}."
        skip_next = False
        advance = True

        if card.value == 2:
            self.pending_draw += DRAW_TWO_PENALTY
            message += (
                f" The next player must draw {self.pending_draw} card(s)"
                " or answer with another 2."
            )
        elif card.value == 4:
            skip_next = True
            message += " The next player is skipped."
        elif card.value == 10:
            message += f" The suit to follow is now {suit.value}."
        elif card.value == 11:
            self.repeat_constraint = RepeatConstraint(player.token, card.suit)
            advance = False
            message += " They must play again with the same suit or an 11."
        elif card.value == 12:
            self.direction *= -1
            if self.connected_count() <= 2:
                skip_next = True
            message += " The direction of play is reversed."

        if card.value != 11:
            self.repeat_constraint = None
        self.suit_override = suit

        if card.is_action:
            player.special_cards_played[card.value] = (
                player.special_cards_played.get(card.value, 0) + 1
            )
        if len(player.hand) != 1:
            player.declared_last_card = False

        self._log(message, action=True)
        self._emit(
            EventType.CARD_PLAYED,
            player,
            card=card.to_dict(),
            chosen_suit=suit.value if suit else None,
            description=message,
            turn_number=self.turn_number,
        )

        if not player.hand:
            self._finish(player)
            return card

        if advance:
            self._advance_turn(skip_next)
        return card

    def draw(self, player_id: str) -> list[Card]:
        """
        Draw for the active player.

        With stacked 2s pending, the player takes all of them; otherwise one
        card. The turn passes only if the player has nothing playable left.

        Returns:
            The drawn cards.
        """
        player = self._validate_turn(player_id)

        forced = self.pending_draw > 0
        if forced:
            count = self.pending_draw
            cards = self.deck.draw_many(count)
            self.pending_draw = 0
            self.repeat_constraint = None
            message = f"{player.name} drew {count} card(s) from the stacked 2s."
        else:
            cards = [self.deck.draw()]
            message = f"{player.name} drew a card."

        player.hand.extend(cards)
        player.declared_last_card = False
        self.turn_number += 1

        if not forced and self.is_playable(cards[0], player):
            message += " The drawn card can be played right away."
        elif self._has_playable(player):
            message += " They have playable cards."
        else:
            message += " No playable cards, the turn passes."
            self.repeat_constraint = None
            self._advance_turn()

        self._log(message, action=True)
        self._emit(
            EventType.CARD_DRAWN,
            player,
            count=len(cards),
            forced=forced,
            description=message,
            turn_number=self.turn_number,
        )
        return cards

    def declare_last_card(self, player_id: str) -> None:
        """
        Announce that the player holds a single card.

        Raises:
            NotEligible: The player does not hold exactly one card.
        """
        self._require_playing()
        player = self._require_player(player_id)
        if len(player.hand) != 1:
            raise NotEligible()

        player.declared_last_card = True
        message = f"{player.name} declared their last card."
        self._log(message, action=True)
        self._emit(
            EventType.LAST_CARD_DECLARED,
            player,
            description=message,
            turn_number=self.turn_number,
        )

    def call_jodete(self, caller_id: str, target_id: str) -> None:
        """
        Penalize a player who is down to one card without declaring it.

        Raises:
            InvalidTarget: The target does not hold exactly one undeclared card.
        """
        self._require_playing()
        caller = self._require_player(caller_id)
        target = self.get_player(target_id)
        if (
            target is None
            or target is caller
            or len(target.hand) != 1
            or target.declared_last_card
        ):
            raise InvalidTarget()

        self._penalize(target, JODETE_PENALTY, "did not declare their last card")
        caller.jodetes_called += 1
        target.jodetes_received += 1

        message = f"{caller.name} called ¡Jodete! on {target.name}."
        self._log(message, action=True)
        self._emit(
            EventType.JODETE_CALLED,
            caller,
            target=target.token,
            target_name=target.name,
            description=message,
            turn_number=self.turn_number,
        )

    # -------------------------------------------------------------------------
    # State Queries
    # -------------------------------------------------------------------------

    def discard_top(self) -> Optional[Card]:
        return self.deck.top() if self.deck else None

    def get_state(self, for_player_id: Optional[str]) -> dict:
        """
        Get the match state as seen by one player.

        Only the requesting player's own cards and token are included;
        everybody else is reduced to a card count.

        Args:
            for_player_id: Connection id of the receiving player.

        Returns:
            JSON-serializable dict.
        """
        me = self.get_player(for_player_id) if for_player_id else None
        current = self.current_player() if self.phase == GamePhase.PLAYING else None
        top = self.discard_top()
        current_suit = self.current_suit()
        winner = self._players_by_token.get(self.winner_token) if self.winner_token else None

        return {
            "room_id": self.room_id,
            "room_name": self.room_name,
            "phase": self.phase.value,
            "me": {
                "id": me.id,
                "name": me.name,
                "token": me.token,
                "hand": [c.to_dict() for c in me.hand],
                "playable_card_ids": self.playable_card_ids(me),
                "declared_last_card": me.declared_last_card,
            } if me else None,
            "players": [
                {
                    "id": p.id,
                    "name": p.name,
                    "card_count": len(p.hand),
                    "declared_last_card": p.declared_last_card,
                    "connected": p.connected,
                    "is_current": current is not None and p is current,
                    "is_host": p.id == self.host_id,
                }
                for p in self.players
            ],
            "current_player_id": current.id if current else None,
            "host_id": self.host_id,
            "top_card": top.to_dict() if top else None,
            "current_suit": current_suit.value if current_suit else None,
            "pending_draw": self.pending_draw,
            "direction": self.direction,
            "turn_number": self.turn_number,
            "last_action": self.last_action,
            "winner_id": winner.id if winner else None,
            "winner_name": self.winner_name,
            "deck_count": len(self.deck.draw_pile) if self.deck else 0,
            "discard_count": len(self.deck.discard_pile) if self.deck else 0,
            "messages": list(self.messages)[-ACTION_LOG_TAIL:],
            "cards_per_player_options": self.allowed_hand_sizes(),
        }

    def get_summary(self) -> dict:
        """Room list entry for this match."""
        host = self.host()
        return {
            "id": self.room_id,
            "name": self.room_name,
            "phase": self.phase.value,
            "created_at": self.created_at.isoformat(),
            "player_count": self.connected_count(),
            "total_players": len(self.players),
            "host_name": host.name if host else None,
            "players": [
                {"id": p.id, "name": p.name, "connected": p.connected}
                for p in self.players
            ],
        }

    def card_count(self) -> int:
        """Total cards across piles and hands (40 while playing)."""
        in_hands = sum(len(p.hand) for p in self.players)
        if not self.deck:
            return in_hands
        return len(self.deck.draw_pile) + len(self.deck.discard_pile) + in_hands

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def to_snapshot(self) -> dict:
        """
        Serialize the full server-side state, hands included.

        Never send this to a client.
        """
        return {
            "room_id": self.room_id,
            "room_name": self.room_name,
            "created_at": self.created_at.isoformat(),
            "phase": self.phase.value,
            "players": [p.to_dict() for p in self.players],
            "host_id": self.host_id,
            "deck": self.deck.to_dict() if self.deck else None,
            "current_player_index": self.current_player_index,
            "direction": self.direction,
            "pending_draw": self.pending_draw,
            "repeat_constraint": {
                "player_token": self.repeat_constraint.player_token,
                "suit": self.repeat_constraint.suit.value,
            } if self.repeat_constraint else None,
            "suit_override": self.suit_override.value if self.suit_override else None,
            "winner_token": self.winner_token,
            "winner_name": self.winner_name,
            "turn_number": self.turn_number,
            "cards_per_player": self.cards_per_player,
            "match_key": self.match_key,
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
            "last_action": self.last_action,
            "messages": list(self.messages),
            "departed": list(self.departed),
        }

    @classmethod
    def from_snapshot(cls, data: dict) -> "Game":
        """
        Rebuild a match from to_snapshot() output.

        Every restored player starts disconnected and must reconnect with
        their token.
        """
        constraint = data.get("repeat_constraint")
        game = cls(
            room_id=data["room_id"],
            room_name=data.get("room_name", ""),
            created_at=_parse_datetime(data.get("created_at")) or _now(),
            players=[Player.from_dict(p) for p in data.get("players", [])],
            host_id=data.get("host_id"),
            deck=Deck.from_dict(data["deck"]) if data.get("deck") else None,
            phase=GamePhase(data["phase"]),
            current_player_index=data.get("current_player_index", 0),
            direction=data.get("direction", 1),
            pending_draw=data.get("pending_draw", 0),
            repeat_constraint=RepeatConstraint(
                player_token=constraint["player_token"],
                suit=Suit(constraint["suit"]),
            ) if constraint else None,
            suit_override=parse_suit(data.get("suit_override")),
            winner_token=data.get("winner_token"),
            winner_name=data.get("winner_name"),
            turn_number=data.get("turn_number", 0),
            cards_per_player=data.get("cards_per_player"),
            match_key=data.get("match_key"),
            started_at=_parse_datetime(data.get("started_at")),
            finished_at=_parse_datetime(data.get("finished_at")),
            last_action=data.get("last_action"),
            departed=list(data.get("departed", [])),
        )
        game.messages.extend(data.get("messages", []))
        game._players_by_token = {p.token: p for p in game.players}
        return game
