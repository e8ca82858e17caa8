"""
Error types raised by the game engine and the room coordinator.

GameError subclasses are expected: they describe a client request that does
not fit the current match state and carry a human-readable message that is
sent back to that client verbatim.

DeckExhausted is not a GameError. It signals a broken card-conservation
invariant and is reported to clients only as a generic server error.
"""


class GameError(Exception):
    """Base exception for errors caused by a client request."""

    code = "GAME_ERROR"
    default_message = "Action not allowed"

    def __init__(self, message: str = "", state_changed: bool = False):
        self.message = message or self.default_message
        # True when the rejected action still changed the match (out-of-turn penalty)
        self.state_changed = state_changed
        super().__init__(self.message)


class RuleViolation(GameError):
    """The request breaks a game rule; the match is left unchanged."""

    code = "RULE_VIOLATION"


class PreconditionFailed(GameError):
    """The request is not valid for the current room or match phase."""

    code = "PRECONDITION_FAILED"


# ---------------------------------------------------------------------------
# Rule violations
# ---------------------------------------------------------------------------

class NotYourTurn(RuleViolation):
    code = "NOT_YOUR_TURN"
    default_message = "It is not your turn"


class CardNotInHand(RuleViolation):
    code = "CARD_NOT_IN_HAND"
    default_message = "That card is not in your hand"


class CardNotPlayable(RuleViolation):
    code = "CARD_NOT_PLAYABLE"
    default_message = "The card does not match the current suit or value"


class MustRespondToPendingDraw(RuleViolation):
    code = "MUST_RESPOND_TO_PENDING_DRAW"
    default_message = "You must answer the 2 with another 2 or draw"


class MustFollowRepeatConstraint(RuleViolation):
    code = "MUST_FOLLOW_REPEAT_CONSTRAINT"
    default_message = "You must play again with the same suit or another 11"


class MissingSuitChoice(RuleViolation):
    code = "MISSING_SUIT_CHOICE"
    default_message = "You must choose a valid suit for the wildcard 10"


class NotEligible(RuleViolation):
    code = "NOT_ELIGIBLE"
    default_message = "You can only declare your last card when you hold exactly one"


class InvalidTarget(RuleViolation):
    code = "INVALID_TARGET"
    default_message = "Jodete does not apply to that player right now"


# ---------------------------------------------------------------------------
# Precondition failures
# ---------------------------------------------------------------------------

class NotHost(PreconditionFailed):
    code = "NOT_HOST"
    default_message = "Only the host can do that"


class AlreadyStarted(PreconditionFailed):
    code = "ALREADY_STARTED"
    default_message = "The match has already started"


class InsufficientPlayers(PreconditionFailed):
    code = "INSUFFICIENT_PLAYERS"
    default_message = "At least two connected players are needed"


class UnsupportedPlayerCount(PreconditionFailed):
    code = "UNSUPPORTED_PLAYER_COUNT"
    default_message = "Unsupported number of players"


class MatchInProgress(PreconditionFailed):
    code = "MATCH_IN_PROGRESS"
    default_message = "The match is in progress. Wait for the next one to join"


class MatchNotInProgress(PreconditionFailed):
    code = "MATCH_NOT_IN_PROGRESS"
    default_message = "There is no match in progress"


class SeatTaken(PreconditionFailed):
    code = "SEAT_TAKEN"
    default_message = "You already hold another seat in this match"


class RoomNotFound(PreconditionFailed):
    code = "ROOM_NOT_FOUND"
    default_message = "The selected room no longer exists"


class NotInRoom(PreconditionFailed):
    code = "NOT_IN_ROOM"
    default_message = "You need to join a room first"


# ---------------------------------------------------------------------------
# Internal errors
# ---------------------------------------------------------------------------

class DeckExhausted(Exception):
    """No card could be drawn even after recycling the discard pile."""


class PersistenceError(Exception):
    """A persistence gateway call failed."""
