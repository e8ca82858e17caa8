"""
Card and table constants for Jódete.

Jódete is played with the 40-card Spanish deck: four suits (oros, copas,
espadas, bastos) and ten values per suit (1-7, 10, 11, 12).

Special cards:
    - 2: Next player draws 2 unless they answer with another 2 (stacks)
    - 4: Skips the next player
    - 10: Wildcard, the player picks the suit to follow
    - 11: The same player must play again (same suit or another 11)
    - 12: Reverses the direction of play

Limits that operators may tune live in config.py.
"""

from config import config


# =============================================================================
# Deck
# =============================================================================

CARD_VALUES: tuple[int, ...] = (1, 2, 3, 4, 5, 6, 7, 10, 11, 12)

ACTION_VALUES: frozenset[int] = frozenset({2, 4, 10, 11, 12})

DECK_SIZE = 40

VALUE_NAMES: dict[int, str] = {
    1: "Ace",
    2: "Two",
    3: "Three",
    4: "Four",
    5: "Five",
    6: "Six",
    7: "Seven",
    10: "Ten",
    11: "Eleven",
    12: "Twelve",
}


# =============================================================================
# Table
# =============================================================================

# Connected player count -> allowed cards per player (first entry is the default)
HAND_SIZE_OPTIONS: dict[int, list[int]] = {
    2: [7, 6],
    3: [6, 5],
    4: [5, 4],
    5: [4],
    6: [4],
}

MIN_PLAYERS = 2

DRAW_TWO_PENALTY = 2
OUT_OF_TURN_PENALTY = 2
JODETE_PENALTY = 2

# Room list ordering: higher sorts first
PHASE_PRIORITY: dict[str, int] = {
    "playing": 3,
    "lobby": 2,
    "finished": 1,
}

ACTION_LOG_LIMIT = config.ACTION_LOG_LIMIT
ACTION_LOG_TAIL = config.ACTION_LOG_TAIL
START_CARD_MAX_ATTEMPTS = config.START_CARD_MAX_ATTEMPTS
MAX_ROOM_NAME_LENGTH = config.MAX_ROOM_NAME_LENGTH
MAX_PLAYER_NAME_LENGTH = config.MAX_PLAYER_NAME_LENGTH


# =============================================================================
# Helper Functions
# =============================================================================

def allowed_hand_sizes(connected_players: int) -> list[int]:
    """
    Get the allowed initial hand sizes for a number of connected players.

    Args:
        connected_players: How many players are connected.

    Returns:
        Allowed sizes (first entry is the default), or [] if unsupported.
    """
    return list(HAND_SIZE_OPTIONS.get(connected_players, []))
