"""Stores package for Jódete persistence backends."""

from .match_store import MatchStore, get_match_store, close_match_store
from .state_cache import StateCache, get_state_cache, close_state_cache

__all__ = [
    # Match history (PostgreSQL)
    "MatchStore",
    "get_match_store",
    "close_match_store",
    # Room snapshots (Redis)
    "StateCache",
    "get_state_cache",
    "close_state_cache",
]
