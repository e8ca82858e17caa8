"""Services package for Jódete match persistence."""

from .persistence import NullGateway, PersistenceGateway, StatsDelta
from .match_recorder import MatchRecorder

__all__ = [
    "NullGateway",
    "PersistenceGateway",
    "StatsDelta",
    "MatchRecorder",
]
