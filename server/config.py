"""
Centralized configuration for the Jódete game server.

Configuration is loaded from (in order of precedence):
1. Environment variables
2. .env file (if exists)
3. Default values

Usage:
    from config import config
    print(config.PORT)
    print(config.ROOM_TIMEOUT_MINUTES)
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def get_env(key: str, default: str = "") -> str:
    """Get environment variable with default."""
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    val = os.environ.get(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    return default


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer environment variable."""
    try:
        return int(os.environ.get(key, str(default)))
    except ValueError:
        return default


@dataclass
class ServerConfig:
    """Server configuration."""
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    # Persistence (both optional; gameplay works without them)
    POSTGRES_URL: str = ""
    REDIS_URL: str = ""

    # Error tracking
    SENTRY_DSN: str = ""

    # Shared secret used to verify externally issued identity tokens
    SECRET_KEY: str = ""

    # Room settings
    ROOM_TIMEOUT_MINUTES: int = 60
    CLEANUP_INTERVAL_SECONDS: int = 300
    MAX_ROOM_NAME_LENGTH: int = 48
    MAX_PLAYER_NAME_LENGTH: int = 32

    # Match settings
    ACTION_LOG_LIMIT: int = 200
    ACTION_LOG_TAIL: int = 20
    START_CARD_MAX_ATTEMPTS: int = 50

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Load configuration from environment variables."""
        return cls(
            HOST=get_env("HOST", "0.0.0.0"),
            PORT=get_env_int("PORT", 8000),
            DEBUG=get_env_bool("DEBUG", False),
            LOG_LEVEL=get_env("LOG_LEVEL", "INFO"),
            ENVIRONMENT=get_env("ENVIRONMENT", "development"),
            POSTGRES_URL=get_env("POSTGRES_URL", ""),
            REDIS_URL=get_env("REDIS_URL", ""),
            SENTRY_DSN=get_env("SENTRY_DSN", ""),
            SECRET_KEY=get_env("SECRET_KEY", ""),
            ROOM_TIMEOUT_MINUTES=get_env_int("ROOM_TIMEOUT_MINUTES", 60),
            CLEANUP_INTERVAL_SECONDS=get_env_int("CLEANUP_INTERVAL_SECONDS", 300),
            MAX_ROOM_NAME_LENGTH=get_env_int("MAX_ROOM_NAME_LENGTH", 48),
            MAX_PLAYER_NAME_LENGTH=get_env_int("MAX_PLAYER_NAME_LENGTH", 32),
            ACTION_LOG_LIMIT=get_env_int("ACTION_LOG_LIMIT", 200),
            ACTION_LOG_TAIL=get_env_int("ACTION_LOG_TAIL", 20),
            START_CARD_MAX_ATTEMPTS=get_env_int("START_CARD_MAX_ATTEMPTS", 50),
        )


# Global config instance - loaded once at module import
config = ServerConfig.from_env()


def reload_config() -> ServerConfig:
    """Reload configuration from environment (useful for testing)."""
    global config
    config = ServerConfig.from_env()
    return config
