"""Runtime settings for feedsync, read from the environment."""

import os
from dataclasses import dataclass

from feedsync.feed_parser import (
    DEFAULT_MAX_PAYLOAD_BYTES,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_USER_AGENT,
)

DEFAULT_DB_PATH = "feedsync.db"
CHECKPOINT_DB_PATH = "feedsync_checkpoints.db"
DEFAULT_SYNC_INTERVAL_MINUTES = 60
DEFAULT_MAX_CONCURRENT_FETCHES = 8

# Same upper bound crontab-style schedules allow: once a day.
MAX_SYNC_INTERVAL_MINUTES = 1440


class ConfigError(Exception):
    """Raised when a setting has an unusable value."""


@dataclass
class SyncConfig:
    """Settings consumed by the sync engine and scheduler."""

    db_path: str = DEFAULT_DB_PATH
    checkpoint_path: str = CHECKPOINT_DB_PATH
    sync_interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES
    max_concurrent_fetches: int = DEFAULT_MAX_CONCURRENT_FETCHES
    per_feed_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES
    user_agent: str = DEFAULT_USER_AGENT

    def __post_init__(self):
        validate_interval(self.sync_interval_minutes)
        if self.max_concurrent_fetches < 1:
            raise ConfigError("max_concurrent_fetches must be at least 1")
        if self.per_feed_timeout_seconds <= 0:
            raise ConfigError("per_feed_timeout_seconds must be positive")
        if self.max_payload_bytes <= 0:
            raise ConfigError("max_payload_bytes must be positive")

    @classmethod
    def from_env(cls, environ=None) -> "SyncConfig":
        """Build settings from FEEDSYNC_* environment variables."""
        env = os.environ if environ is None else environ
        return cls(
            db_path=env.get("FEEDSYNC_DB_PATH", DEFAULT_DB_PATH),
            checkpoint_path=env.get("FEEDSYNC_CHECKPOINT_PATH", CHECKPOINT_DB_PATH),
            sync_interval_minutes=_number(
                env, "FEEDSYNC_SYNC_INTERVAL_MINUTES", DEFAULT_SYNC_INTERVAL_MINUTES, int
            ),
            max_concurrent_fetches=_number(
                env, "FEEDSYNC_MAX_CONCURRENT_FETCHES", DEFAULT_MAX_CONCURRENT_FETCHES, int
            ),
            per_feed_timeout_seconds=_number(
                env, "FEEDSYNC_PER_FEED_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS, float
            ),
            max_payload_bytes=_number(
                env, "FEEDSYNC_MAX_PAYLOAD_BYTES", DEFAULT_MAX_PAYLOAD_BYTES, int
            ),
            user_agent=env.get("FEEDSYNC_USER_AGENT", DEFAULT_USER_AGENT),
        )


def validate_interval(minutes) -> int:
    """Check a scheduler interval in minutes, returning it unchanged."""
    if isinstance(minutes, bool) or not isinstance(minutes, int):
        raise ConfigError(f"Sync interval must be a whole number of minutes, got {minutes!r}")
    if not 1 <= minutes <= MAX_SYNC_INTERVAL_MINUTES:
        raise ConfigError(
            f"Sync interval must be between 1 and {MAX_SYNC_INTERVAL_MINUTES} minutes"
        )
    return minutes


def _number(env, name: str, default, cast):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
