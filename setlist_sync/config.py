"""
Runtime settings for the synchronizer, track cache and voting engine.

Values come from SETLIST_-prefixed environment variables (or a .env file)
and fall back to the defaults below.
"""

from datetime import timedelta

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """Settings for the setlist sync service"""

    model_config = SettingsConfigDict(env_prefix="SETLIST_", env_file=".env", extra="ignore")

    # Staleness thresholds
    artist_max_age_days: float = Field(default=7.0, gt=0)
    show_max_age_hours: float = Field(default=24.0, gt=0)

    # Voting
    anonymous_vote_limit: int = Field(default=3, ge=0)

    # Track cache
    initial_song_count: int = Field(default=5, ge=0)

    # Catalog client
    catalog_market: str = "US"
    catalog_requests_per_second: float = Field(default=3.0, gt=0)
    catalog_max_retries: int = Field(default=3, ge=0)
    catalog_initial_delay: float = Field(default=1.0, ge=0)
    catalog_max_delay: float = Field(default=30.0, ge=0)
    catalog_timeout_seconds: float = Field(default=10.0, gt=0)

    # Service
    port: int = 8000
    log_level: str = "INFO"
    json_logs: bool = True

    @property
    def artist_max_age(self) -> timedelta:
        return timedelta(days=self.artist_max_age_days)

    @property
    def show_max_age(self) -> timedelta:
        return timedelta(hours=self.show_max_age_hours)
