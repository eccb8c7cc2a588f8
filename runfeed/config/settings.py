from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RELAYS = ",".join(
    [
        "wss://relay.damus.io",
        "wss://nos.lol",
        "wss://relay.nostr.band",
        "wss://relay.snort.social",
        "wss://purplepag.es",
    ]
)


class Settings(BaseSettings):
    relays: str = Field(default=DEFAULT_RELAYS, validation_alias="RUNFEED_RELAYS")  # Comma-separated list
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="RUNFEED_LOG_FILE")
    cache_namespace: str = Field(default="runfeed", validation_alias="RUNFEED_CACHE_NAMESPACE")

    probe_timeout_seconds: float = Field(default=8.0, validation_alias="RUNFEED_PROBE_TIMEOUT")
    fetch_timeout_seconds: float = Field(default=15.0, validation_alias="RUNFEED_FETCH_TIMEOUT")
    supplementary_timeout_seconds: float = Field(default=10.0, validation_alias="RUNFEED_SUPPLEMENTARY_TIMEOUT")
    subscription_timeout_seconds: float = Field(default=30.0, validation_alias="RUNFEED_SUBSCRIPTION_TIMEOUT")

    feed_cache_ttl_seconds: int = Field(
        default=5 * 60,
        validation_alias="RUNFEED_FEED_CACHE_TTL",
        description="TTL for the main feed cache entry",
    )
    event_feed_cache_ttl_seconds: int = Field(
        default=15 * 60,
        validation_alias="RUNFEED_EVENT_FEED_CACHE_TTL",
        description="TTL for event-scoped (date/activity bound) feed entries",
    )
    freshness_seconds: int = Field(
        default=60,
        validation_alias="RUNFEED_FRESHNESS",
        description="Cached feeds older than this get a background refresh",
    )
    background_refresh_interval_seconds: int = Field(default=3 * 60, validation_alias="RUNFEED_REFRESH_INTERVAL")

    fetch_limit: int = Field(default=21, validation_alias="RUNFEED_FETCH_LIMIT")
    default_filter_limit: int = Field(default=50, validation_alias="RUNFEED_DEFAULT_FILTER_LIMIT")
    display_step: int = Field(default=7, validation_alias="RUNFEED_DISPLAY_STEP")
    fallback_search_hours: int = Field(default=72, validation_alias="RUNFEED_FALLBACK_SEARCH_HOURS")

    dedup_close_distance_km: float = Field(default=0.05, validation_alias="RUNFEED_DEDUP_CLOSE_DISTANCE_KM")
    dedup_close_time_seconds: int = Field(default=600, validation_alias="RUNFEED_DEDUP_CLOSE_TIME")
    dedup_loose_distance_km: float = Field(default=0.1, validation_alias="RUNFEED_DEDUP_LOOSE_DISTANCE_KM")
    dedup_content_time_seconds: int = Field(default=3600, validation_alias="RUNFEED_DEDUP_CONTENT_TIME")

    retry_max_attempts: int = Field(default=3, validation_alias="RUNFEED_RETRY_MAX_ATTEMPTS")
    retry_base_delay_seconds: float = Field(default=1.0, validation_alias="RUNFEED_RETRY_BASE_DELAY")
    retry_max_delay_seconds: float = Field(default=10.0, validation_alias="RUNFEED_RETRY_MAX_DELAY")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate that log level is one of the standard logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            logger.warning(f"Invalid LOG_LEVEL '{value}'. Valid levels are: {', '.join(valid_levels)}. Defaulting to INFO.")
            return "INFO"
        return upper_value

    @field_validator("relays")
    @classmethod
    def validate_relays(cls, value: str) -> str:
        """Warn about relay URLs that are not websocket URLs.

        Non-websocket entries are dropped; an empty result falls back to the default relay set.
        """
        urls = [url.strip() for url in value.split(",") if url.strip()]
        valid = [url for url in urls if url.startswith(("wss://", "ws://"))]
        if len(valid) != len(urls):
            logger.warning(f"RUNFEED_RELAYS contains non-websocket URLs, ignoring them: {sorted(set(urls) - set(valid))}")
        if not valid:
            logger.warning("RUNFEED_RELAYS is empty after validation. Falling back to the default relay set.")
            return DEFAULT_RELAYS
        return ",".join(valid)

    @field_validator("display_step", "fetch_limit", "default_filter_limit", "retry_max_attempts")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Counts below one would stall pagination or retries; clamp them to one."""
        if value < 1:
            logger.warning(f"Invalid non-positive setting value {value}. Using 1.")
            return 1
        return value

    @property
    def relay_urls(self) -> list[str]:
        return [url.strip() for url in self.relays.split(",") if url.strip()]


settings = Settings()
