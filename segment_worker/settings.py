"""Centralized worker configuration loaded from environment variables."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Worker configuration sourced from environment variables."""

    model_config = SettingsConfigDict(env_file=None, extra="ignore", case_sensitive=False)

    log_level: str = Field(default="INFO", description="Python logging level (e.g. INFO, DEBUG).")

    DATABASE_URL: str = Field(
        default="sqlite:///./segment_worker.db",
        description="SQLAlchemy URL of the job store (SQLite or PostgreSQL).",
    )
    WORKER_ENABLED: bool = Field(
        default=True,
        description="Start the worker pool, segment scheduler and retry manager with the app.",
    )

    # loop cadence
    POLL_INTERVAL: float = Field(
        default=5.0,
        description="Seconds between worker claim-loop ticks.",
    )
    SCHEDULER_INTERVAL: float = Field(
        default=60.0,
        description="Seconds between segment-scheduler scans.",
    )
    RETRY_INTERVAL: float = Field(
        default=5.0,
        description="Seconds between retry-manager sweeps of failed jobs.",
    )

    # worker pool / retries
    MAX_CONCURRENT_JOBS: int = Field(
        default=3,
        validation_alias=AliasChoices("MAX_CONCURRENT_JOBS", "MAX_CONCURRENCY"),
        description="Number of concurrent execution slots per worker process.",
    )
    MAX_ATTEMPTS: int = Field(
        default=3,
        description="Execution attempts before a job is moved to the dead state.",
    )
    BACKOFF_BASE: float = Field(
        default=10.0,
        description="Base delay in seconds for exponential retry backoff (base * 2**attempts).",
    )
    PROCESSING_TIMEOUT: float = Field(
        default=0.0,
        description="Seconds after which a processing job is treated as abandoned; 0 disables the sweep.",
    )

    # windows
    WINDOW_SIZE: int = Field(
        default=60,
        description="Analysis window length in seconds for finished sources.",
    )
    LIVE_WINDOW_SIZE: int = Field(
        default=20,
        description="Analysis window length in seconds for live sources.",
    )

    # per-call time bounds
    SEGMENT_FETCH_TIMEOUT: float = Field(
        default=120.0,
        description="Maximum seconds to fetch and transmux one segment.",
    )
    PRIMARY_TIMEOUT: float = Field(
        default=180.0,
        description="Maximum seconds for the primary (descriptive) analysis call.",
    )
    SECONDARY_TIMEOUT: float = Field(
        default=180.0,
        description="Maximum seconds for the secondary (object-detection) analysis call.",
    )
    HOOK_TIMEOUT: float = Field(
        default=10.0,
        description="Maximum seconds a post-commit hook may take before it is abandoned.",
    )

    # source registry
    registry_base_url: str = Field(
        default="https://api.mux.com/video/v1",
        validation_alias=AliasChoices("REGISTRY_BASE_URL", "SOURCE_REGISTRY_URL"),
        description="Base URL of the video source registry API.",
    )
    registry_token_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("REGISTRY_TOKEN_ID", "MUX_TOKEN_ID"),
        description="Basic-auth user for the source registry.",
    )
    registry_token_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("REGISTRY_TOKEN_SECRET", "MUX_TOKEN_SECRET"),
        description="Basic-auth secret for the source registry.",
    )
    REGISTRY_TIMEOUT: float = Field(
        default=15.0,
        description="Maximum seconds for a single source registry request.",
    )

    # segment transport
    playback_base_url: str = Field(
        default="https://stream.mux.com",
        description="Base URL serving HLS playlists for playback references.",
    )
    LIVE_RANGE_PARAMS: tuple[str, str] = Field(
        default=("program_start_time", "program_end_time"),
        description="Query parameters carrying the absolute program-time range for live segments.",
    )
    FINISHED_RANGE_PARAMS: tuple[str, str] = Field(
        default=("asset_start_time", "asset_end_time"),
        description="Query parameters carrying the relative asset-time range for finished segments.",
    )

    # primary analyzer
    anthropic_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ANTHROPIC_API_KEY", "CLAUDE_API_KEY"),
        description="API key for the Anthropic Claude API.",
    )
    CLAUDE_MODEL: str = Field(
        default="claude-sonnet-4-20250514",
        description="Claude model used for segment descriptions.",
    )
    CLAUDE_MAX_TOKENS: int = Field(
        default=4000,
        description="Upper bound on tokens generated for one segment analysis.",
    )
    PRIMARY_FRAME_FPS: float = Field(
        default=0.5,
        description="Keyframe sampling rate (frames per second) for the primary analyzer.",
    )
    PRIMARY_MAX_FRAMES: int = Field(
        default=30,
        description="Maximum keyframes sent to the primary analyzer per segment.",
    )

    # secondary analyzer
    detector_api_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DETECTOR_API_URL", "ROBOFLOW_API_URL"),
        description="HTTP endpoint of the object-detection model; unset disables detection.",
    )
    detector_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DETECTOR_API_KEY", "ROBOFLOW_API_KEY"),
        description="API key passed to the object-detection endpoint.",
    )
    DETECTOR_FPS: float = Field(
        default=8.0,
        description="Frame sampling rate (frames per second) for object detection.",
    )
    DETECTOR_MIN_CONFIDENCE: float = Field(
        default=0.3,
        description="Predictions below this confidence are discarded.",
    )
    DETECTOR_CLASS: str = Field(
        default="person",
        description="Class label recorded for detections from the configured model.",
    )

    # post-commit notification
    post_commit_webhook_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("POST_COMMIT_WEBHOOK_URL", "SEARCH_SYNC_URL"),
        description="URL notified after a job succeeds (e.g. a search indexer sync endpoint).",
    )
    webhook_hmac_secret: Optional[str] = Field(
        default=None, description="Optional secret used to sign post-commit notifications."
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return (value or "INFO").strip()

    @field_validator(
        "registry_token_id",
        "registry_token_secret",
        "anthropic_api_key",
        "detector_api_url",
        "detector_api_key",
        "post_commit_webhook_url",
        "webhook_hmac_secret",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = str(value).strip()
        return stripped or None

    @field_validator("registry_base_url", "playback_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return (value or "").strip().rstrip("/")

    @model_validator(mode="after")
    def _validate_bounds(self) -> "Settings":
        problems: list[str] = []
        for name in ("POLL_INTERVAL", "SCHEDULER_INTERVAL", "RETRY_INTERVAL", "BACKOFF_BASE"):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be positive")
        for name in ("WINDOW_SIZE", "LIVE_WINDOW_SIZE", "MAX_CONCURRENT_JOBS", "MAX_ATTEMPTS"):
            if getattr(self, name) < 1:
                problems.append(f"{name} must be at least 1")
        if self.PROCESSING_TIMEOUT < 0:
            problems.append("PROCESSING_TIMEOUT must not be negative")
        elif 0 < self.PROCESSING_TIMEOUT <= self.max_execution_seconds:
            # a running job never refreshes updated_at, so a shorter sweep would steal it
            problems.append(
                f"PROCESSING_TIMEOUT must exceed the longest job execution "
                f"({self.max_execution_seconds:g}s) or be 0"
            )
        if problems:
            raise ValueError("; ".join(problems))
        return self

    @property
    def max_execution_seconds(self) -> float:
        """Upper bound on how long one claimed job can stay in processing."""

        return (
            self.SEGMENT_FETCH_TIMEOUT
            + max(self.PRIMARY_TIMEOUT, self.SECONDARY_TIMEOUT)
            + self.HOOK_TIMEOUT
        )

    @property
    def logging_level(self) -> str:
        return self.log_level.upper()


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings, raising a friendly error on failure."""

    try:
        return Settings()
    except ValidationError as exc:
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ())) or "settings"
            messages.append(f"{location}: {error.get('msg')}")
        joined = "; ".join(messages) or str(exc)
        raise RuntimeError(f"Configuration error: {joined}") from exc
    except ValueError as exc:
        raise RuntimeError(f"Configuration error: {exc}") from exc


settings = get_settings()
