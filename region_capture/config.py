"""Configuration management for the region capture engine."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CaptureSettings(BaseSettings):
    """Engine settings loaded from environment variables (REGION_CAPTURE_*)."""

    model_config = SettingsConfigDict(
        env_prefix="REGION_CAPTURE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Scroll planning
    overlap_factor: float = Field(
        0.85,
        gt=0.0,
        lt=1.0,
        description="Fraction of the visible height advanced per scroll step (smaller = more overlap)",
    )
    max_segments: int = Field(50, ge=1, description="Hard cap on planned scroll offsets")
    settle_delay_ms: int = Field(200, ge=0, description="Wait after each scroll before capturing")

    # Timeouts and retries
    operation_timeout_ms: int = Field(30000, gt=0, description="Timeout for each external call")
    retry_max_attempts: int = Field(3, ge=1, description="Attempts per retryable step")
    retry_base_delay_ms: int = Field(1000, ge=0, description="Base delay between retries")
    retry_backoff_multiplier: float = Field(2.0, ge=1.0, description="Exponential backoff multiplier")

    # Output
    default_format: Literal["png", "jpeg"] = Field("png", description="Default encoded format")
    default_quality: float = Field(0.9, ge=0.0, le=1.0, description="Default JPEG quality (0-1)")
    filename_template: str = Field("screenshot_{timestamp}", description="Filename template")
    output_dir: str = Field("./screenshots", description="Directory for saved captures")

    # Sessions
    session_grace_period_s: float = Field(
        5.0,
        ge=0.0,
        description="Seconds a completed session stays registered before removal",
    )
    pending_save_ttl_s: float = Field(
        600.0,
        gt=0.0,
        description="Seconds an artifact waits for a manual save before it is dropped",
    )

    # Performance / memory
    memory_threshold_bytes: int = Field(100 * 1024 * 1024, gt=0, description="Memory budget per job")
    max_segment_size: int = Field(2048, ge=100, description="Max physical rows per segment")
    memory_warning_ratio: float = Field(0.8, gt=0.0, le=1.0, description="Usage ratio that logs a warning")
    memory_cleanup_ratio: float = Field(0.7, gt=0.0, le=1.0, description="Usage ratio that allows cleanup")
    memory_cleanup_interval_ms: int = Field(5000, ge=0, description="Cooldown between cleanup passes")
    enable_progressive_loading: bool = Field(True, description="Batch segment processing")
    enable_memory_cleanup: bool = Field(True, description="Cleanup pause between batches")

    # Logging
    log_level: str = Field("INFO", description="Log level")
    log_json: bool = Field(False, description="Render logs as JSON")


def get_settings() -> CaptureSettings:
    """Get engine settings."""
    return CaptureSettings()
