"""Central configuration for the web puppet service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[1]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"

MEGABYTE = 1024 * 1024


# ============================================================
# Nested Configuration Classes
# ============================================================

class WatchdogSettings(BaseModel):
    """Watchdog timeouts (seconds)."""
    connectivity_timeout: float = Field(60.0, description="Max silence from the bridge before a full restart")
    initial_timeout: float = Field(120.0, description="Connectivity deadline right after start, covers first login")
    scan_timeout: float = Field(120.0, description="Max age of a login challenge before the page is recovered")


class StabilizationSettings(BaseModel):
    """Polling limits for roster and room membership loading."""
    room_attempts: int = Field(7, description="Room payload fetches before giving up on a stable member list")
    room_interval: float = Field(1.0, description="Pause between room payload fetches (seconds)")
    roster_interval: float = Field(1.0, description="Pause between contact count samples (seconds)")
    roster_timeout: float = Field(60.0, description="Deadline for the contact roster to settle (seconds)")


class MediaSettings(BaseModel):
    """Media transfer limits and HTTP identity."""
    max_file_bytes: int = Field(100 * MEGABYTE, description="Absolute upload ceiling")
    max_video_bytes: int = Field(20 * MEGABYTE, description="Upload ceiling for video files")
    large_file_bytes: int = Field(25 * MEGABYTE, description="Above this size a check-upload handshake is required")
    http_timeout: float = Field(60.0, description="Timeout for upload and download requests (seconds)")
    user_agent: str = Field(
        "Mozilla/5.0 (Windows NT 6.1; WOW64) AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/50.0.2661.102 Safari/537.36",
        description="User-Agent sent with media requests",
    )
    accept_language: str = Field("zh-CN,zh;q=0.8", description="Accept-Language sent with media downloads")


class PersistenceSettings(BaseModel):
    """Session persistence."""
    profile_path: Path = Field(ROOT_DIR / "profiles" / "default.json", description="Profile JSON file")
    cookie_save_window: float = Field(300.0, description="At most one cookie save per window (seconds)")


class Settings(BaseSettings):
    """Environment-driven settings for the puppet subsystems."""

    # Browser driver sidecar
    bridge_ws_url: str = Field("ws://127.0.0.1:8788/bridge", description="WebSocket URL of the browser driver")
    bridge_request_timeout: float = Field(30.0, description="Timeout for a single bridge request (seconds)")
    head: bool = Field(False, description="Ask the browser driver to run with a visible window")

    # Service HTTP server
    service_host: str = Field("127.0.0.1", description="Host interface for local FastAPI server")
    service_port: int = Field(8080, description="Port for FastAPI server")
    event_queue_size: int = Field(100, description="Per-subscriber buffer for the /ws/events feed")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    watchdog: WatchdogSettings = Field(default_factory=WatchdogSettings, description="Watchdog timeouts")
    stabilization: StabilizationSettings = Field(default_factory=StabilizationSettings, description="Polling limits")
    media: MediaSettings = Field(default_factory=MediaSettings, description="Media transfer settings")
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings, description="Profile persistence")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper() or "INFO"
        return value

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
