"""Application configuration management."""
from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional, Union
from urllib.parse import quote

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

BASE_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE = BASE_DIR / ".env"

load_dotenv(ENV_FILE)

logger = logging.getLogger(__name__)


def _normalise_directory(path_str: str, *, default: Path, description: str) -> str:
    """Return a writable directory path, falling back when necessary."""

    candidate = Path(path_str).expanduser()
    if not candidate.is_absolute():
        candidate = (BASE_DIR / candidate).resolve()

    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except (PermissionError, OSError) as exc:
        fallback = default.resolve()
        fallback.mkdir(parents=True, exist_ok=True)
        logger.warning(
            "Unable to create %s at %s (%s); using fallback %s",
            description,
            candidate,
            exc,
            fallback,
        )
        candidate = fallback

    return str(candidate)


class Settings(BaseModel):
    """Runtime configuration values for the AutoDJ relay."""

    app_env: str = Field("development", validation_alias="APP_ENV")
    debug: bool = Field(False, validation_alias="DEBUG")
    station_name: str = Field("AutoDJ Live", validation_alias="STATION_NAME")
    status_port: int = Field(3000, validation_alias="PORT", gt=0, lt=65536)

    icecast_host: str = Field("", validation_alias="ICECAST_HOST")
    icecast_port: int = Field(8000, validation_alias="ICECAST_PORT", gt=0, lt=65536)
    icecast_mount: str = Field("/stream", validation_alias="ICECAST_MOUNT")
    icecast_user: str = Field("source", validation_alias="ICECAST_USER")
    icecast_password: str = Field("", validation_alias="ICECAST_PASS")
    icecast_admin_user: Optional[str] = Field(None, validation_alias="ICECAST_ADMIN_USER")
    icecast_admin_password: Optional[str] = Field(None, validation_alias="ICECAST_ADMIN_PASS")

    bitrate: str = Field("128k", validation_alias="BITRATE")

    sources_file: str = Field("sources.txt", validation_alias="SOURCES_FILE")
    youtube_playlist: Optional[str] = Field(None, validation_alias="YOUTUBE_PLAYLIST")
    bumpers: list[str] = Field(default_factory=list, validation_alias="BUMPERS")

    cache_dir: str = Field(str(BASE_DIR / "cache"), validation_alias="CACHE_DIR")
    scratch_dir: str = Field(str(BASE_DIR / "tmp"), validation_alias="TMP_DIR")
    pipe_path: Optional[str] = Field(None, validation_alias="PIPE_PATH")
    cookies_path: str = Field("/app/secrets/cookies.txt", validation_alias="COOKIES_PATH")
    cookies_content: Optional[str] = Field(None, validation_alias="COOKIES_FILE")

    log_dir: str = Field(str(BASE_DIR / "data" / "logs"), validation_alias="LOGS_DIR")
    log_max_bytes: int = Field(10 * 1024 * 1024, validation_alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(5, validation_alias="LOG_BACKUP_COUNT")

    title_max_bytes: int = Field(200, validation_alias="TITLE_MAX_BYTES", ge=16, le=240)
    fetch_timeout_seconds: float = Field(120.0, validation_alias="FETCH_TIMEOUT_SECONDS", gt=0)
    download_timeout_seconds: float = Field(900.0, validation_alias="DOWNLOAD_TIMEOUT_SECONDS", gt=0)
    transcode_timeout_seconds: float = Field(900.0, validation_alias="TRANSCODE_TIMEOUT_SECONDS", gt=0)
    http_timeout_seconds: float = Field(4.0, validation_alias="HTTP_TIMEOUT_SECONDS", gt=0)

    relay_restart_delay_seconds: float = Field(3.0, validation_alias="RELAY_RESTART_DELAY", ge=0)
    relay_stop_timeout_seconds: float = Field(10.0, validation_alias="RELAY_STOP_TIMEOUT", gt=0)
    pipe_open_timeout_seconds: float = Field(15.0, validation_alias="PIPE_OPEN_TIMEOUT", gt=0)
    pipe_write_timeout_seconds: float = Field(30.0, validation_alias="PIPE_WRITE_TIMEOUT", gt=0)
    pipe_write_max_retries: int = Field(3, validation_alias="PIPE_WRITE_MAX_RETRIES", ge=0)
    pipe_retry_delay_seconds: float = Field(2.0, validation_alias="PIPE_RETRY_DELAY", ge=0)
    pipe_chunk_bytes: int = Field(64 * 1024, validation_alias="PIPE_CHUNK_BYTES", gt=0)
    guard_silence_seconds: float = Field(1.0, validation_alias="GUARD_SILENCE_SECONDS", ge=0)

    fetch_failure_delay_seconds: float = Field(4.0, validation_alias="FETCH_FAILURE_DELAY", ge=0)
    rotation_pause_seconds: float = Field(1.0, validation_alias="ROTATION_PAUSE", ge=0)
    loop_error_delay_seconds: float = Field(5.0, validation_alias="LOOP_ERROR_DELAY", ge=0)
    metadata_interval_seconds: float = Field(1.0, validation_alias="METADATA_INTERVAL", gt=0)
    listener_poll_interval_seconds: float = Field(10.0, validation_alias="LISTENER_POLL_INTERVAL", gt=0)
    disk_free_threshold_gb: float = Field(2.0, validation_alias="DISK_FREE_THRESHOLD_GB", ge=0)

    class Config:
        populate_by_name = True

    @field_validator("bumpers", mode="before")
    @classmethod
    def parse_bumpers(cls, value: Union[str, list[str], None]) -> list[str]:
        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",")]
            return [item for item in parts if item]
        if value is None:
            return []
        return list(value)

    @field_validator("icecast_mount")
    @classmethod
    def validate_mount(cls, value: str) -> str:
        """Mounts are always addressed with a leading slash."""

        value = value.strip()
        if not value:
            raise ValueError("ICECAST_MOUNT must not be empty")
        if not value.startswith("/"):
            value = f"/{value}"
        return value

    @field_validator("bitrate")
    @classmethod
    def validate_bitrate(cls, value: str) -> str:
        """Ensure the bitrate is expressed in kilobits, e.g. ``128k``."""

        match = re.fullmatch(r"(\d{2,3})k?", value.strip().lower())
        if not match:
            raise ValueError("BITRATE must be formatted as <kbps>k (e.g. 128k)")
        kbps = int(match.group(1))
        if kbps < 32 or kbps > 320:
            raise ValueError("BITRATE must be between 32k and 320k")
        return f"{kbps}k"

    @model_validator(mode="after")
    def ensure_ingest_target(self) -> "Settings":
        """The relay cannot run without an ingest host."""

        if not self.icecast_host:
            raise ValueError("ICECAST_HOST must be set to the broadcast server hostname")
        return self

    @model_validator(mode="after")
    def normalise_storage_directories(self) -> "Settings":
        """Ensure storage directories are writable within the container."""

        self.cache_dir = _normalise_directory(
            self.cache_dir,
            default=BASE_DIR / "cache",
            description="cache directory",
        )
        self.scratch_dir = _normalise_directory(
            self.scratch_dir,
            default=BASE_DIR / "tmp",
            description="scratch directory",
        )
        self.log_dir = _normalise_directory(
            self.log_dir,
            default=BASE_DIR / "data" / "logs",
            description="log directory",
        )
        if not self.pipe_path:
            self.pipe_path = str(Path(self.scratch_dir) / "relay.pipe")
        return self

    @property
    def bitrate_kbps(self) -> int:
        return int(self.bitrate.rstrip("k"))

    @property
    def admin_credentials(self) -> tuple[str, str]:
        """Credentials for the admin endpoints, defaulting to the source login."""

        return (
            self.icecast_admin_user or self.icecast_user,
            self.icecast_admin_password or self.icecast_password,
        )

    @property
    def ingest_url(self) -> str:
        user = quote(self.icecast_user, safe="")
        password = quote(self.icecast_password, safe="")
        return f"icecast://{user}:{password}@{self.icecast_host}:{self.icecast_port}{self.icecast_mount}"

    @property
    def admin_base_url(self) -> str:
        scheme = "https" if self.icecast_port == 443 else "http"
        return f"{scheme}://{self.icecast_host}:{self.icecast_port}"


def _environment_overrides() -> dict[str, Any]:
    """Collect values for every field whose alias is present in the environment."""

    overrides: dict[str, Any] = {}
    for name, field in Settings.model_fields.items():
        alias = field.validation_alias
        if isinstance(alias, str) and alias in os.environ:
            overrides[name] = os.environ[alias]

    # Older deployments export the source password under ICECAST_PASSWORD.
    if "icecast_password" not in overrides and os.getenv("ICECAST_PASSWORD"):
        overrides["icecast_password"] = os.environ["ICECAST_PASSWORD"]
    return overrides


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings(**_environment_overrides())


settings = get_settings()
