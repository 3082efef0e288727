"""Application configuration using Pydantic Settings.

Supports configuration from multiple sources with the following priority (highest first):
1. Environment variables
2. .env file
3. config.yml settings section
4. Default values

Server credentials (Emby/Radarr/Sonarr) are not configuration: they are
registered at runtime through the connect-then-configure flow and persisted
in the data store.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import PydanticBaseSettingsSource


# Load .env file at module import
load_dotenv()


class YamlSettingsSource(PydanticBaseSettingsSource):
    """
    Custom settings source that reads from config.yml settings section.

    Nested keys are flattened to match env var naming
    (e.g. ``jobs.server_timeout`` -> ``jobs_server_timeout``).
    """

    def __init__(self, settings_cls: type[BaseSettings], yaml_file: Path):
        super().__init__(settings_cls)
        self.yaml_file = yaml_file
        self._yaml_data: dict[str, Any] = {}
        self._load_yaml()

    def _load_yaml(self) -> None:
        """Load and parse the YAML file."""
        if not self.yaml_file.exists():
            return

        try:
            with open(self.yaml_file, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            self._yaml_data = self._flatten_settings(data.get("settings", {}))
            print(f"[config] Loaded {len(self._yaml_data)} settings from: {self.yaml_file}")
        except (OSError, yaml.YAMLError) as e:
            # Logging is not configured yet at this point
            print(f"[config] Failed to load YAML config: {e}")

    def _flatten_settings(self, data: dict, prefix: str = "") -> dict:
        """Flatten nested dict to match env var naming."""
        result = {}
        for key, value in data.items():
            flat_key = f"{prefix}_{key}" if prefix else key
            if isinstance(value, dict):
                result.update(self._flatten_settings(value, flat_key))
            else:
                result[flat_key] = value
        return result

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        """Get value for a specific field from YAML data."""
        value = self._yaml_data.get(field_name)
        return value, field_name, value is not None

    def __call__(self) -> dict[str, Any]:
        """Return all settings from YAML."""
        return self._yaml_data


class TMDbSettings(BaseModel):
    """TMDb API configuration (identifier translation)."""

    api_key: str = Field(default="")
    language: str = Field(default="en-US")


class TraktSettings(BaseModel):
    """Trakt API configuration."""

    client_id: str = Field(default="")
    client_secret: str = Field(default="")
    access_token: Optional[str] = Field(default=None)


class MDBListSettings(BaseModel):
    """MDBList API configuration."""

    api_key: Optional[str] = Field(default=None)


class DiscordSettings(BaseModel):
    """Discord webhook configuration."""

    webhook_url: Optional[str] = Field(default=None)
    webhook_error: Optional[str] = Field(default=None)


class JobSettings(BaseModel):
    """Background job tuning."""

    # Per-server timeout for Emby sync and download dispatch (seconds)
    server_timeout: float = Field(default=20.0)
    # Progress polling protocol used by `collectarr refresh --watch`
    poll_interval: float = Field(default=1.0)
    poll_max_unchanged: int = Field(default=5)
    # Retries for source list fetches (Trakt/MDBList)
    http_max_retries: int = Field(default=3)
    # Cross-process refresh lease, renewed every third of its lifetime (seconds)
    lease_ttl: float = Field(default=600.0)


class SchedulerSettings(BaseModel):
    """Scheduler configuration."""

    # Sync all collections to Emby (empty = disabled; refreshes have their own schedules)
    sync_cron: str = Field(default="")
    timezone: str = Field(default="UTC")


class Settings(BaseSettings):
    """Main application settings."""

    # TMDb
    tmdb_api_key: str = Field(default="")
    tmdb_language: str = Field(default="en-US")

    # Trakt
    trakt_client_id: str = Field(default="")
    trakt_client_secret: str = Field(default="")
    trakt_access_token: Optional[str] = Field(default=None)

    # MDBList
    mdblist_api_key: Optional[str] = Field(default=None)

    # Discord
    discord_webhook_url: Optional[str] = Field(default=None)
    discord_webhook_error: Optional[str] = Field(default=None)

    # Jobs
    jobs_server_timeout: float = Field(default=20.0)
    jobs_poll_interval: float = Field(default=1.0)
    jobs_poll_max_unchanged: int = Field(default=5)
    jobs_http_max_retries: int = Field(default=3)
    jobs_lease_ttl: float = Field(default=600.0)

    # Scheduler
    scheduler_sync_cron: str = Field(default="")
    scheduler_timezone: str = Field(default="UTC")

    # Application settings
    log_level: str = Field(default="INFO")
    config_path: Path = Field(default=Path("/config"))
    data_path: Path = Field(default=Path("/data"))
    log_path: Path = Field(default=Path("/logs"))
    # SQLAlchemy async URL; defaults to SQLite under data_path
    database_url: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Insert config.yml between the .env file and secret files."""
        config_path = Path(os.getenv("CONFIG_PATH", "/config"))
        yaml_file = config_path / "config.yml"

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlSettingsSource(settings_cls, yaml_file),
            file_secret_settings,
        )

    @field_validator("config_path", "data_path", "log_path", mode="before")
    @classmethod
    def validate_path(cls, v: str | Path) -> Path:
        return Path(v) if isinstance(v, str) else v

    def get_data_path(self) -> Path:
        """Get data directory path."""
        return self.data_path

    def get_database_url(self) -> str:
        """Get the database URL (SQLite file under data unless DATABASE_URL is set)."""
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.get_data_path() / 'collectarr.db'}"

    def get_log_path(self) -> Path:
        """Get logs directory path."""
        return self.log_path

    @property
    def tmdb(self) -> TMDbSettings:
        """Get TMDb settings."""
        return TMDbSettings(api_key=self.tmdb_api_key, language=self.tmdb_language)

    @property
    def trakt(self) -> TraktSettings:
        """Get Trakt settings."""
        return TraktSettings(
            client_id=self.trakt_client_id,
            client_secret=self.trakt_client_secret,
            access_token=self.trakt_access_token,
        )

    @property
    def mdblist(self) -> MDBListSettings:
        """Get MDBList settings."""
        return MDBListSettings(api_key=self.mdblist_api_key)

    @property
    def discord(self) -> DiscordSettings:
        """Get Discord settings."""
        return DiscordSettings(
            webhook_url=self.discord_webhook_url,
            webhook_error=self.discord_webhook_error,
        )

    @property
    def jobs(self) -> JobSettings:
        """Get job settings."""
        return JobSettings(
            server_timeout=self.jobs_server_timeout,
            poll_interval=self.jobs_poll_interval,
            poll_max_unchanged=self.jobs_poll_max_unchanged,
            http_max_retries=self.jobs_http_max_retries,
            lease_ttl=self.jobs_lease_ttl,
        )

    @property
    def scheduler(self) -> SchedulerSettings:
        """Get scheduler settings."""
        return SchedulerSettings(
            sync_cron=self.scheduler_sync_cron,
            timezone=self.scheduler_timezone,
        )


def mask_secret(value: str | None, visible_chars: int = 4) -> str:
    """Mask a secret value, showing only first N characters."""
    if not value:
        return "(not set)"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def log_settings(settings: "Settings") -> None:
    """Log all settings to the logger (secrets are masked)."""
    from loguru import logger

    logger.info("=" * 60)
    logger.info("COLLECTARR - CONFIGURATION")
    logger.info("=" * 60)

    logger.info("[Paths]")
    logger.info(f"  Config path: {settings.config_path}")
    logger.info(f"  Data path:   {settings.data_path}")
    logger.info(f"  Log path:    {settings.log_path}")
    logger.info(f"  Database:    {settings.get_database_url()}")

    logger.info("[TMDb]")
    logger.info(f"  API Key:  {mask_secret(settings.tmdb_api_key)}")
    logger.info(f"  Language: {settings.tmdb_language}")

    logger.info("[Trakt]")
    logger.info(f"  Client ID:     {mask_secret(settings.trakt_client_id)}")
    logger.info(f"  Client Secret: {mask_secret(settings.trakt_client_secret)}")

    logger.info("[MDBList]")
    logger.info(f"  API Key: {mask_secret(settings.mdblist_api_key)}")

    logger.info("[Discord]")
    logger.info(
        f"  Webhook URL: {mask_secret(settings.discord_webhook_url, 30) if settings.discord_webhook_url else '(not set)'}"
    )

    logger.info("[Jobs]")
    logger.info(f"  Server timeout: {settings.jobs_server_timeout}s")
    logger.info(f"  Poll interval:  {settings.jobs_poll_interval}s (stop after {settings.jobs_poll_max_unchanged} unchanged)")
    logger.info(f"  HTTP retries:   {settings.jobs_http_max_retries}")
    logger.info(f"  Job lease:      {settings.jobs_lease_ttl}s")

    logger.info("[Scheduler]")
    logger.info(f"  Sync Cron: {settings.scheduler_sync_cron or '(disabled)'}")
    logger.info(f"  Timezone:  {settings.scheduler_timezone}")

    logger.info("[Application]")
    logger.info(f"  Log Level: {settings.log_level}")

    logger.info("=" * 60)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
