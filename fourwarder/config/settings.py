"""
Configuration management with Pydantic settings.
Reads the TOML file used by the original bot, then `.env` and the environment.
"""
import os
from pathlib import Path
from typing import Dict, Optional, Tuple, Type

from pydantic import Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from fourwarder.core.errors import ConfigError
from fourwarder.core.events import RoomRole

DEFAULT_CONFIG_FILE = "4warder.toml"
CONFIG_PATH_ENV = "FOURWARDER_CONFIG"


def _config_file_path() -> Path:
    return Path(os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_FILE))


class Settings(BaseSettings):
    """Application settings with validation and type safety."""

    model_config = SettingsConfigDict(
        env_prefix="FOURWARDER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Matrix account
    homeserver: str = Field(..., description="Homeserver base URL, e.g. https://matrix.org")
    username: str = Field(..., description="Bot localpart or full Matrix user id")
    password: SecretStr = Field(..., description="Bot account password")
    device_id: str = Field(
        default="FOURWARDER",
        description="Device id reused across restarts so transaction ids deduplicate",
    )

    # Rooms
    input_room_id: str = Field(..., description="Room whose messages await moderation")
    mod_room_id: str = Field(..., description="Room where moderators approve copies")
    output_room_id: str = Field(..., description="Room receiving approved messages")
    approval_symbol: str = Field(default="✅", min_length=1)

    # Persistence
    database_url: str = Field(default="sqlite+aiosqlite:///./fourwarder.db")

    # Transport behaviour
    max_retry_attempts: int = Field(default=5, ge=1, le=10)
    retry_base_delay: float = Field(default=1.0, gt=0)
    retry_max_delay: float = Field(default=30.0, gt=0)
    sync_timeout_ms: int = Field(default=30000, ge=0, le=300000)
    request_timeout: float = Field(default=60.0, gt=0)

    # Correlation retention, 0 keeps entries for the process lifetime
    retention_days: int = Field(default=30, ge=0)

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    debug_mode: bool = Field(default=False)
    log_file: Optional[Path] = Field(default=Path("fourwarder.log"))

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=_config_file_path()),
            file_secret_settings,
        )

    @field_validator("homeserver")
    @classmethod
    def validate_homeserver(cls, v: str) -> str:
        """Require an http(s) base URL without a trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("homeserver must be an http:// or https:// URL")
        return v.rstrip("/")

    @field_validator("input_room_id", "mod_room_id", "output_room_id")
    @classmethod
    def validate_room_id(cls, v: str) -> str:
        """Room ids look like `!opaque:server`."""
        v = v.strip()
        if not v.startswith("!") or ":" not in v:
            raise ValueError(f"{v!r} is not a valid room id")
        return v

    @model_validator(mode="after")
    def validate_distinct_rooms(self) -> "Settings":
        """Each room carries exactly one role."""
        rooms = {self.input_room_id, self.mod_room_id, self.output_room_id}
        if len(rooms) != 3:
            raise ValueError("input_room_id, mod_room_id and output_room_id must be distinct")
        return self

    def room_roles(self) -> Dict[str, RoomRole]:
        """Map each configured room id to its role."""
        return {
            self.input_room_id: RoomRole.INPUT,
            self.mod_room_id: RoomRole.MODERATION,
            self.output_room_id: RoomRole.OUTPUT,
        }

    def async_database_url(self) -> str:
        """Database URL with an async driver."""
        url = self.database_url
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite:///"):
            return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return url


def load_settings(**overrides) -> Settings:
    """Build settings from all sources, raising ConfigError when invalid."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
