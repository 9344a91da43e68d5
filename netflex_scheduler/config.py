import os
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict, SettingsError

from .errors import ConfigurationFailure

TESTING = os.getenv("TESTING") == "1"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

CALLBACK_PATH = "/.well-known/netflex/scheduler"
DEFAULT_TOKEN_TTL = 3600
DEFAULT_EXECUTION_TIME_LIMIT = 3600

AUTH_MODE_DIGEST = "digest"
AUTH_MODE_TOKEN = "token"


class ConnectionSettings(BaseModel):
    key: Optional[str] = None
    base_uri: Optional[str] = None
    timeout: int = Field(default=DEFAULT_TOKEN_TTL, gt=0)


class Settings(BaseSettings):
    """Scheduler settings read from the environment.

    ``NETFLEX_CONNECTIONS`` is a JSON object of named connections, decoded
    into ``ConnectionSettings``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        populate_by_name=True,
    )

    api_url: Optional[str] = Field(default=None, validation_alias="NETFLEX_API_URL")
    public_key: Optional[str] = Field(default=None, validation_alias="NETFLEX_PUBLIC_KEY")
    private_key: Optional[str] = Field(default=None, validation_alias="NETFLEX_PRIVATE_KEY")
    connection: str = Field(default="scheduler", validation_alias="SCHEDULER_CONNECTION")
    connections: Dict[str, ConnectionSettings] = Field(default_factory=dict, validation_alias="NETFLEX_CONNECTIONS")
    auth_mode: str = Field(
        default=AUTH_MODE_DIGEST, pattern="^(digest|token)$", validation_alias="SCHEDULER_AUTH_MODE"
    )
    timezone: str = Field(default="Europe/Oslo", validation_alias="SCHEDULER_TIMEZONE")
    app_url: str = Field(default="http://localhost:8000", validation_alias="APP_URL")
    environment: str = Field(default="production", validation_alias="APP_ENV")
    execution_time_limit: int = Field(
        default=DEFAULT_EXECUTION_TIME_LIMIT, gt=0, validation_alias="SCHEDULER_EXECUTION_TIME_LIMIT"
    )

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    def connection_settings(self, name: Optional[str] = None) -> ConnectionSettings:
        return self.connections.get(name or self.connection) or ConnectionSettings()

    def candidate_keys(self) -> List[str]:
        """Primary key first, then every per-connection key, deduplicated."""
        keys: List[str] = []
        for key in [self.public_key, *(c.key for c in self.connections.values())]:
            if key and key not in keys:
                keys.append(key)
        return keys

    def signing_key(self) -> str:
        keys = self.candidate_keys()
        if not keys:
            raise ConfigurationFailure("No signing key configured")
        return keys[0]


def load_settings() -> Settings:
    """Read settings from the environment. Called per use, never cached."""
    try:
        return Settings()
    except (ValidationError, SettingsError) as exc:
        raise ConfigurationFailure(f"Invalid scheduler configuration: {exc}") from exc
