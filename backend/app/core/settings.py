import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)


class SecurityConfig(BaseModel):
    jwt_secret: str = Field(min_length=16)
    jwt_issuer: str = Field(default="ges-activity")
    access_token_minutes: int = Field(default=60, ge=5, le=24 * 60)
    cors_origins: list[str] = Field(default_factory=list)


class DataConfig(BaseModel):
    data_dir: Path = Field(default=Path("backend/data"))

    @field_validator("data_dir", mode="before")
    def _expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser()


class DatabaseConfig(BaseModel):
    url: Optional[str] = None


class CategoryOverride(BaseModel):
    collection: Optional[str] = None
    tenant_field: Optional[str] = None
    timestamp_field: Optional[str] = None
    title_field: Optional[str] = None
    message_template: Optional[str] = None
    link_template: Optional[str] = None


class InboxConfig(BaseModel):
    collection: str = Field(default="notifications")
    tenant_field: str = Field(default="company_id")
    recipient_field: str = Field(default="recipient_id")
    timestamp_field: str = Field(default="created_at")
    read_field: str = Field(default="read")
    # None lets every role read its inbox
    roles: Optional[list[str]] = None


class ActivityConfig(BaseModel):
    # Unset watermarks start this far in the past.
    default_lookback_minutes: int = Field(default=60, ge=0)
    feed_limit: int = Field(default=20, ge=1, le=500)
    hidden_ttl_days: Optional[int] = Field(default=30, ge=1)
    hidden_max_entries: Optional[int] = Field(default=1000, ge=1)
    categories: dict[str, CategoryOverride] = Field(default_factory=dict)
    inbox: InboxConfig = Field(default_factory=InboxConfig)


class Settings(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    security: SecurityConfig
    data: DataConfig = Field(default_factory=DataConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    activity: ActivityConfig = Field(default_factory=ActivityConfig)

    model_config = ConfigDict(arbitrary_types_allowed=True)


DEFAULT_CONFIG_PATH = Path(os.environ.get("CONFIG_PATH", "config/config.json"))

SECTIONS = ("server", "security", "data", "database", "activity")


def _load_file_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Invalid JSON configuration at {path}") from exc


def _load_env() -> dict[str, Any]:
    env_config: dict[str, Any] = {}

    host = os.environ.get("SERVER_HOST")
    if host:
        env_config.setdefault("server", {})["host"] = host

    port = os.environ.get("SERVER_PORT")
    if port:
        env_config.setdefault("server", {})["port"] = int(port)

    jwt_secret = os.environ.get("JWT_SECRET")
    if jwt_secret:
        env_config.setdefault("security", {})["jwt_secret"] = jwt_secret

    jwt_issuer = os.environ.get("JWT_ISSUER")
    if jwt_issuer:
        env_config.setdefault("security", {})["jwt_issuer"] = jwt_issuer

    cors_origins = os.environ.get("CORS_ORIGINS")
    if cors_origins:
        env_config.setdefault("security", {})["cors_origins"] = [
            origin.strip() for origin in cors_origins.split(",") if origin.strip()
        ]

    data_dir = os.environ.get("DATA_DIR")
    if data_dir:
        env_config.setdefault("data", {})["data_dir"] = data_dir

    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        # Render/Heroku style URLs need the async driver
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif database_url.startswith("postgresql://"):
            database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        env_config.setdefault("database", {})["url"] = database_url

    lookback = os.environ.get("ACTIVITY_DEFAULT_LOOKBACK_MINUTES")
    if lookback:
        env_config.setdefault("activity", {})["default_lookback_minutes"] = int(lookback)

    feed_limit = os.environ.get("ACTIVITY_FEED_LIMIT")
    if feed_limit:
        env_config.setdefault("activity", {})["feed_limit"] = int(feed_limit)

    return env_config


def merge_settings(env_config: dict[str, Any], file_config: dict[str, Any]) -> dict[str, Any]:
    return {
        section: {**file_config.get(section, {}), **env_config.get(section, {})}
        for section in SECTIONS
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    env_config = _load_env()
    file_config = _load_file_config(DEFAULT_CONFIG_PATH)
    merged = merge_settings(env_config=env_config, file_config=file_config)
    try:
        return Settings.model_validate(merged)
    except ValidationError as exc:  # pragma: no cover
        raise RuntimeError(f"Configuration error: {exc}") from exc


__all__ = ["Settings", "ActivityConfig", "CategoryOverride", "InboxConfig", "get_settings"]
