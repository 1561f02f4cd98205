"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

AliasKind = Literal["primary", "imdb", "tmdb"]

ALIAS_KINDS: tuple[str, ...] = ("primary", "imdb", "tmdb")
DEFAULT_ALIAS_PRIORITY: tuple[str, ...] = ALIAS_KINDS


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="CatalogSync", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=8096, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./catalogsync.db", alias="DATABASE_URL"
    )

    catalog_addon_url: HttpUrl | None = Field(
        default=None, alias="CATALOG_ADDON_URL"
    )
    catalog_page_size: int = Field(
        default=20, alias="CATALOG_PAGE_SIZE", ge=1, le=1_000
    )
    item_timeout_seconds: float = Field(
        default=60.0, alias="ITEM_TIMEOUT_SECONDS", gt=0
    )

    catalog_sync_enabled: bool = Field(default=True, alias="CATALOG_SYNC_ENABLED")
    catalog_sync_interval_hours: float = Field(
        default=6, alias="CATALOG_SYNC_INTERVAL_HOURS", gt=0
    )
    catalog_key_mode: Literal["composite", "catalog"] = Field(
        default="composite", alias="CATALOG_KEY_MODE"
    )
    alias_priority: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_ALIAS_PRIORITY, alias="ALIAS_PRIORITY"
    )
    stale_import_policy: Literal["rerun", "reset"] = Field(
        default="rerun", alias="STALE_IMPORT_POLICY"
    )

    jellyfin_url: HttpUrl | None = Field(default=None, alias="JELLYFIN_URL")
    jellyfin_api_key: str | None = Field(default=None, alias="JELLYFIN_API_KEY")
    jellyfin_user_id: str | None = Field(default=None, alias="JELLYFIN_USER_ID")
    jellyfin_movie_folder_id: str | None = Field(
        default=None, alias="JELLYFIN_MOVIE_FOLDER_ID"
    )
    jellyfin_series_folder_id: str | None = Field(
        default=None, alias="JELLYFIN_SERIES_FOLDER_ID"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("alias_priority", mode="before")
    @classmethod
    def _parse_alias_priority(cls, value: object) -> tuple[str, ...]:
        """Normalise the ordered alias list from environment values."""

        if value is None:
            return DEFAULT_ALIAS_PRIORITY
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("ALIAS_PRIORITY must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            kind = entry.lower()
            if not kind:
                continue
            if kind not in ALIAS_KINDS:
                raise ValueError("Unknown alias kinds configured")
            if kind not in cleaned:
                cleaned.append(kind)
        if not cleaned:
            return DEFAULT_ALIAS_PRIORITY
        return tuple(cleaned)

    @field_validator(
        "jellyfin_api_key",
        "jellyfin_user_id",
        "jellyfin_movie_folder_id",
        "jellyfin_series_folder_id",
        mode="before",
    )
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    def definition_key(self, catalog_id: str, media_type: str) -> str:
        """Return the registry key for a catalog under the configured key mode."""

        if self.catalog_key_mode == "catalog":
            return catalog_id
        return f"{catalog_id}:{media_type}"

    @property
    def sync_interval_seconds(self) -> float:
        return self.catalog_sync_interval_hours * 3_600

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
