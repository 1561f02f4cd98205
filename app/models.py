"""Pydantic models describing catalog definitions and catalog entries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Literal, Mapping

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .config import DEFAULT_ALIAS_PRIORITY

MediaType = Literal["movie", "series"]
CatalogStatus = Literal["idle", "importing", "error"]


def build_alias_set(
    values: Mapping[str, str | None],
    priority: Iterable[str] = DEFAULT_ALIAS_PRIORITY,
) -> tuple[str, ...]:
    """Return the known identifiers of an item ordered by alias priority."""

    aliases: list[str] = []
    for kind in priority:
        value = values.get(kind)
        if not value:
            continue
        cleaned = str(value).strip()
        if cleaned and cleaned not in aliases:
            aliases.append(cleaned)
    return tuple(aliases)


class CatalogDefinition(BaseModel):
    """A configured external catalog and the collection it maintains."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    id: str
    source_manifest_url: str = Field(
        default="",
        validation_alias=AliasChoices(
            "sourceManifestUrl", "manifestUrl", "source_manifest_url"
        ),
        serialization_alias="sourceManifestUrl",
    )
    catalog_id: str
    name: str
    media_type: MediaType = Field(
        default="movie",
        validation_alias=AliasChoices("mediaType", "type", "media_type"),
        serialization_alias="mediaType",
    )
    enabled: bool = True
    update_interval_hours: int = Field(default=0, ge=0)
    max_items: int = Field(default=100, ge=0)
    status: CatalogStatus = "idle"
    imported_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    collection_id: str | None = None
    collection_item_count: int = Field(default=0, ge=0)
    last_updated: datetime | None = None

    @field_validator("media_type", mode="before")
    @classmethod
    def _normalise_media_type(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("collection_id", mode="before")
    @classmethod
    def _blank_collection(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def to_payload(self) -> dict[str, Any]:
        """Return the camelCase JSON shape used by the API."""

        return self.model_dump(mode="json", by_alias=True)


class CatalogItem(BaseModel):
    """A single entry listed by an external catalog page."""

    primary_id: str | None = None
    imdb_id: str | None = None
    tmdb_id: str | None = None
    name: str = ""
    media_type: MediaType = "movie"
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_meta(cls, meta: Mapping[str, Any], *, media_type: MediaType) -> "CatalogItem":
        """Build an item from a Stremio meta preview object."""

        primary_id = _clean_id(meta.get("id"))
        imdb_id = _clean_id(meta.get("imdb_id") or meta.get("imdbId"))
        tmdb_id = _clean_id(
            meta.get("tmdb_id") or meta.get("tmdbId") or meta.get("moviedb_id")
        )
        if tmdb_id is None and primary_id and primary_id.startswith("tmdb:"):
            tmdb_id = _clean_id(primary_id.split(":", 1)[1])
        raw_type = str(meta.get("type") or media_type).lower()
        return cls(
            primary_id=primary_id,
            imdb_id=imdb_id,
            tmdb_id=tmdb_id,
            name=str(meta.get("name") or ""),
            media_type="series" if raw_type == "series" else media_type,
            payload=dict(meta),
        )

    def aliases(self, priority: Iterable[str] = DEFAULT_ALIAS_PRIORITY) -> tuple[str, ...]:
        return build_alias_set(
            {"primary": self.primary_id, "imdb": self.imdb_id, "tmdb": self.tmdb_id},
            priority,
        )

    def display_id(self, priority: Iterable[str] = DEFAULT_ALIAS_PRIORITY) -> str:
        aliases = self.aliases(priority)
        if aliases:
            return aliases[0]
        return self.name or "unknown"


@dataclass(slots=True)
class LibraryItem:
    """A local media item as reported by the library store."""

    id: str
    name: str = ""
    primary_id: str | None = None
    imdb_id: str | None = None
    tmdb_id: str | None = None

    def aliases(self, priority: Iterable[str] = DEFAULT_ALIAS_PRIORITY) -> tuple[str, ...]:
        """Return external ids, falling back to the never-matching local id."""

        aliases = build_alias_set(
            {"primary": self.primary_id, "imdb": self.imdb_id, "tmdb": self.tmdb_id},
            priority,
        )
        if aliases:
            return aliases
        return (f"local:{self.id}",)


class CatalogImportRequest(BaseModel):
    """Request to import a single catalog."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    catalog_id: str = Field(min_length=1)
    media_type: MediaType = Field(
        default="movie",
        validation_alias=AliasChoices("type", "mediaType", "media_type"),
        serialization_alias="type",
    )
    max_items: int = Field(default=100, ge=0)
    custom_name: str | None = None
    combined_collection_id: str | None = None
    manifest_url: str = ""

    @field_validator("custom_name", "combined_collection_id", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value


class BulkImportRequest(BaseModel):
    """Bulk import request containing multiple catalogs."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    catalogs: list[CatalogImportRequest] = Field(default_factory=list)
    user_id: str | None = None


class StatusUpdate(BaseModel):
    """Administrative patch of a definition's status and counters."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    status: CatalogStatus = "idle"
    imported_count: int | None = Field(default=None, ge=0)
    failed_count: int | None = Field(default=None, ge=0)
    last_updated: datetime | None = None


def _clean_id(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
