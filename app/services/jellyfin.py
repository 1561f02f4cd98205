"""Jellyfin-backed implementation of the media library capability."""

from __future__ import annotations

import logging
from typing import Any, Sequence

import httpx

from ..config import Settings
from ..exceptions import CollectionCreateError, SourceUnavailableError
from ..models import CatalogItem, LibraryItem, MediaType
from .library import InsertOptions, InsertResult

logger = logging.getLogger(__name__)

_ITEM_TYPES: dict[str, str] = {"movie": "Movie", "series": "Series"}


class JellyfinLibrary:
    """Collections, item lookup and users served by the Jellyfin REST API.

    Catalog entries are resolved against items the library already knows
    through their provider ids; entries the library cannot resolve come back
    as an empty :class:`InsertResult`.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    @property
    def is_available(self) -> bool:
        return bool(self._settings.jellyfin_url and self._settings.jellyfin_api_key)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._settings.jellyfin_api_key:
            headers["X-Emby-Token"] = self._settings.jellyfin_api_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method, path, params=params, headers=self._headers()
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise SourceUnavailableError(
                f"Jellyfin request {method} {path} failed: {exc}"
            ) from exc
        return response

    async def create_collection(self, name: str) -> str:
        try:
            response = await self._request("POST", "/Collections", params={"name": name})
        except SourceUnavailableError as exc:
            raise CollectionCreateError(f"Could not create collection {name!r}") from exc
        payload = response.json()
        collection_id = payload.get("Id") if isinstance(payload, dict) else None
        if not collection_id:
            raise CollectionCreateError(f"Jellyfin returned no id for collection {name!r}")
        return str(collection_id)

    async def collection_exists(self, collection_id: str) -> bool:
        response = await self._request(
            "GET", "/Items", params={"ids": collection_id, "limit": 1}
        )
        payload = response.json()
        return bool(payload.get("TotalRecordCount") or payload.get("Items"))

    async def list_members(self, collection_id: str) -> list[LibraryItem]:
        params: dict[str, Any] = {
            "parentId": collection_id,
            "recursive": "false",
            "fields": "ProviderIds",
        }
        if self._settings.jellyfin_user_id:
            params["userId"] = self._settings.jellyfin_user_id
        response = await self._request("GET", "/Items", params=params)
        items = response.json().get("Items") or []
        return [self._to_library_item(entry) for entry in items if isinstance(entry, dict)]

    async def add_items(self, collection_id: str, item_ids: Sequence[str]) -> None:
        if not item_ids:
            return
        await self._request(
            "POST",
            f"/Collections/{collection_id}/Items",
            params={"ids": ",".join(item_ids)},
        )

    async def remove_items(self, collection_id: str, item_ids: Sequence[str]) -> None:
        if not item_ids:
            return
        await self._request(
            "DELETE",
            f"/Collections/{collection_id}/Items",
            params={"ids": ",".join(item_ids)},
        )

    async def insert(
        self,
        parent_folder: str,
        item: CatalogItem,
        options: InsertOptions,
    ) -> InsertResult:
        provider_ids = self._provider_filters(item)
        if not provider_ids:
            return InsertResult(item=None)
        params: dict[str, Any] = {
            "parentId": parent_folder,
            "recursive": "true",
            "includeItemTypes": _ITEM_TYPES.get(item.media_type, "Movie"),
            "anyProviderIdEquals": ",".join(provider_ids),
            "fields": "ProviderIds",
            "limit": 1,
        }
        if self._settings.jellyfin_user_id:
            params["userId"] = self._settings.jellyfin_user_id
        response = await self._request("GET", "/Items", params=params)
        matches = response.json().get("Items") or []
        if not matches:
            return InsertResult(item=None)
        library_item = self._to_library_item(matches[0])
        if options.refresh_item:
            await self._request(
                "POST",
                f"/Items/{library_item.id}/Refresh",
                params={"metadataRefreshMode": "Default"},
            )
        return InsertResult(item=library_item, created=False)

    async def resolve_user(self, user_id: str | None) -> str | None:
        if user_id:
            return user_id
        if self._settings.jellyfin_user_id:
            return self._settings.jellyfin_user_id
        response = await self._request("GET", "/Users")
        users = [entry for entry in response.json() or [] if isinstance(entry, dict)]
        if not users:
            return None
        admins = [
            entry
            for entry in users
            if (entry.get("Policy") or {}).get("IsAdministrator")
        ]
        chosen = admins[0] if admins else users[0]
        return str(chosen.get("Id")) if chosen.get("Id") else None

    async def root_folder(self, user_id: str | None, media_type: MediaType) -> str | None:
        if media_type == "series":
            return self._settings.jellyfin_series_folder_id
        return self._settings.jellyfin_movie_folder_id

    @staticmethod
    def _provider_filters(item: CatalogItem) -> list[str]:
        filters: list[str] = []
        imdb_id = item.imdb_id
        if imdb_id is None and item.primary_id and item.primary_id.startswith("tt"):
            imdb_id = item.primary_id
        if imdb_id:
            filters.append(f"Imdb.{imdb_id}")
        if item.tmdb_id:
            filters.append(f"Tmdb.{item.tmdb_id}")
        if item.primary_id:
            filters.append(f"Stremio.{item.primary_id}")
        return filters

    @staticmethod
    def _to_library_item(entry: dict[str, Any]) -> LibraryItem:
        provider_ids = {
            str(key).lower(): str(value)
            for key, value in (entry.get("ProviderIds") or {}).items()
            if value
        }
        return LibraryItem(
            id=str(entry.get("Id")),
            name=str(entry.get("Name") or ""),
            primary_id=provider_ids.get("stremio"),
            imdb_id=provider_ids.get("imdb"),
            tmdb_id=provider_ids.get("tmdb"),
        )
