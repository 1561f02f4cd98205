"""Interfaces to the media library that owns collections and items."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

from ..exceptions import SourceUnavailableError
from ..models import CatalogItem, LibraryItem, MediaType


@dataclass(frozen=True, slots=True)
class InsertOptions:
    """Flags forwarded to the library when materialising a catalog entry."""

    allow_remote_refresh: bool = True
    refresh_item: bool = True
    queue_refresh_item: bool = False
    queue_refresh_children: bool = False


@dataclass(slots=True)
class InsertResult:
    """Outcome of inserting one catalog entry."""

    item: LibraryItem | None
    created: bool = False


class CollectionStore(Protocol):
    async def create_collection(self, name: str) -> str: ...

    async def collection_exists(self, collection_id: str) -> bool: ...

    async def list_members(self, collection_id: str) -> list[LibraryItem]: ...

    async def add_items(self, collection_id: str, item_ids: Sequence[str]) -> None: ...

    async def remove_items(self, collection_id: str, item_ids: Sequence[str]) -> None: ...


class MetadataInserter(Protocol):
    async def insert(
        self,
        parent_folder: str,
        item: CatalogItem,
        options: InsertOptions,
    ) -> InsertResult: ...


class UserDirectory(Protocol):
    async def resolve_user(self, user_id: str | None) -> str | None: ...

    async def root_folder(self, user_id: str | None, media_type: MediaType) -> str | None: ...


class MediaLibrary(CollectionStore, MetadataInserter, UserDirectory, Protocol):
    """Everything the importer needs from the library, behind one capability."""

    @property
    def is_available(self) -> bool: ...


class NullMediaLibrary:
    """Stand-in used when no media library is configured."""

    @property
    def is_available(self) -> bool:
        return False

    def _unavailable(self) -> SourceUnavailableError:
        return SourceUnavailableError("No media library configured")

    async def create_collection(self, name: str) -> str:
        raise self._unavailable()

    async def collection_exists(self, collection_id: str) -> bool:
        raise self._unavailable()

    async def list_members(self, collection_id: str) -> list[LibraryItem]:
        raise self._unavailable()

    async def add_items(self, collection_id: str, item_ids: Sequence[str]) -> None:
        raise self._unavailable()

    async def remove_items(self, collection_id: str, item_ids: Sequence[str]) -> None:
        raise self._unavailable()

    async def insert(
        self,
        parent_folder: str,
        item: CatalogItem,
        options: InsertOptions,
    ) -> InsertResult:
        raise self._unavailable()

    async def resolve_user(self, user_id: str | None) -> str | None:
        return None

    async def root_folder(self, user_id: str | None, media_type: MediaType) -> str | None:
        return None
