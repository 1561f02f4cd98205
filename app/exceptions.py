"""Failure types raised while synchronising catalogs."""

from __future__ import annotations


class CatalogSyncError(Exception):
    """Base class for catalog synchronisation failures."""


class SourceUnavailableError(CatalogSyncError):
    """The catalog provider or media library cannot serve this run."""


class ItemInsertionError(CatalogSyncError):
    """A single catalog entry could not be inserted into the library."""

    def __init__(self, message: str, item_id: str | None = None):
        self.item_id = item_id
        super().__init__(message)


class CollectionCreateError(CatalogSyncError):
    """The target collection could not be created."""


class ImportCancelled(CatalogSyncError):
    """A sync observed its cancellation signal and stopped."""


class PersistenceError(CatalogSyncError):
    """A catalog definition could not be written to the registry."""
