"""Durable storage of catalog definitions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import CatalogDefinitionRecord
from ..exceptions import PersistenceError
from ..models import CatalogDefinition

logger = logging.getLogger(__name__)


class CatalogRegistry:
    """Single-writer store of catalog definitions keyed by id.

    Every operation runs under one lock so a background sync updating its
    counters and an administrative edit never interleave their
    read-modify-write cycles. Callers should re-fetch a definition before
    editing it rather than saving a stale copy.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    async def get_all(self) -> list[CatalogDefinition]:
        """Return every definition ordered by name."""

        async with self._lock:
            async with self._session_factory() as session:
                stmt = select(CatalogDefinitionRecord).order_by(
                    CatalogDefinitionRecord.name, CatalogDefinitionRecord.id
                )
                result = await session.execute(stmt)
                return [self._record_to_definition(row) for row in result.scalars()]

    async def get(self, definition_id: str) -> CatalogDefinition | None:
        async with self._lock:
            async with self._session_factory() as session:
                record = await session.get(CatalogDefinitionRecord, definition_id)
                if record is None:
                    return None
                return self._record_to_definition(record)

    async def save(self, definition: CatalogDefinition) -> CatalogDefinition:
        """Insert or fully replace the row for ``definition.id``."""

        async with self._lock:
            await self._write(definition)
        return definition

    async def update(self, definition_id: str, **changes: Any) -> CatalogDefinition | None:
        """Apply ``changes`` to the freshest stored row and persist it.

        Returns ``None`` when the definition no longer exists.
        """

        async with self._lock:
            async with self._session_factory() as session:
                record = await session.get(CatalogDefinitionRecord, definition_id)
                if record is None:
                    return None
                current = self._record_to_definition(record)
            updated = current.model_copy(update=changes)
            await self._write(updated)
            return updated

    async def delete(self, definition_id: str) -> None:
        async with self._lock:
            try:
                async with self._session_factory() as session:
                    await session.execute(
                        delete(CatalogDefinitionRecord).where(
                            CatalogDefinitionRecord.id == definition_id
                        )
                    )
                    await session.commit()
            except SQLAlchemyError as exc:
                raise PersistenceError(
                    f"Failed to delete catalog definition {definition_id}"
                ) from exc

    async def _write(self, definition: CatalogDefinition) -> None:
        try:
            async with self._session_factory() as session:
                await session.merge(self._definition_to_record(definition))
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to persist catalog definition %s: %s", definition.id, exc
            )
            raise PersistenceError(
                f"Failed to persist catalog definition {definition.id}"
            ) from exc

    @staticmethod
    def _definition_to_record(definition: CatalogDefinition) -> CatalogDefinitionRecord:
        return CatalogDefinitionRecord(
            id=definition.id,
            manifest_url=definition.source_manifest_url,
            catalog_id=definition.catalog_id,
            name=definition.name,
            type=definition.media_type,
            enabled=definition.enabled,
            update_interval_hours=definition.update_interval_hours,
            last_updated=definition.last_updated,
            status=definition.status,
            max_items=definition.max_items,
            imported_count=definition.imported_count,
            failed_count=definition.failed_count,
            collection_id=definition.collection_id,
            collection_item_count=definition.collection_item_count,
        )

    @staticmethod
    def _record_to_definition(record: CatalogDefinitionRecord) -> CatalogDefinition:
        return CatalogDefinition(
            id=record.id,
            source_manifest_url=record.manifest_url or "",
            catalog_id=record.catalog_id,
            name=record.name,
            media_type=record.type,
            enabled=bool(record.enabled),
            update_interval_hours=record.update_interval_hours or 0,
            last_updated=record.last_updated,
            status=record.status or "idle",
            max_items=record.max_items if record.max_items is not None else 100,
            imported_count=record.imported_count or 0,
            failed_count=record.failed_count or 0,
            collection_id=record.collection_id,
            collection_item_count=record.collection_item_count or 0,
        )
