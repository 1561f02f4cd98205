"""Background import and synchronisation of catalogs into collections."""

from __future__ import annotations

import asyncio
import logging
import secrets
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from ..config import Settings
from ..exceptions import (
    CatalogSyncError,
    CollectionCreateError,
    ImportCancelled,
    ItemInsertionError,
    SourceUnavailableError,
)
from ..models import (
    BulkImportRequest,
    CatalogDefinition,
    CatalogImportRequest,
    CatalogItem,
    LibraryItem,
)
from ..utils import utcnow
from .catalog_registry import CatalogRegistry
from .library import InsertOptions, MediaLibrary
from .reconciliation import reconcile
from .stremio import StremioCatalogClient

logger = logging.getLogger(__name__)

_MAX_FINISHED_JOBS = 20


@dataclass(slots=True)
class SyncResult:
    """Summary of one completed catalog sync."""

    definition_id: str
    collection_id: str | None
    fetched: int = 0
    removed: int = 0
    planned: int = 0
    imported: int = 0
    failed: int = 0


@dataclass
class ImportJob:
    """A batch of catalog imports running in the background."""

    id: str
    requests: list[CatalogImportRequest]
    user_id: str | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    processed: int = 0
    current: str | None = None
    results: list[SyncResult] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def total(self) -> int:
        return len(self.requests)

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    async def wait(self) -> None:
        if self.task is not None:
            with suppress(asyncio.CancelledError):
                await self.task

    def to_payload(self) -> dict[str, Any]:
        return {
            "jobId": self.id,
            "total": self.total,
            "processed": self.processed,
            "current": self.current,
            "done": self.done,
            "cancelled": self.cancelled,
            "createdAt": self.created_at.isoformat(),
            "catalogs": [request.catalog_id for request in self.requests],
        }


class CatalogImportService:
    """Drives catalog syncs and tracks the background jobs running them."""

    def __init__(
        self,
        settings: Settings,
        registry: CatalogRegistry,
        source: StremioCatalogClient,
        library: MediaLibrary,
    ):
        self._settings = settings
        self._registry = registry
        self._source = source
        self._library = library
        self._item_timeout = settings.item_timeout_seconds
        self._alias_priority = tuple(settings.alias_priority)
        self._insert_options = InsertOptions()
        self._jobs: dict[str, ImportJob] = {}
        self._active_syncs: dict[str, asyncio.Event] = {}

    @property
    def is_available(self) -> bool:
        return self._library.is_available

    @property
    def registry(self) -> CatalogRegistry:
        return self._registry

    def has_source(self, definition: CatalogDefinition) -> bool:
        """Whether a catalog add-on URL is known for ``definition``."""

        return bool(definition.source_manifest_url.strip()) or self._source.is_available

    # -- jobs -----------------------------------------------------------------

    def start_bulk_import(self, request: BulkImportRequest) -> ImportJob:
        """Schedule ``request`` in the background and return its job handle."""

        if not request.catalogs:
            raise ValueError("No catalogs specified")
        self._prune_jobs()
        job = ImportJob(
            id=secrets.token_hex(8),
            requests=list(request.catalogs),
            user_id=request.user_id,
        )
        job.task = asyncio.create_task(self._run_job(job))
        self._jobs[job.id] = job
        logger.info("Accepted bulk import %s for %d catalog(s)", job.id, job.total)
        return job

    async def _run_job(self, job: ImportJob) -> None:
        try:
            await self.bulk_import(
                job.requests, job.cancel_event, user_id=job.user_id, job=job
            )
        except Exception as exc:  # pragma: no cover - background safety net
            logger.exception("Bulk import %s failed: %s", job.id, exc)
        finally:
            job.current = None

    def get_job(self, job_id: str) -> ImportJob | None:
        return self._jobs.get(job_id)

    def active_jobs(self) -> list[ImportJob]:
        return [job for job in self._jobs.values() if not job.done]

    def cancel_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.done:
            return False
        job.cancel()
        return True

    def cancel_catalog(self, definition_id: str) -> bool:
        """Signal the run syncing ``definition_id``; shared batch signals stop the batch."""

        event = self._active_syncs.get(definition_id)
        if event is None:
            return False
        event.set()
        return True

    def is_syncing(self, definition_id: str) -> bool:
        return definition_id in self._active_syncs

    async def stop(self) -> None:
        """Cancel every in-flight job and wait for them to unwind."""

        tasks: list[asyncio.Task[None]] = []
        for job in self._jobs.values():
            if job.task is None or job.task.done():
                continue
            job.cancel()
            job.task.cancel()
            tasks.append(job.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _prune_jobs(self) -> None:
        finished = [job for job in self._jobs.values() if job.done]
        finished.sort(key=lambda job: job.created_at)
        for job in finished[: max(0, len(finished) - _MAX_FINISHED_JOBS)]:
            self._jobs.pop(job.id, None)

    # -- imports --------------------------------------------------------------

    async def bulk_import(
        self,
        requests: Sequence[CatalogImportRequest],
        cancel_event: asyncio.Event,
        *,
        user_id: str | None = None,
        job: ImportJob | None = None,
    ) -> list[SyncResult]:
        """Import ``requests`` one after another, containing each failure."""

        results: list[SyncResult] = []
        for request in requests:
            if cancel_event.is_set():
                logger.info("Bulk import cancelled before %s", request.catalog_id)
                break
            if job is not None:
                job.current = request.catalog_id
            try:
                result = await self.import_catalog(
                    request, cancel_event, user_id=user_id
                )
            except ImportCancelled:
                logger.info("Import cancelled for %s", request.catalog_id)
                break
            except Exception as exc:
                logger.error(
                    "Import failed for %s (%s): %s",
                    request.catalog_id,
                    request.media_type,
                    exc,
                )
            else:
                results.append(result)
                if job is not None:
                    job.results.append(result)
            finally:
                if job is not None:
                    job.processed += 1
        return results

    async def import_catalog(
        self,
        request: CatalogImportRequest,
        cancel_event: asyncio.Event | None = None,
        *,
        user_id: str | None = None,
    ) -> SyncResult:
        """Create or update the definition behind ``request`` and sync it."""

        definition_id = self._settings.definition_key(
            request.catalog_id, request.media_type
        )
        existing = await self._registry.get(definition_id)
        if existing is None:
            definition = await self._registry.save(
                CatalogDefinition(
                    id=definition_id,
                    source_manifest_url=request.manifest_url,
                    catalog_id=request.catalog_id,
                    name=request.custom_name or request.catalog_id,
                    media_type=request.media_type,
                    max_items=request.max_items,
                )
            )
        else:
            changes: dict[str, Any] = {"max_items": request.max_items}
            if request.custom_name:
                changes["name"] = request.custom_name
            if request.manifest_url:
                changes["source_manifest_url"] = request.manifest_url
            definition = await self._registry.update(definition_id, **changes) or existing

        logger.info(
            "Starting import for %s (%s), max %d items",
            request.catalog_id,
            request.media_type,
            request.max_items,
        )
        return await self.sync(
            definition,
            cancel_event,
            user_id=user_id,
            collection_id=request.combined_collection_id,
        )

    async def sync(
        self,
        definition: CatalogDefinition,
        cancel_event: asyncio.Event | None = None,
        *,
        user_id: str | None = None,
        collection_id: str | None = None,
    ) -> SyncResult:
        """Converge the definition's collection on the current catalog contents.

        Progress is persisted after every item, together with an in-progress
        ``last_updated`` timestamp; the final timestamp is written on completion.
        Cancellation leaves the persisted counters as they were when the
        signal was observed and never marks the definition as errored. Any
        other failure that stops the run is recorded as ``status=error`` and
        re-raised.
        """

        if definition.id in self._active_syncs:
            raise CatalogSyncError(f"Catalog {definition.id} is already syncing")
        cancel_event = cancel_event or asyncio.Event()
        self._active_syncs[definition.id] = cancel_event
        try:
            return await self._sync(definition, cancel_event, user_id, collection_id)
        finally:
            self._active_syncs.pop(definition.id, None)

    async def _sync(
        self,
        definition: CatalogDefinition,
        cancel_event: asyncio.Event,
        user_id: str | None,
        requested_collection: str | None,
    ) -> SyncResult:
        definition = await self._persist(
            definition.id, status="importing", imported_count=0, failed_count=0
        )
        logger.info("Syncing catalog %s (%s)", definition.name, definition.id)
        imported = 0
        failed = 0
        try:
            collection_id = await self._resolve_collection(
                definition, requested_collection
            )
            members: list[LibraryItem] = []
            if collection_id:
                members = await self._library.list_members(collection_id)

            acting_user = await self._library.resolve_user(user_id)
            root = await self._library.root_folder(acting_user, definition.media_type)
            if root is None:
                raise SourceUnavailableError(
                    f"No {definition.media_type} folder configured for user {acting_user}"
                )

            fetched = await self._fetch_catalog(definition, cancel_event)
            plan = reconcile(
                members,
                fetched,
                definition.max_items,
                priority=self._alias_priority,
            )
            logger.info(
                "Catalog %s: fetched %d, collection has %d, removing %d, adding %d of %d slot(s)",
                definition.id,
                len(fetched),
                len(members),
                len(plan.remove),
                len(plan.add),
                plan.slots,
            )

            if plan.remove and collection_id:
                await self._library.remove_items(
                    collection_id, [member.id for member in plan.remove]
                )

            for item in plan.add:
                self._check_cancelled(cancel_event)
                try:
                    library_item = await self._insert_item(root, item, cancel_event)
                    if collection_id:
                        await self._library.add_items(collection_id, [library_item.id])
                except ImportCancelled:
                    raise
                except Exception as exc:
                    failed += 1
                    logger.warning(
                        "Failed to import %s into %s: %s",
                        item.display_id(self._alias_priority),
                        definition.id,
                        exc,
                    )
                    await self._persist(definition.id, failed_count=failed)
                    continue
                imported += 1
                logger.debug(
                    "Added %s to collection of %s", library_item.name or library_item.id, definition.id
                )
                await self._persist(
                    definition.id, imported_count=imported, last_updated=utcnow()
                )

            member_count = 0
            if collection_id:
                member_count = len(await self._library.list_members(collection_id))
            await self._persist(
                definition.id,
                status="idle",
                imported_count=imported,
                failed_count=failed,
                collection_id=collection_id,
                collection_item_count=member_count,
                last_updated=utcnow(),
            )
        except (ImportCancelled, asyncio.CancelledError):
            logger.info(
                "Sync of %s cancelled after %d imported, %d failed",
                definition.id,
                imported,
                failed,
            )
            raise
        except Exception as exc:
            logger.error("Sync of %s failed: %s", definition.id, exc)
            await self._mark_error(definition.id)
            raise

        logger.info(
            "Import complete for %s: %d imported, %d failed",
            definition.id,
            imported,
            failed,
        )
        return SyncResult(
            definition_id=definition.id,
            collection_id=collection_id,
            fetched=len(fetched),
            removed=len(plan.remove),
            planned=len(plan.add),
            imported=imported,
            failed=failed,
        )

    async def _resolve_collection(
        self, definition: CatalogDefinition, requested: str | None
    ) -> str | None:
        candidate = requested or definition.collection_id
        if candidate:
            if await self._library.collection_exists(candidate):
                if candidate != definition.collection_id:
                    await self._persist(definition.id, collection_id=candidate)
                return candidate
            logger.warning(
                "Collection %s for catalog %s no longer exists, creating a new one",
                candidate,
                definition.id,
            )

        try:
            collection_id = await self._library.create_collection(definition.name)
        except CollectionCreateError as exc:
            logger.warning(
                "Could not create collection for %s, continuing without one: %s",
                definition.id,
                exc,
            )
            if definition.collection_id:
                await self._persist(definition.id, collection_id=None)
            return None

        # persisted before any member is touched so a crash keeps the link
        await self._persist(definition.id, collection_id=collection_id)
        logger.info(
            "Created collection '%s' with ID %s", definition.name, collection_id
        )
        return collection_id

    async def _fetch_catalog(
        self, definition: CatalogDefinition, cancel_event: asyncio.Event
    ) -> list[CatalogItem]:
        items: list[CatalogItem] = []
        skip = 0
        page_size = self._source.nominal_page_size
        while len(items) < definition.max_items:
            self._check_cancelled(cancel_event)
            page = await self._source.fetch_page(
                definition.catalog_id,
                definition.media_type,
                None,
                skip,
                manifest_url=definition.source_manifest_url or None,
            )
            if not page:
                break
            items.extend(page[: definition.max_items - len(items)])
            skip += len(page)
            if len(page) < page_size:
                break
        return items

    async def _insert_item(
        self, root: str, item: CatalogItem, cancel_event: asyncio.Event
    ) -> LibraryItem:
        insert_task = asyncio.create_task(
            self._library.insert(root, item, self._insert_options)
        )
        cancel_task = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {insert_task, cancel_task},
                timeout=self._item_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            pending = [task for task in (insert_task, cancel_task) if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        item_id = item.display_id(self._alias_priority)
        if insert_task in done:
            result = insert_task.result()
            if result.item is None:
                raise ItemInsertionError(
                    f"Library could not resolve {item_id}", item_id=item_id
                )
            return result.item
        if cancel_task in done:
            raise ImportCancelled(f"Cancelled while importing {item_id}")
        raise ItemInsertionError(
            f"Timed out after {self._item_timeout:g}s importing {item_id}",
            item_id=item_id,
        )

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event) -> None:
        if cancel_event.is_set():
            raise ImportCancelled("Import cancelled")

    async def _persist(self, definition_id: str, **changes: Any) -> CatalogDefinition:
        updated = await self._registry.update(definition_id, **changes)
        if updated is None:
            raise CatalogSyncError(
                f"Catalog definition {definition_id} was deleted during sync"
            )
        return updated

    async def _mark_error(self, definition_id: str) -> None:
        try:
            await self._registry.update(definition_id, status="error")
        except CatalogSyncError as exc:
            logger.error(
                "Could not record error status for %s: %s", definition_id, exc
            )

    # -- status ---------------------------------------------------------------

    async def get_status(self, definition_id: str) -> CatalogDefinition | None:
        return await self._registry.get(definition_id)

    async def reset(
        self, definition_id: str, *, clear_collection: bool = False
    ) -> CatalogDefinition | None:
        """Return a definition to ``idle`` with zeroed counters."""

        if self.is_syncing(definition_id):
            raise ValueError(f"Catalog {definition_id} is currently importing")
        changes: dict[str, Any] = {
            "status": "idle",
            "imported_count": 0,
            "failed_count": 0,
        }
        if clear_collection:
            changes["collection_id"] = None
            changes["collection_item_count"] = 0
        return await self._registry.update(definition_id, **changes)

    async def collection_item_count(self, definition: CatalogDefinition) -> int:
        """Count members of the definition's collection, falling back to the cache."""

        if not definition.collection_id:
            return 0
        if not self._library.is_available:
            return definition.collection_item_count
        try:
            if not await self._library.collection_exists(definition.collection_id):
                return 0
            members = await self._library.list_members(definition.collection_id)
        except SourceUnavailableError as exc:
            logger.warning(
                "Could not count collection %s: %s", definition.collection_id, exc
            )
            return definition.collection_item_count
        return len(members)

    async def refresh_collection_count(
        self, definition: CatalogDefinition
    ) -> CatalogDefinition:
        count = await self.collection_item_count(definition)
        if count == definition.collection_item_count:
            return definition
        updated = await self._registry.update(
            definition.id, collection_item_count=count
        )
        return updated or definition.model_copy(update={"collection_item_count": count})

    async def recover_stale(self) -> list[CatalogDefinition]:
        """Handle definitions left ``importing`` by a previous process."""

        stale = [
            definition
            for definition in await self._registry.get_all()
            if definition.status == "importing" and not self.is_syncing(definition.id)
        ]
        if not stale:
            return []
        if self._settings.stale_import_policy == "reset":
            for definition in stale:
                await self._registry.update(definition.id, status="idle")
            logger.info("Reset %d stale importing catalog(s) to idle", len(stale))
        else:
            logger.info(
                "Found %d stale importing catalog(s); they will re-run on the next sync",
                len(stale),
            )
        return stale
