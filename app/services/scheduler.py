"""Periodic synchronisation of every enabled catalog definition."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from ..config import Settings
from ..exceptions import ImportCancelled
from ..models import CatalogDefinition
from ..utils import utcnow
from .importer import CatalogImportService

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


@dataclass(slots=True)
class SyncCycleReport:
    """Aggregate outcome of one scheduler pass."""

    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False
    available: bool = True

    def to_payload(self) -> dict[str, object]:
        return {
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "available": self.available,
        }


class CatalogSyncScheduler:
    """Runs :meth:`CatalogImportService.sync` for each catalog on an interval.

    Every cycle owns a fresh cancellation signal and hands each definition a
    signal of its own, so cancelling one catalog only stops that catalog.
    """

    def __init__(self, settings: Settings, importer: CatalogImportService):
        self._settings = settings
        self._importer = importer
        self._registry = importer.registry
        self._interval_seconds = settings.sync_interval_seconds
        self._loop_task: asyncio.Task[None] | None = None
        self._cycle_task: asyncio.Task[SyncCycleReport] | None = None
        self._cycle_lock = asyncio.Lock()
        self._cycle_cancel: asyncio.Event | None = None
        self.last_report: SyncCycleReport | None = None

    @property
    def running(self) -> bool:
        return self._cycle_lock.locked()

    async def start(self) -> None:
        """Launch the interval loop when scheduled sync is enabled."""

        if not self._settings.catalog_sync_enabled:
            logger.info("Scheduled catalog sync disabled")
            return
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._sync_loop())
            logger.info(
                "Catalog sync scheduled every %.1f hour(s)",
                self._settings.catalog_sync_interval_hours,
            )

    async def stop(self) -> None:
        """Stop the loop and any cycle it started."""

        if self._cycle_cancel is not None:
            self._cycle_cancel.set()
        for task in (self._loop_task, self._cycle_task):
            if task is None or task.done():
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._loop_task = None
        self._cycle_task = None

    def trigger(self) -> bool:
        """Start a cycle now in the background unless one is already running."""

        if self.running or (self._cycle_task and not self._cycle_task.done()):
            return False
        self._cycle_task = asyncio.create_task(self.run_cycle())
        return True

    async def _sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self.run_cycle()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled catalog sync failed: %s", exc)

    async def run_cycle(
        self,
        cancel_event: asyncio.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> SyncCycleReport:
        """Sync every due, enabled definition one after another."""

        cancel_event = cancel_event or asyncio.Event()
        async with self._cycle_lock:
            self._cycle_cancel = cancel_event
            try:
                report = await self._run_cycle(cancel_event, progress)
            finally:
                self._cycle_cancel = None
        self.last_report = report
        return report

    async def _run_cycle(
        self,
        cancel_event: asyncio.Event,
        progress: ProgressCallback | None,
    ) -> SyncCycleReport:
        logger.info("Starting catalog sync task")
        if not self._importer.is_available:
            logger.warning("Media library not available, skipping catalog sync")
            return SyncCycleReport(available=False)

        now = utcnow()
        definitions = [
            definition
            for definition in await self._registry.get_all()
            if definition.enabled
        ]
        report = SyncCycleReport()
        due: list[CatalogDefinition] = []
        unsourced: list[str] = []
        for definition in definitions:
            if self._importer.is_syncing(definition.id) or not self.is_due(definition, now):
                report.skipped += 1
                continue
            if not self._importer.has_source(definition):
                report.skipped += 1
                unsourced.append(definition.id)
                continue
            due.append(definition)

        if unsourced:
            logger.warning(
                "Catalog provider not configured, skipping %d catalog(s): %s",
                len(unsourced),
                ", ".join(unsourced),
            )
            if not due:
                report.available = False
                return report

        if not due:
            logger.info("No catalogs due, nothing to sync")
            return report

        report.total = len(due)
        for definition in due:
            if cancel_event.is_set():
                report.cancelled = True
                break
            # re-read so administrative edits made during the cycle are honoured
            latest = await self._registry.get(definition.id)
            if latest is None or not latest.enabled:
                report.skipped += 1
            else:
                try:
                    await self._sync_one(latest, cancel_event)
                except ImportCancelled:
                    if cancel_event.is_set():
                        report.cancelled = True
                        break
                    report.skipped += 1
                    logger.info("Sync of catalog %s was cancelled", latest.id)
                except Exception as exc:
                    report.failed += 1
                    logger.error(
                        "Failed to sync catalog %s: %s", definition.catalog_id, exc
                    )
                else:
                    report.succeeded += 1

            report.processed += 1
            if progress is not None:
                progress(report.processed / report.total * 100)

        logger.info(
            "Catalog sync task completed. Processed %d of %d catalogs (%d failed).",
            report.processed,
            report.total,
            report.failed,
        )
        return report

    async def _sync_one(
        self, definition: CatalogDefinition, cycle_cancel: asyncio.Event
    ) -> None:
        catalog_cancel = asyncio.Event()

        async def _forward() -> None:
            await cycle_cancel.wait()
            catalog_cancel.set()

        forwarder = asyncio.create_task(_forward())
        try:
            await self._importer.sync(definition, catalog_cancel)
        finally:
            forwarder.cancel()
            with suppress(asyncio.CancelledError):
                await forwarder

    @staticmethod
    def is_due(definition: CatalogDefinition, now: datetime) -> bool:
        """Whether ``definition`` should run in a cycle starting at ``now``."""

        if definition.status != "idle":
            return True
        if definition.update_interval_hours <= 0 or definition.last_updated is None:
            return True
        return definition.last_updated + timedelta(
            hours=definition.update_interval_hours
        ) <= now
