"""Tests for the periodic catalog sync scheduler."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any

import pytest

from app.config import Settings
from app.models import CatalogDefinition
from app.services.importer import CatalogImportService
from app.services.scheduler import CatalogSyncScheduler
from app.utils import utcnow

from fakes import FakeCatalogSource, FakeLibrary, InMemoryRegistry, catalog_item


def _definition(catalog_id: str, name: str, **overrides: Any) -> CatalogDefinition:
    payload: dict[str, Any] = {
        "id": f"{catalog_id}:movie",
        "catalog_id": catalog_id,
        "name": name,
        "max_items": 5,
    }
    payload.update(overrides)
    return CatalogDefinition(**payload)


def _scheduler(
    registry: InMemoryRegistry, source: FakeCatalogSource, library: FakeLibrary
) -> CatalogSyncScheduler:
    settings = Settings(_env_file=None)
    importer = CatalogImportService(settings, registry, source, library)  # type: ignore[arg-type]
    return CatalogSyncScheduler(settings, importer)


def test_cycle_is_skipped_when_library_unavailable() -> None:
    registry = InMemoryRegistry()
    source = FakeCatalogSource({"a": [catalog_item("x")]})

    async def runner():
        await registry.save(_definition("a", "Alpha"))
        scheduler = _scheduler(registry, source, FakeLibrary(available=False))
        return await scheduler.run_cycle()

    report = asyncio.run(runner())

    assert report.available is False
    assert report.processed == 0
    assert source.calls == []


def test_cycle_isolates_failures_and_reports_progress() -> None:
    registry = InMemoryRegistry()
    source = FakeCatalogSource(
        {"a": [catalog_item("x")], "c": [catalog_item("y")]}, failing={"b"}
    )
    progress: list[float] = []

    async def runner():
        await registry.save(_definition("a", "Alpha"))
        await registry.save(_definition("b", "Bravo"))
        await registry.save(_definition("c", "Charlie"))
        scheduler = _scheduler(registry, source, FakeLibrary())
        report = await scheduler.run_cycle(progress=progress.append)
        return scheduler, report, {row.id: row.status for row in await registry.get_all()}

    scheduler, report, statuses = asyncio.run(runner())

    assert (report.total, report.processed) == (3, 3)
    assert (report.succeeded, report.failed) == (2, 1)
    assert statuses == {"a:movie": "idle", "b:movie": "error", "c:movie": "idle"}
    assert progress == pytest.approx([100 / 3, 200 / 3, 100.0])
    assert scheduler.last_report is report


def test_disabled_and_recent_definitions_are_skipped() -> None:
    registry = InMemoryRegistry()
    source = FakeCatalogSource({"a": [], "b": [], "c": []})

    async def runner():
        await registry.save(_definition("a", "Alpha", enabled=False))
        await registry.save(
            _definition(
                "b",
                "Bravo",
                update_interval_hours=24,
                last_updated=utcnow() - timedelta(hours=1),
            )
        )
        await registry.save(_definition("c", "Charlie"))
        scheduler = _scheduler(registry, source, FakeLibrary())
        return await scheduler.run_cycle()

    report = asyncio.run(runner())

    assert report.total == 1
    assert report.skipped == 1
    assert [call[0] for call in source.calls] == ["c"]


def test_is_due_rules() -> None:
    now = datetime(2024, 6, 1, 12, 0)
    recent = now - timedelta(hours=2)

    assert CatalogSyncScheduler.is_due(_definition("a", "A"), now)
    assert CatalogSyncScheduler.is_due(
        _definition("a", "A", update_interval_hours=1, last_updated=recent), now
    )
    assert not CatalogSyncScheduler.is_due(
        _definition("a", "A", update_interval_hours=3, last_updated=recent), now
    )
    assert CatalogSyncScheduler.is_due(
        _definition(
            "a", "A", update_interval_hours=3, last_updated=recent, status="importing"
        ),
        now,
    )


def test_trigger_refuses_overlapping_cycles() -> None:
    registry = InMemoryRegistry()

    async def runner():
        await registry.save(_definition("a", "Alpha"))
        scheduler = _scheduler(registry, FakeCatalogSource({"a": []}), FakeLibrary())
        first = scheduler.trigger()
        second = scheduler.trigger()
        await scheduler.stop()
        return first, second

    first, second = asyncio.run(runner())

    assert first is True
    assert second is False


def test_cancelling_one_catalog_leaves_other_catalogs_and_later_cycles_running() -> None:
    registry = InMemoryRegistry()
    source = FakeCatalogSource(
        {"a": [catalog_item("x"), catalog_item("y")], "b": [catalog_item("z")]}
    )
    library = FakeLibrary()
    settings = Settings(_env_file=None)
    importer = CatalogImportService(settings, registry, source, library)  # type: ignore[arg-type]
    scheduler = CatalogSyncScheduler(settings, importer)

    async def cancel_alpha(item) -> None:
        if item.primary_id == "x":
            importer.cancel_catalog("a:movie")
            await asyncio.sleep(5)

    library.insert_hook = cancel_alpha

    async def runner():
        await registry.save(_definition("a", "Alpha"))
        await registry.save(_definition("b", "Bravo"))
        first = await scheduler.run_cycle()
        after_first = await registry.get("a:movie")
        library.insert_hook = None
        second = await scheduler.run_cycle()
        statuses = {row.id: row.status for row in await registry.get_all()}
        return first, after_first, second, statuses

    first, after_first, second, statuses = asyncio.run(runner())

    assert first.cancelled is False
    assert (first.processed, first.succeeded, first.skipped) == (2, 1, 1)
    assert after_first is not None and after_first.status == "importing"
    assert second.cancelled is False
    assert second.succeeded == 2
    assert statuses == {"a:movie": "idle", "b:movie": "idle"}
    assert library.member_ids("col-1") == ["lib-x", "lib-y"]


def test_cycle_cancellation_stops_remaining_catalogs() -> None:
    registry = InMemoryRegistry()
    source = FakeCatalogSource({"a": [], "b": []})
    cancel_event = asyncio.Event()
    cancel_event.set()

    async def runner():
        await registry.save(_definition("a", "Alpha"))
        await registry.save(_definition("b", "Bravo"))
        scheduler = _scheduler(registry, source, FakeLibrary())
        return await scheduler.run_cycle(cancel_event)

    report = asyncio.run(runner())

    assert report.cancelled is True
    assert report.processed == 0
    assert source.calls == []


def test_catalogs_without_a_provider_are_skipped_without_error() -> None:
    registry = InMemoryRegistry()
    source = FakeCatalogSource({"b": [catalog_item("z")]}, available=False)

    async def runner():
        await registry.save(_definition("a", "Alpha"))
        await registry.save(
            _definition(
                "b",
                "Bravo",
                source_manifest_url="https://addon.example.com/manifest.json",
            )
        )
        scheduler = _scheduler(registry, source, FakeLibrary())
        report = await scheduler.run_cycle()
        return report, {row.id: row.status for row in await registry.get_all()}

    report, statuses = asyncio.run(runner())

    assert (report.total, report.succeeded, report.skipped) == (1, 1, 1)
    assert statuses == {"a:movie": "idle", "b:movie": "idle"}
    assert [call[0] for call in source.calls] == ["b"]


def test_cycle_is_skipped_when_no_catalog_has_a_provider() -> None:
    registry = InMemoryRegistry()
    source = FakeCatalogSource(available=False)

    async def runner():
        await registry.save(_definition("a", "Alpha"))
        scheduler = _scheduler(registry, source, FakeLibrary())
        report = await scheduler.run_cycle()
        return report, await registry.get("a:movie")

    report, stored = asyncio.run(runner())

    assert report.available is False
    assert report.failed == 0
    assert stored is not None and stored.status == "idle"
    assert source.calls == []
