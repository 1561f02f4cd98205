"""HTTP route tests for catalog administration."""

from __future__ import annotations

import asyncio

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import register_routes
from app.models import CatalogDefinition
from app.services.importer import CatalogImportService
from app.services.scheduler import CatalogSyncScheduler

from fakes import FakeCatalogSource, FakeLibrary, InMemoryRegistry, library_item


def _build_app(
    registry: InMemoryRegistry | None = None, library: FakeLibrary | None = None
) -> FastAPI:
    settings = Settings(_env_file=None)
    service = CatalogImportService(
        settings,
        registry or InMemoryRegistry(),
        FakeCatalogSource(),  # type: ignore[arg-type]
        library or FakeLibrary(),
    )
    app = FastAPI()
    register_routes(app)
    app.state.import_service = service
    app.state.scheduler = CatalogSyncScheduler(settings, service)
    return app


def _seed(registry: InMemoryRegistry, **overrides) -> CatalogDefinition:
    payload = {
        "id": "top:movie",
        "catalog_id": "top",
        "name": "Top Movies",
        "media_type": "movie",
    }
    payload.update(overrides)
    definition = CatalogDefinition(**payload)
    asyncio.run(registry.save(definition))
    return definition


def test_healthcheck() -> None:
    with TestClient(_build_app()) as client:
        response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_save_assigns_id_and_lists_by_name() -> None:
    registry = InMemoryRegistry()
    _seed(registry, name="Zeta")

    with TestClient(_build_app(registry)) as client:
        saved = client.post(
            "/api/catalogs",
            json={
                "manifestUrl": "https://addon.example.com/manifest.json",
                "catalogId": "anime",
                "name": "Anime",
                "type": "series",
                "updateIntervalHours": 12,
            },
        )
        listed = client.get("/api/catalogs")

    assert saved.status_code == 200
    body = saved.json()
    assert len(body["id"]) == 32
    assert body["mediaType"] == "series"
    assert body["sourceManifestUrl"] == "https://addon.example.com/manifest.json"
    assert body["status"] == "idle"
    assert [row["name"] for row in listed.json()] == ["Anime", "Zeta"]


def test_save_rejects_invalid_payloads() -> None:
    with TestClient(_build_app()) as client:
        not_object = client.post("/api/catalogs", json=["nope"])
        bad_type = client.post(
            "/api/catalogs", json={"catalogId": "x", "name": "X", "type": "music"}
        )

    assert not_object.status_code == 400
    assert bad_type.status_code == 400


def test_get_and_delete_catalog() -> None:
    registry = InMemoryRegistry()
    _seed(registry)

    with TestClient(_build_app(registry)) as client:
        found = client.get("/api/catalogs/top:movie")
        deleted = client.delete("/api/catalogs/top:movie")
        missing = client.get("/api/catalogs/top:movie")

    assert found.status_code == 200
    assert found.json()["catalogId"] == "top"
    assert deleted.json() == {"deleted": "top:movie"}
    assert missing.status_code == 404


def test_status_update_patches_counters() -> None:
    registry = InMemoryRegistry()
    _seed(registry, max_items=40)

    with TestClient(_build_app(registry)) as client:
        response = client.post(
            "/api/catalogs/top:movie/status",
            json={"status": "error", "failedCount": 3},
        )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "error"
    assert body["failedCount"] == 3
    assert body["maxItems"] == 40


def test_reset_can_clear_collection_link() -> None:
    registry = InMemoryRegistry()
    _seed(registry, status="error", imported_count=5, collection_id="col-1")

    with TestClient(_build_app(registry)) as client:
        kept = client.post("/api/catalogs/top:movie/reset")
        cleared = client.post("/api/catalogs/top:movie/reset?clearCollection=true")
        missing = client.post("/api/catalogs/other:movie/reset")

    assert kept.json()["status"] == "idle"
    assert kept.json()["importedCount"] == 0
    assert kept.json()["collectionId"] == "col-1"
    assert cleared.json()["collectionId"] is None
    assert missing.status_code == 404


def test_collection_count_and_listing_refresh_cached_count() -> None:
    registry = InMemoryRegistry()
    library = FakeLibrary()
    library.seed_collection("col-1", [library_item("A"), library_item("B")])
    _seed(registry, collection_id="col-1")

    with TestClient(_build_app(registry, library)) as client:
        count = client.get("/api/catalogs/top:movie/collection-count")
        listed = client.get("/api/catalogs")

    assert count.json() == 2
    assert listed.json()[0]["collectionItemCount"] == 2


def test_bulk_import_accepts_and_reports_job() -> None:
    with TestClient(_build_app()) as client:
        empty = client.post("/api/catalogs/bulk-import", json={"catalogs": []})
        accepted = client.post(
            "/api/catalogs/bulk-import",
            json={"catalogs": [{"catalogId": "top", "type": "movie", "maxItems": 5}]},
        )
        job = client.get(f"/api/catalogs/jobs/{accepted.json()['jobId']}")
        unknown = client.get("/api/catalogs/jobs/unknown")

    assert empty.status_code == 400
    assert accepted.status_code == 202
    assert job.status_code == 200
    assert job.json()["total"] == 1
    assert job.json()["catalogs"] == ["top"]
    assert unknown.status_code == 404


def test_cancel_catalog_that_is_not_syncing() -> None:
    registry = InMemoryRegistry()
    _seed(registry)

    with TestClient(_build_app(registry)) as client:
        response = client.post("/api/catalogs/top:movie/cancel")

    assert response.json() == {"id": "top:movie", "cancelled": False}


def test_sync_trigger_starts_a_cycle() -> None:
    with TestClient(_build_app()) as client:
        before = client.get("/api/catalogs/sync")
        response = client.post("/api/catalogs/sync")

    assert before.json() == {"running": False, "lastReport": None}
    assert response.status_code == 202
    assert response.json() == {"started": True}
