"""Entry point for the FastAPI-hosted catalog sync service."""

from __future__ import annotations

import logging
import secrets
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import settings
from .database import Database
from .models import BulkImportRequest, CatalogDefinition, StatusUpdate
from .services.catalog_registry import CatalogRegistry
from .services.importer import CatalogImportService
from .services.jellyfin import JellyfinLibrary
from .services.library import MediaLibrary, NullMediaLibrary
from .services.scheduler import CatalogSyncScheduler
from .services.stremio import StremioCatalogClient
from .utils import coerce_bool

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    catalog_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0))
    )
    database = Database(settings.database_url)
    await database.create_all()

    library: MediaLibrary = NullMediaLibrary()
    if settings.jellyfin_url and settings.jellyfin_api_key:
        jellyfin_http_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(settings.jellyfin_url),
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        )
        library = JellyfinLibrary(settings, jellyfin_http_client)
    else:
        logger.warning("Jellyfin is not configured; catalog imports are disabled")

    default_addon = (
        str(settings.catalog_addon_url) if settings.catalog_addon_url is not None else None
    )
    source = StremioCatalogClient(
        catalog_http_client, default_addon, page_size=settings.catalog_page_size
    )
    registry = CatalogRegistry(database.session_factory)
    import_service = CatalogImportService(settings, registry, source, library)
    scheduler = CatalogSyncScheduler(settings, import_service)

    app.state.import_service = import_service
    app.state.scheduler = scheduler
    app.state.database = database
    await import_service.recover_stale()
    await scheduler.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await scheduler.stop()
        await import_service.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Keeps library collections in step with Stremio catalogs",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_import_service(app: FastAPI) -> CatalogImportService:
    service = getattr(app.state, "import_service", None)
    if not isinstance(service, CatalogImportService):
        raise RuntimeError("Import service not initialised")
    return service


def get_scheduler(app: FastAPI) -> CatalogSyncScheduler:
    scheduler = getattr(app.state, "scheduler", None)
    if not isinstance(scheduler, CatalogSyncScheduler):
        raise RuntimeError("Sync scheduler not initialised")
    return scheduler


def register_routes(fastapi_app: FastAPI) -> None:
    async def _json_body(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")
        return payload

    async def _require_definition(definition_id: str) -> CatalogDefinition:
        service = get_import_service(fastapi_app)
        definition = await service.get_status(definition_id)
        if definition is None:
            raise HTTPException(status_code=404, detail="Catalog not found")
        return definition

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/catalogs")
    async def list_catalogs() -> JSONResponse:
        service = get_import_service(fastapi_app)
        definitions = await service.registry.get_all()
        payload = []
        for definition in definitions:
            if definition.collection_id and not service.is_syncing(definition.id):
                definition = await service.refresh_collection_count(definition)
            payload.append(definition.to_payload())
        return JSONResponse(payload)

    @fastapi_app.get("/api/catalogs/jobs/{job_id}")
    async def job_status(job_id: str) -> JSONResponse:
        job = get_import_service(fastapi_app).get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return JSONResponse(job.to_payload())

    @fastapi_app.post("/api/catalogs/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str) -> JSONResponse:
        cancelled = get_import_service(fastapi_app).cancel_job(job_id)
        if not cancelled:
            raise HTTPException(status_code=404, detail="No running job with that id")
        return JSONResponse({"jobId": job_id, "cancelled": True})

    @fastapi_app.post("/api/catalogs/bulk-import")
    async def bulk_import(request: Request) -> JSONResponse:
        payload = await _json_body(request)
        try:
            bulk_request = BulkImportRequest.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        if not bulk_request.catalogs:
            raise HTTPException(status_code=400, detail="No catalogs specified")
        job = get_import_service(fastapi_app).start_bulk_import(bulk_request)
        return JSONResponse(
            {
                "message": f"Import started for {job.total} catalog(s)",
                "jobId": job.id,
            },
            status_code=202,
        )

    @fastapi_app.post("/api/catalogs/sync")
    async def trigger_sync() -> JSONResponse:
        started = get_scheduler(fastapi_app).trigger()
        return JSONResponse({"started": started}, status_code=202 if started else 409)

    @fastapi_app.get("/api/catalogs/sync")
    async def sync_status() -> JSONResponse:
        scheduler = get_scheduler(fastapi_app)
        report = scheduler.last_report
        return JSONResponse(
            {
                "running": scheduler.running,
                "lastReport": report.to_payload() if report is not None else None,
            }
        )

    @fastapi_app.get("/api/catalogs/{definition_id}")
    async def get_catalog(definition_id: str) -> JSONResponse:
        definition = await _require_definition(definition_id)
        return JSONResponse(definition.to_payload())

    @fastapi_app.post("/api/catalogs")
    async def save_catalog(request: Request) -> JSONResponse:
        payload = await _json_body(request)
        if not str(payload.get("id") or "").strip():
            payload["id"] = secrets.token_hex(16)
        if not payload.get("status"):
            payload["status"] = "idle"
        try:
            definition = CatalogDefinition.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        await get_import_service(fastapi_app).registry.save(definition)
        return JSONResponse(definition.to_payload())

    @fastapi_app.delete("/api/catalogs/{definition_id}")
    async def delete_catalog(definition_id: str) -> JSONResponse:
        service = get_import_service(fastapi_app)
        service.cancel_catalog(definition_id)
        await service.registry.delete(definition_id)
        return JSONResponse({"deleted": definition_id})

    @fastapi_app.post("/api/catalogs/{definition_id}/status")
    async def update_status(definition_id: str, request: Request) -> JSONResponse:
        await _require_definition(definition_id)
        payload = await _json_body(request)
        try:
            update = StatusUpdate.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        changes: dict[str, Any] = {"status": update.status}
        if update.imported_count is not None:
            changes["imported_count"] = update.imported_count
        if update.failed_count is not None:
            changes["failed_count"] = update.failed_count
        if update.last_updated is not None:
            changes["last_updated"] = update.last_updated
        definition = await get_import_service(fastapi_app).registry.update(
            definition_id, **changes
        )
        if definition is None:
            raise HTTPException(status_code=404, detail="Catalog not found")
        return JSONResponse(definition.to_payload())

    @fastapi_app.post("/api/catalogs/{definition_id}/reset")
    async def reset_catalog(definition_id: str, request: Request) -> JSONResponse:
        await _require_definition(definition_id)
        clear_collection = coerce_bool(request.query_params.get("clearCollection"))
        try:
            definition = await get_import_service(fastapi_app).reset(
                definition_id, clear_collection=clear_collection
            )
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if definition is None:
            raise HTTPException(status_code=404, detail="Catalog not found")
        return JSONResponse(definition.to_payload())

    @fastapi_app.post("/api/catalogs/{definition_id}/cancel")
    async def cancel_catalog(definition_id: str) -> JSONResponse:
        await _require_definition(definition_id)
        cancelled = get_import_service(fastapi_app).cancel_catalog(definition_id)
        return JSONResponse({"id": definition_id, "cancelled": cancelled})

    @fastapi_app.get("/api/catalogs/{definition_id}/collection-count")
    async def collection_count(definition_id: str) -> JSONResponse:
        definition = await _require_definition(definition_id)
        count = await get_import_service(fastapi_app).collection_item_count(definition)
        return JSONResponse(count)


app = create_app()
