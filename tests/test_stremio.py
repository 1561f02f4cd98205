"""Tests for the Stremio catalog client."""

from __future__ import annotations

import httpx
import pytest

from app.exceptions import SourceUnavailableError
from app.services.stremio import StremioCatalogClient


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def test_build_url_variants() -> None:
    client = StremioCatalogClient(None, "https://addon.example.com")  # type: ignore[arg-type]
    base = "https://addon.example.com"

    assert client.build_url(base, "top", "movie") == (
        "https://addon.example.com/catalog/movie/top.json"
    )
    assert client.build_url(base, "top", "movie", skip=40) == (
        "https://addon.example.com/catalog/movie/top/skip=40.json"
    )
    assert client.build_url(base, "top", "series", search="the office", skip=20) == (
        "https://addon.example.com/catalog/series/top/search=the%20office&skip=20.json"
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("https://provider.example.com/manifest.json", "https://provider.example.com"),
        (
            "https://addons.example.com/custom/manifest.json?token=abc",
            "https://addons.example.com/custom",
        ),
        ("https://addons.example.com/custom/", "https://addons.example.com/custom"),
        ("https://example.com/addons/lists", "https://example.com/addons/lists"),
    ],
)
def test_normalize_base_url_handles_common_variations(raw: str, expected: str) -> None:
    assert StremioCatalogClient._normalize_base_url(raw) == expected


def test_normalize_base_url_rejects_empty_values() -> None:
    assert StremioCatalogClient._normalize_base_url(None) is None
    assert StremioCatalogClient._normalize_base_url("   ") is None


@pytest.mark.anyio("asyncio")
async def test_fetch_page_parses_metas_in_provider_order() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "metas": [
                    {"id": "tt0133093", "type": "movie", "name": "The Matrix"},
                    {"id": "tmdb:550", "type": "movie", "name": "Fight Club"},
                    {"name": "No identifier"},
                ]
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http_client:
        client = StremioCatalogClient(
            http_client, "https://addon.example.com/manifest.json"
        )
        items = await client.fetch_page("top", "movie", skip=20)

    assert requests[0].url.path == "/catalog/movie/top/skip=20.json"
    assert [item.primary_id for item in items] == ["tt0133093", "tmdb:550", None]
    assert items[1].tmdb_id == "550"
    assert items[0].name == "The Matrix"


@pytest.mark.anyio("asyncio")
async def test_fetch_page_prefers_definition_manifest_url() -> None:
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        return httpx.Response(200, json={"metas": []})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http_client:
        client = StremioCatalogClient(http_client, "https://default.example.com")
        items = await client.fetch_page(
            "top", "movie", manifest_url="https://other.example.com/manifest.json"
        )

    assert items == []
    assert hosts == ["other.example.com"]


@pytest.mark.anyio("asyncio")
async def test_fetch_page_retries_server_errors_once() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"metas": [{"id": "tt1"}]})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http_client:
        client = StremioCatalogClient(http_client, "https://addon.example.com")
        items = await client.fetch_page("top", "movie")

    assert len(attempts) == 2
    assert [item.primary_id for item in items] == ["tt1"]


@pytest.mark.anyio("asyncio")
async def test_fetch_page_raises_on_client_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http_client:
        client = StremioCatalogClient(http_client, "https://addon.example.com")
        with pytest.raises(SourceUnavailableError, match="status 404"):
            await client.fetch_page("top", "movie")


@pytest.mark.anyio("asyncio")
async def test_fetch_page_without_base_url_is_unavailable() -> None:
    async with httpx.AsyncClient() as http_client:
        client = StremioCatalogClient(http_client)
        assert not client.is_available
        with pytest.raises(SourceUnavailableError):
            await client.fetch_page("top", "movie")
