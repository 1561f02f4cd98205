"""Client for paging through Stremio add-on catalogs."""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from ..exceptions import SourceUnavailableError
from ..models import CatalogItem, MediaType

logger = logging.getLogger(__name__)


class StremioCatalogClient:
    """Wrapper around the ``/catalog`` resource of Stremio add-ons."""

    _CATALOG_PATH = "/catalog/{type}/{id}.json"
    _CATALOG_EXTRA_PATH = "/catalog/{type}/{id}/{extra}.json"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        default_base_url: str | None = None,
        *,
        page_size: int = 20,
    ) -> None:
        self._client = http_client
        self._default_base_url = self._normalize_base_url(default_base_url)
        self._page_size = page_size
        self._max_attempts = 2

    @property
    def default_base_url(self) -> str | None:
        """Return the default add-on URL, if configured."""

        return self._default_base_url

    @property
    def nominal_page_size(self) -> int:
        """Pages shorter than this mark the end of a catalog."""

        return self._page_size

    @property
    def is_available(self) -> bool:
        return self._default_base_url is not None

    def build_url(
        self,
        base_url: str,
        catalog_id: str,
        media_type: str,
        *,
        search: str | None = None,
        skip: int = 0,
    ) -> str:
        extras: list[str] = []
        if search:
            extras.append(f"search={quote(search, safe='')}")
        if skip > 0:
            extras.append(f"skip={skip}")
        encoded_id = quote(catalog_id, safe="")
        if extras:
            path = self._CATALOG_EXTRA_PATH.format(
                type=media_type, id=encoded_id, extra="&".join(extras)
            )
        else:
            path = self._CATALOG_PATH.format(type=media_type, id=encoded_id)
        return f"{base_url}{path}"

    async def fetch_page(
        self,
        catalog_id: str,
        media_type: MediaType,
        search: str | None = None,
        skip: int = 0,
        *,
        manifest_url: str | None = None,
    ) -> list[CatalogItem]:
        """Return one page of catalog entries in provider order."""

        base_url = self._normalize_base_url(manifest_url) or self._default_base_url
        if not base_url:
            raise SourceUnavailableError(
                f"No catalog add-on configured for catalog {catalog_id}"
            )

        url = self.build_url(
            base_url, catalog_id, media_type, search=search, skip=skip
        )
        response: httpx.Response | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                response = await self._client.get(url)
                response.raise_for_status()
                break
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status >= 500 and attempt < self._max_attempts:
                    await asyncio.sleep(0.5 * attempt)
                    continue
                raise SourceUnavailableError(
                    f"Catalog {catalog_id} request failed with status {status}"
                ) from exc
            except httpx.HTTPError as exc:
                if attempt < self._max_attempts:
                    logger.info(
                        "Transient error fetching catalog %s (%s), retrying",
                        catalog_id,
                        exc.__class__.__name__,
                    )
                    await asyncio.sleep(0.5 * attempt)
                    continue
                raise SourceUnavailableError(
                    f"Catalog {catalog_id} could not be fetched: {exc}"
                ) from exc

        if response is None:
            raise SourceUnavailableError(f"Catalog {catalog_id} could not be fetched")

        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceUnavailableError(
                f"Catalog {catalog_id} returned an invalid payload"
            ) from exc

        metas = payload.get("metas") if isinstance(payload, dict) else None
        if not isinstance(metas, list):
            return []
        return self._parse_metas(metas, media_type)

    @staticmethod
    def _parse_metas(metas: list[Any], media_type: MediaType) -> list[CatalogItem]:
        # Entries without identifiers are kept so page lengths stay intact for
        # skip arithmetic; reconciliation never selects them.
        return [
            CatalogItem.from_meta(meta if isinstance(meta, dict) else {}, media_type=media_type)
            for meta in metas
        ]

    @staticmethod
    def _normalize_base_url(value: str | None) -> str | None:
        if not value:
            return None
        normalized = value.strip()
        if not normalized:
            return None
        parts = urlsplit(normalized)
        path = parts.path.rstrip("/")
        lowered = path.lower()
        for suffix in ("/manifest.json", "/manifest"):
            if lowered.endswith(suffix):
                path = path[: -len(suffix)].rstrip("/")
                break
        normalized = urlunsplit((parts.scheme, parts.netloc, path, "", ""))
        return normalized or None
