"""Raw feed retrieval from supplier URLs and stored uploads."""

from __future__ import annotations

import asyncio
import logging
import os

import httpx

from feedhub.ingest.errors import FetchError
from feedhub.ingest.formats import content_type_for_path
from feedhub.ingest.models import SOURCE_UPLOAD, FetchResult, Supplier
from feedhub.utils.blob import BlobStore, BlobStoreError
from feedhub.utils.retry import retry_async

logger = logging.getLogger(__name__)

USER_AGENT = os.environ.get("FEED_USER_AGENT", "Mozilla/5.0 (compatible; SupplierFeedHub/1.0)")
FETCH_TIMEOUT = float(os.environ.get("FEED_FETCH_TIMEOUT", "30"))
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def decode_body(data: bytes) -> str:
    return data.decode("utf-8-sig", errors="replace")


class FeedFetcher:
    def __init__(
        self,
        blob_store: BlobStore | None = None,
        *,
        session: httpx.AsyncClient | None = None,
        timeout: float = FETCH_TIMEOUT,
        retries: int = 3,
    ) -> None:
        self.blob_store = blob_store
        self._session = session or httpx.AsyncClient(
            timeout=timeout, headers={"User-Agent": USER_AGENT}, follow_redirects=True
        )
        self._retries = retries

    async def close(self) -> None:
        await self._session.aclose()

    async def fetch(self, supplier: Supplier) -> FetchResult:
        if supplier.source_type == SOURCE_UPLOAD:
            return await self._fetch_upload(supplier)
        return await self._fetch_url(supplier)

    async def _fetch_url(self, supplier: Supplier) -> FetchResult:
        url = supplier.endpoint_url
        if not url:
            raise FetchError(f"Supplier {supplier.id} has no endpoint URL")
        auth = None
        if supplier.auth_username and supplier.auth_password:
            auth = (supplier.auth_username, supplier.auth_password)
        logger.info("Fetching feed for supplier %s from %s", supplier.id, url)
        get = retry_async(self._session.get, attempts=self._retries)
        try:
            response = await get(url, headers={"User-Agent": USER_AGENT}, auth=auth)
        except httpx.HTTPError as exc:
            raise FetchError(f"Failed to fetch {url}: {exc}") from exc
        if not response.is_success:
            raise FetchError(
                f"Failed to fetch {url}: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                status_text=response.reason_phrase,
            )
        content_type = response.headers.get("content-type", DEFAULT_CONTENT_TYPE)
        return FetchResult(content=decode_body(response.content), content_type=content_type, source=url)

    async def _fetch_upload(self, supplier: Supplier) -> FetchResult:
        path = supplier.source_path
        if not path:
            raise FetchError(f"Supplier {supplier.id} has no uploaded file")
        if self.blob_store is None:
            raise FetchError("No blob store configured for uploaded feeds")
        logger.info("Reading uploaded feed for supplier %s from %s", supplier.id, path)
        try:
            blob = await asyncio.get_running_loop().run_in_executor(None, self.blob_store.download, path)
        except BlobStoreError as exc:
            raise FetchError(f"Failed to download {path}: {exc}") from exc
        content_type = content_type_for_path(path) or blob.content_type or DEFAULT_CONTENT_TYPE
        return FetchResult(content=decode_body(blob.data), content_type=content_type, source=path)
