"""Download flyers and register them as source documents."""

from __future__ import annotations

import hashlib
import logging
from datetime import date
from urllib.parse import urlparse

import httpx
from sqlalchemy import and_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from dispodeals.config import DEFAULT_TZ
from dispodeals.db.session import run_sync
from dispodeals.db.tables import source_documents
from dispodeals.errors import DownloadError, PersistenceError, StorageError
from dispodeals.ingest.models import FetchResult
from dispodeals.ingest.storage import BlobStorage
from dispodeals.utils.dates import format_date, today_in_tz, utcnow
from dispodeals.utils.retry import retry_async

logger = logging.getLogger(__name__)

MIME_TYPES = {
    "pdf": "application/pdf",
    "jpg": "image/jpeg",
    "webp": "image/webp",
    "png": "image/png",
}

SUFFIXES = {
    ".pdf": "pdf",
    ".jpg": "jpg",
    ".jpeg": "jpg",
    ".webp": "webp",
    ".png": "png",
}

CONTENT_TYPES = {
    "application/pdf": "pdf",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/png": "png",
}


def classify_file_type(url: str, content_type: str | None = None) -> tuple[str, str]:
    """Return (extension, mime type), trusting the URL suffix before the header."""
    path = urlparse(url).path.lower()
    for suffix, ext in SUFFIXES.items():
        if path.endswith(suffix):
            return ext, MIME_TYPES[ext]
    if content_type:
        ext = CONTENT_TYPES.get(content_type.split(";")[0].strip().lower())
        if ext:
            return ext, MIME_TYPES[ext]
    return "png", MIME_TYPES["png"]


def fingerprint(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def storage_path(dispensary_name: str, as_of: date, digest: str, ext: str) -> str:
    return f"{dispensary_name}/{format_date(as_of)}/{digest}.{ext}"


class ContentFetcher:
    def __init__(
        self,
        engine: Engine,
        storage: BlobStorage,
        client: httpx.AsyncClient,
        *,
        tz_name: str = DEFAULT_TZ,
        website_timeout: float = 10.0,
    ) -> None:
        self.engine = engine
        self.storage = storage
        self._client = client
        self._tz_name = tz_name
        self._website_timeout = website_timeout

    async def download(self, url: str, *, timeout: float | None = None) -> httpx.Response:
        kwargs = {"follow_redirects": True}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await retry_async(self._client.get)(url, **kwargs)
        except httpx.HTTPError as exc:
            raise DownloadError(f"Failed to download {url}: {exc}") from exc
        if not response.is_success:
            raise DownloadError(f"Failed to download {url}: HTTP {response.status_code}")
        return response

    async def fetch_html(self, url: str) -> str:
        response = await self.download(url, timeout=self._website_timeout)
        return response.text

    async def fetch(self, dispensary_name: str, source_url: str, *, as_of: date | None = None) -> FetchResult:
        as_of = as_of or today_in_tz(self._tz_name)
        response = await self.download(source_url)
        data = response.content
        digest = fingerprint(data)

        existing = await run_sync(self._find_existing, dispensary_name, as_of, digest)
        if existing is not None:
            logger.info("Skipping %s for %s: already fetched today", source_url, dispensary_name)
            return FetchResult(duplicate=True, hash=digest, document_id=existing, reason="duplicate")

        ext, mime_type = classify_file_type(source_url, response.headers.get("content-type"))
        path = storage_path(dispensary_name, as_of, digest, ext)
        await self.storage.put(path, data, mime_type)

        try:
            document_id = await run_sync(
                self._insert_document, dispensary_name, as_of, path, source_url, digest, mime_type
            )
        except IntegrityError:
            # A concurrent fetch of the same bytes inserted first and owns this path.
            logger.info("Concurrent fetch already registered %s for %s", digest, dispensary_name)
            return FetchResult(duplicate=True, hash=digest, reason="duplicate")
        except SQLAlchemyError as exc:
            await self._discard_blob(path)
            raise PersistenceError(f"Failed to record flyer {path}: {exc}") from exc

        logger.info("Stored %s (%s bytes) for %s", path, len(data), dispensary_name)
        return FetchResult(
            duplicate=False,
            file_path=path,
            hash=digest,
            mime_type=mime_type,
            source_url=source_url,
            document_id=document_id,
        )

    async def _discard_blob(self, path: str) -> None:
        try:
            await self.storage.delete(path)
        except StorageError as exc:
            logger.error("Could not remove orphaned blob %s: %s", path, exc)

    def _find_existing(self, dispensary_name: str, as_of: date, digest: str) -> int | None:
        query = select(source_documents.c.id).where(
            and_(
                source_documents.c.dispensary_name == dispensary_name,
                source_documents.c.date == as_of,
                source_documents.c.hash == digest,
            )
        )
        try:
            with self.engine.connect() as conn:
                return conn.execute(query).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Duplicate lookup failed: {exc}") from exc

    def _insert_document(
        self,
        dispensary_name: str,
        as_of: date,
        path: str,
        source_url: str,
        digest: str,
        mime_type: str,
    ) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                source_documents.insert().values(
                    dispensary_name=dispensary_name,
                    date=as_of,
                    file_path=path,
                    source_url=source_url,
                    hash=digest,
                    mime_type=mime_type,
                    deals_extracted=0,
                    created_at=utcnow(),
                )
            )
            return int(result.inserted_primary_key[0])
