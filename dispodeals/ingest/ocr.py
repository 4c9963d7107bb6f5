"""Text extraction from flyer images and PDFs."""

from __future__ import annotations

import hashlib
import logging
from typing import Sequence

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from dispodeals.db.session import run_sync
from dispodeals.db.tables import source_documents
from dispodeals.errors import ExtractionFailed, ExtractionUnavailable, PersistenceError
from dispodeals.ingest.models import OcrResult
from dispodeals.ingest.providers import ProviderError, VisionProvider
from dispodeals.ingest.storage import BlobStorage
from dispodeals.utils.dates import utcnow

logger = logging.getLogger(__name__)

# Providers do not report a confidence of their own.
PROVIDER_CONFIDENCE = 0.9


class TextExtractor:
    def __init__(self, providers: Sequence[VisionProvider], engine: Engine, storage: BlobStorage) -> None:
        self.providers = list(providers)
        self.engine = engine
        self.storage = storage

    async def extract(self, data: bytes, mime_type: str) -> OcrResult:
        if not self.providers:
            raise ExtractionUnavailable(
                "No OCR provider configured: set GEMINI_API_KEY or OPENAI_API_KEY"
            )
        errors: list[str] = []
        for provider in self.providers:
            try:
                text = await provider.extract_text(data, mime_type)
            except ProviderError as exc:
                logger.warning("OCR with %s failed: %s", provider.name, exc)
                errors.append(f"{provider.name}: {exc}")
                continue
            logger.info("OCR with %s returned %s chars", provider.name, len(text))
            return OcrResult(text=text, confidence=PROVIDER_CONFIDENCE)
        raise ExtractionFailed("All OCR providers failed: " + "; ".join(errors))

    async def extract_stored(self, file_path: str, mime_type: str | None = None) -> OcrResult:
        """OCR a stored flyer, reusing the cached text on its source document."""
        row = await run_sync(self._load_document, file_path)
        if row is not None and row["ocr_text"]:
            logger.info("Using cached OCR text for %s", file_path)
            return OcrResult(text=row["ocr_text"], confidence=PROVIDER_CONFIDENCE, cached=True)

        mime_type = mime_type or (row["mime_type"] if row is not None else None) or "image/png"
        data = await self.storage.get(file_path)
        result = await self.extract(data, mime_type)
        if row is not None:
            try:
                await run_sync(self._store_cache, row["id"], result.text)
            except SQLAlchemyError as exc:
                logger.warning("Could not cache OCR text for %s: %s", file_path, exc)
        return result

    def _load_document(self, file_path: str):
        query = (
            select(
                source_documents.c.id,
                source_documents.c.mime_type,
                source_documents.c.ocr_text,
            )
            .where(source_documents.c.file_path == file_path)
            .order_by(source_documents.c.id.desc())
            .limit(1)
        )
        try:
            with self.engine.connect() as conn:
                return conn.execute(query).mappings().first()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load source document {file_path}: {exc}") from exc

    def _store_cache(self, document_id: int, text: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(source_documents)
                .where(source_documents.c.id == document_id)
                .values(
                    ocr_text=text,
                    ocr_text_hash=hashlib.sha256(text.encode("utf-8")).hexdigest(),
                    ocr_processed_at=utcnow(),
                )
            )
