"""Stage operations and the daily batch over all dispensaries."""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from dispodeals.context import AppContext
from dispodeals.db.session import run_sync
from dispodeals.db.tables import dispensaries as dispensaries_table
from dispodeals.db.tables import source_documents
from dispodeals.errors import (
    DownloadError,
    ExtractionFailed,
    ExtractionUnavailable,
    PersistenceError,
    StorageError,
    ValidationError,
)
from dispodeals.ingest import load_dispensaries
from dispodeals.ingest.models import (
    BatchSummary,
    CandidateDeal,
    DealContext,
    Dispensary,
    FetchResult,
    OcrResult,
    ParseOutcome,
)
from dispodeals.logic.catalog import PreparedDeal
from dispodeals.logic.quality import deal_fingerprint
from dispodeals.utils.dates import today_in_tz, utcnow

logger = logging.getLogger(__name__)

SUMMARY_CATEGORY = "flower"
SUMMARY_PRICE = "See flyer for details"
MIN_HTML_LENGTH = 100
WEBSITE_PAGES = ("deals", "specials", "menu")

SUCCESS_STEP = 0.1
FAILURE_STEP = 0.2
ACTIVE_THRESHOLD = 0.3


def flyer_summary_title(dispensary_name: str) -> str:
    return f"{dispensary_name} - Deal Flyer Available"


def multiple_summary_title(dispensary_name: str) -> str:
    return f"{dispensary_name} - Multiple Deals Available"


def website_pages(website: str) -> list[str]:
    base = website.rstrip("/")
    return [f"{base}/{page}" for page in WEBSITE_PAGES] + [website]


def next_success_rate(rate: float, success: bool) -> float:
    if success:
        return round(min(1.0, rate + SUCCESS_STEP), 4)
    return round(max(0.0, rate - FAILURE_STEP), 4)


class IngestPipeline:
    def __init__(self, ctx: AppContext) -> None:
        self.ctx = ctx

    def today(self) -> date:
        return today_in_tz(self.ctx.settings.timezone)

    async def fetch(self, dispensary_name: str, source_url: str) -> FetchResult:
        return await self.ctx.fetcher.fetch(dispensary_name, source_url, as_of=self.today())

    async def ocr(
        self,
        *,
        file_path: str | None = None,
        data: bytes | None = None,
        mime_type: str | None = None,
    ) -> OcrResult:
        if file_path:
            return await self.ctx.extractor.extract_stored(file_path, mime_type)
        if data is None or not mime_type:
            raise ValidationError("Provide file_path, or raw data with mime_type")
        return await self.ctx.extractor.extract(data, mime_type)

    async def parse_text(
        self,
        ocr_text: str,
        dispensary_name: str,
        *,
        city: str | None = None,
        source_url: str | None = None,
    ) -> ParseOutcome:
        as_of = self.today()
        document = await run_sync(self._latest_document, dispensary_name, as_of, source_url)
        if source_url is None:
            if document is None:
                raise ValidationError(
                    f"No source_url given and no flyer fetched today for {dispensary_name}"
                )
            source_url = document["source_url"]
        ctx = DealContext(
            dispensary_name=dispensary_name,
            date=as_of,
            source_url=source_url,
            city=city,
            document_id=document["id"] if document is not None else None,
        )
        try:
            candidates = await self.ctx.parser.parse_text(ocr_text, dispensary_name, city)
        except (ExtractionFailed, ExtractionUnavailable) as exc:
            logger.warning("AI parsing failed for %s, writing summary deal: %s", dispensary_name, exc)
            return await self._write_summary(ctx)
        return await self._store_candidates(candidates, ctx)

    async def parse_html(
        self,
        html: str,
        dispensary_name: str,
        source_url: str,
        *,
        city: str | None = None,
    ) -> ParseOutcome:
        ctx = DealContext(dispensary_name=dispensary_name, date=self.today(), source_url=source_url, city=city)
        try:
            candidates = await self.ctx.parser.parse_html(html, dispensary_name, city)
        except (ExtractionFailed, ExtractionUnavailable) as exc:
            logger.warning("Website extraction failed for %s, writing summary deal: %s", dispensary_name, exc)
            return await self._write_summary(ctx)
        return await self._store_candidates(candidates, ctx)

    async def website_deals(self, dispensary_name: str, website_url: str, *, city: str | None = None) -> ParseOutcome:
        html = await self.ctx.fetcher.fetch_html(website_url)
        if len(html) < MIN_HTML_LENGTH:
            raise ValidationError("Website content too short or empty")
        return await self.parse_html(html, dispensary_name, website_url, city=city)

    async def _store_candidates(self, candidates: Sequence[CandidateDeal], ctx: DealContext) -> ParseOutcome:
        try:
            return await run_sync(self._store_candidates_sync, list(candidates), ctx)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to store deals for {ctx.dispensary_name}: {exc}") from exc

    def _store_candidates_sync(self, candidates: list[CandidateDeal], ctx: DealContext) -> ParseOutcome:
        outcome = ParseOutcome()
        with self.ctx.engine.connect() as conn:
            decisions = self.ctx.gate.evaluate_all(
                conn, candidates, dispensary_name=ctx.dispensary_name, as_of=ctx.date
            )

        prepared: list[PreparedDeal] = []
        low_confidence: list[CandidateDeal] = []
        for candidate, decision in decisions:
            if decision.action == "summarize":
                low_confidence.append(candidate)
                continue
            if decision.action == "reject":
                outcome.rejected_duplicates += 1
                continue
            match = self.ctx.brands.resolve(
                candidate.title, brand=candidate.brand, product_name=candidate.product_name
            )
            prepared.append(
                PreparedDeal(
                    dispensary_name=ctx.dispensary_name,
                    date=ctx.date,
                    category=candidate.category,
                    title=candidate.title,
                    price_text=candidate.price_text,
                    confidence=candidate.confidence,
                    deal_hash=decision.fingerprint,
                    source_url=ctx.source_url,
                    city=ctx.city,
                    product_name=match.product_name,
                    brand_id=match.brand_id,
                    brand_name=match.brand_name,
                    review_reason=decision.review_reason if decision.action == "review" else None,
                )
            )

        if low_confidence:
            logger.info(
                "Aggregating %s low-confidence deals for %s into one summary",
                len(low_confidence),
                ctx.dispensary_name,
            )
            prepared.append(
                summary_deal(
                    ctx,
                    multiple_summary_title(ctx.dispensary_name),
                    confidence=max(c.confidence for c in low_confidence),
                )
            )
            outcome.low_confidence_handled = len(low_confidence)

        result = self.ctx.catalog.write(prepared, document_id=ctx.document_id)
        outcome.deals = result.inserted
        outcome.deals_inserted = len(result.inserted)
        outcome.flagged_for_review = sum(1 for deal in result.inserted if deal["needs_review"])
        return outcome

    async def _write_summary(self, ctx: DealContext) -> ParseOutcome:
        deal = summary_deal(ctx, flyer_summary_title(ctx.dispensary_name), confidence=0.0)
        result = await run_sync(self.ctx.catalog.write, [deal], document_id=ctx.document_id)
        return ParseOutcome(deals_inserted=len(result.inserted), deals=result.inserted, ai_failed=True)

    def _latest_document(self, dispensary_name: str, as_of: date, source_url: str | None = None):
        query = (
            select(source_documents.c.id, source_documents.c.source_url)
            .where(source_documents.c.dispensary_name == dispensary_name)
            .where(source_documents.c.date == as_of)
            .order_by(source_documents.c.created_at.desc(), source_documents.c.id.desc())
            .limit(1)
        )
        if source_url is not None:
            query = query.where(source_documents.c.source_url == source_url)
        try:
            with self.ctx.engine.connect() as conn:
                return conn.execute(query).mappings().first()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to look up flyers for {dispensary_name}: {exc}") from exc

    async def ingest_flyer(self, dispensary: Dispensary) -> tuple[int, bool]:
        """Returns (deals inserted, whether the flyer was already ingested today)."""
        fetched = await self.fetch(dispensary.name, dispensary.flyer_url)
        if fetched.duplicate:
            return 0, True
        text = await self.ctx.extractor.extract_stored(fetched.file_path, fetched.mime_type)
        outcome = await self.parse_text(
            text.text, dispensary.name, city=dispensary.city, source_url=fetched.source_url
        )
        return outcome.deals_inserted, False

    async def ingest_website(self, dispensary: Dispensary) -> int:
        ctx: DealContext | None = None
        pages_fetched = 0
        extraction_failures = 0
        for url in website_pages(dispensary.website):
            try:
                html = await self.ctx.fetcher.fetch_html(url)
            except DownloadError as exc:
                logger.info("Skipping %s: %s", url, exc)
                continue
            if len(html) < MIN_HTML_LENGTH:
                continue
            pages_fetched += 1
            if ctx is None:
                ctx = DealContext(
                    dispensary_name=dispensary.name,
                    date=self.today(),
                    source_url=url,
                    city=dispensary.city,
                )
            try:
                candidates = await self.ctx.parser.parse_html(html, dispensary.name, dispensary.city)
            except (ExtractionFailed, ExtractionUnavailable) as exc:
                logger.warning("Website extraction failed on %s: %s", url, exc)
                extraction_failures += 1
                continue
            page_ctx = DealContext(
                dispensary_name=dispensary.name, date=ctx.date, source_url=url, city=dispensary.city
            )
            outcome = await self._store_candidates(candidates, page_ctx)
            if outcome.deals_inserted > 0:
                return outcome.deals_inserted
        if ctx is not None and extraction_failures == pages_fetched:
            return (await self._write_summary(ctx)).deals_inserted
        return 0

    async def process_dispensary(self, dispensary: Dispensary) -> tuple[str, int]:
        """Run both source paths for one dispensary.

        Returns the status (processed, skipped or failed) and the number of
        deals inserted. Storage and persistence errors propagate unless flyer
        deals were already stored.
        """
        if not dispensary.flyer_url and not dispensary.website:
            logger.info("Skipping %s: no flyer URL or website", dispensary.name)
            return "skipped", 0
        inserted = 0
        flyer_duplicate = False
        if dispensary.flyer_url:
            try:
                count, flyer_duplicate = await self.ingest_flyer(dispensary)
                inserted += count
            except (DownloadError, ExtractionFailed) as exc:
                logger.warning("Flyer ingestion failed for %s: %s", dispensary.name, exc)
        if dispensary.website:
            try:
                inserted += await self.ingest_website(dispensary)
            except (PersistenceError, StorageError):
                if not inserted:
                    raise
                logger.exception("Website ingestion failed for %s after flyer deals were stored", dispensary.name)
        if inserted > 0:
            return "processed", inserted
        if flyer_duplicate:
            return "skipped", 0
        return "failed", 0

    async def run_batch(self, dispensaries: Sequence[Dispensary] | None = None) -> BatchSummary:
        if dispensaries is None:
            dispensaries = await self.load_batch()
        ordered = sorted(
            dispensaries,
            key=lambda d: (0 if d.flyer_url else 1, -d.ingestion_success_rate),
        )
        summary = BatchSummary()
        semaphore = asyncio.Semaphore(self.ctx.settings.ingest_concurrency)

        async def run_one(dispensary: Dispensary) -> None:
            async with semaphore:
                try:
                    status, inserted = await self.process_dispensary(dispensary)
                except Exception:
                    logger.exception("Failed to process dispensary %s", dispensary.name)
                    status, inserted = "failed", 0
                if status != "skipped":
                    await self._record_stats(dispensary, status == "processed")
            summary.deals_inserted += inserted
            if status == "processed":
                summary.processed += 1
            elif status == "skipped":
                summary.skipped += 1
            else:
                summary.failed += 1

        await asyncio.gather(*(run_one(d) for d in ordered))
        logger.info(
            "Batch complete: %s processed, %s skipped, %s failed, %s deals",
            summary.processed,
            summary.skipped,
            summary.failed,
            summary.deals_inserted,
        )
        return summary

    async def load_batch(self) -> list[Dispensary]:
        """Active dispensaries from the database; the YAML roster only when the table is empty."""
        rows = await run_sync(self._active_dispensaries)
        if rows is not None:
            return rows
        logger.info("No dispensaries in the database, using %s", self.ctx.settings.dispensaries_path)
        return load_dispensaries(self.ctx.settings.dispensaries_path)

    def _active_dispensaries(self) -> list[Dispensary] | None:
        query = select(dispensaries_table).where(dispensaries_table.c.active.is_(True))
        try:
            with self.ctx.engine.connect() as conn:
                total = conn.execute(select(func.count()).select_from(dispensaries_table)).scalar_one()
                if total == 0:
                    return None
                rows = conn.execute(query).mappings().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load dispensaries: {exc}") from exc
        return [
            Dispensary(
                name=row["name"],
                city=row["city"],
                flyer_url=row["flyer_url"],
                website=row["website"],
                active=row["active"],
                ingestion_success_rate=row["ingestion_success_rate"],
            )
            for row in rows
        ]

    async def _record_stats(self, dispensary: Dispensary, success: bool) -> None:
        try:
            await run_sync(self._record_stats_sync, dispensary, success)
        except SQLAlchemyError as exc:
            logger.warning("Could not update stats for %s: %s", dispensary.name, exc)

    def _record_stats_sync(self, dispensary: Dispensary, success: bool) -> None:
        with self.ctx.engine.begin() as conn:
            row = conn.execute(
                select(dispensaries_table.c.id, dispensaries_table.c.ingestion_success_rate).where(
                    dispensaries_table.c.name == dispensary.name
                )
            ).first()
            if row is None:
                rate = next_success_rate(dispensary.ingestion_success_rate, success)
                conn.execute(
                    dispensaries_table.insert().values(
                        name=dispensary.name,
                        city=dispensary.city,
                        flyer_url=dispensary.flyer_url,
                        website=dispensary.website,
                        active=rate >= ACTIVE_THRESHOLD,
                        last_ingested_at=utcnow(),
                        ingestion_success_rate=rate,
                    )
                )
                return
            rate = next_success_rate(row.ingestion_success_rate, success)
            conn.execute(
                update(dispensaries_table)
                .where(dispensaries_table.c.id == row.id)
                .values(
                    ingestion_success_rate=rate,
                    active=rate >= ACTIVE_THRESHOLD,
                    last_ingested_at=utcnow(),
                )
            )


def summary_deal(ctx: DealContext, title: str, *, confidence: float) -> PreparedDeal:
    return PreparedDeal(
        dispensary_name=ctx.dispensary_name,
        date=ctx.date,
        category=SUMMARY_CATEGORY,
        title=title,
        price_text=SUMMARY_PRICE,
        confidence=confidence,
        deal_hash=deal_fingerprint(ctx.dispensary_name, ctx.date, SUMMARY_CATEGORY, title, SUMMARY_PRICE),
        source_url=ctx.source_url,
        city=ctx.city,
    )
