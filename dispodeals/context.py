"""Process-wide collaborators, built once at startup and passed explicitly."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from sqlalchemy.engine import Engine

from dispodeals.config import Settings
from dispodeals.db.session import create_engine_from_settings
from dispodeals.ingest.fetcher import ContentFetcher
from dispodeals.ingest.ocr import TextExtractor
from dispodeals.ingest.parser import DealParser
from dispodeals.ingest.providers import build_providers
from dispodeals.ingest.storage import BlobStorage, build_storage
from dispodeals.logic.brands import BrandResolver
from dispodeals.logic.catalog import CatalogWriter
from dispodeals.logic.quality import QualityGate
from dispodeals.logic.ranking import RankingService
from dispodeals.utils.rate_limit import RateCounter, RequestThrottle, build_counter

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; DispoDealsBot/1.0)"


@dataclass(slots=True)
class AppContext:
    settings: Settings
    engine: Engine
    storage: BlobStorage
    http: httpx.AsyncClient
    fetcher: ContentFetcher
    extractor: TextExtractor
    parser: DealParser
    gate: QualityGate
    brands: BrandResolver
    catalog: CatalogWriter
    ranking: RankingService
    throttle: RequestThrottle

    async def aclose(self) -> None:
        await self.http.aclose()
        self.engine.dispose()


def build_context(
    settings: Settings,
    *,
    engine: Engine | None = None,
    storage: BlobStorage | None = None,
    http: httpx.AsyncClient | None = None,
    counter: RateCounter | None = None,
) -> AppContext:
    engine = engine or create_engine_from_settings(settings)
    storage = storage or build_storage(settings)
    http = http or httpx.AsyncClient(timeout=settings.http_timeout, headers={"User-Agent": USER_AGENT})
    ocr_providers, text_providers, html_providers = build_providers(settings, http)
    return AppContext(
        settings=settings,
        engine=engine,
        storage=storage,
        http=http,
        fetcher=ContentFetcher(
            engine,
            storage,
            http,
            tz_name=settings.timezone,
            website_timeout=settings.website_timeout,
        ),
        extractor=TextExtractor(ocr_providers, engine, storage),
        parser=DealParser(text_providers, html_providers),
        gate=QualityGate(
            review_threshold=settings.review_threshold,
            confidence_threshold=settings.confidence_threshold,
        ),
        brands=BrandResolver(engine),
        catalog=CatalogWriter(engine),
        ranking=RankingService(engine),
        throttle=RequestThrottle(
            counter or build_counter(settings.redis_url),
            trusted_secrets=settings.trusted_secrets,
        ),
    )
