"""FastAPI application for ingestion, ranking and brand listing."""

from __future__ import annotations

import base64
import binascii
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, HttpUrl
from sqlalchemy.exc import SQLAlchemyError

from dispodeals.config import Settings, configure_logging
from dispodeals.context import AppContext, build_context
from dispodeals.db.session import run_sync
from dispodeals.errors import DealsError, PersistenceError, RateLimitExceeded, ValidationError
from dispodeals.ingest.pipeline import IngestPipeline
from dispodeals.logic.reviews import ReviewAction, pending_reviews, resolve_review
from dispodeals.logic.subscribers import save_preferences
from dispodeals.utils.dates import parse_iso_date, today_in_tz

logger = logging.getLogger(__name__)


class FetchRequest(BaseModel):
    dispensary_name: str = Field(min_length=1)
    source_url: HttpUrl


class OcrRequest(BaseModel):
    file_path: str | None = None
    data_base64: str | None = None
    mime_type: str | None = None


class ParseRequest(BaseModel):
    ocr_text: str = Field(min_length=1)
    dispensary_name: str = Field(min_length=1)
    city: str | None = None
    source_url: HttpUrl | None = None


class WebsiteDealsRequest(BaseModel):
    dispensary_name: str = Field(min_length=1)
    website_url: HttpUrl
    city: str | None = None


class PreferencesRequest(BaseModel):
    email: EmailStr
    categories: list[str]
    brands: list[str] = Field(default_factory=list)
    zip: str | None = None
    radius: int | None = Field(default=None, ge=0)


class ReviewRequest(BaseModel):
    action: ReviewAction
    notes: str | None = None
    reviewed_by: EmailStr | None = None


def create_app(context: AppContext | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if context is not None:
            app.state.ctx = context
            yield
            return
        settings = Settings.from_env()
        configure_logging(settings.log_level)
        app.state.ctx = build_context(settings)
        try:
            yield
        finally:
            await app.state.ctx.aclose()

    app = FastAPI(title="Dispensary Deals API", lifespan=lifespan)
    app.add_exception_handler(DealsError, deals_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    _register_routes(app)
    return app


async def deals_error_handler(request: Request, exc: DealsError) -> JSONResponse:
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitExceeded):
        headers = {
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
        }
    elif exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code, headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        {"error": "Invalid input", "details": jsonable_encoder(exc.errors())},
        status_code=400,
    )


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


def get_pipeline(ctx: AppContext = Depends(get_context)) -> IngestPipeline:
    return IngestPipeline(ctx)


def throttled(profile: str):
    async def dependency(request: Request, response: Response, ctx: AppContext = Depends(get_context)) -> None:
        client_host = request.client.host if request.client else None
        decision = await ctx.throttle.check(profile, request.headers, client_host)
        if decision is not None:
            response.headers["X-RateLimit-Limit"] = str(decision.limit)
            response.headers["X-RateLimit-Remaining"] = str(decision.remaining)

    return Depends(dependency)


def _bearer(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):]


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/cron/ingest-daily", dependencies=[throttled("strict")])
    async def ingest_daily(
        authorization: str | None = Header(default=None),
        ctx: AppContext = Depends(get_context),
        pipeline: IngestPipeline = Depends(get_pipeline),
    ) -> dict[str, int]:
        token = _bearer(authorization)
        if not ctx.settings.ingestion_secret or token != ctx.settings.ingestion_secret:
            raise HTTPException(status_code=401, detail="Unauthorized")
        summary = await pipeline.run_batch()
        return summary.as_dict()

    @app.post("/ingest/fetch", dependencies=[throttled("strict")])
    async def ingest_fetch(payload: FetchRequest, pipeline: IngestPipeline = Depends(get_pipeline)) -> dict[str, Any]:
        result = await pipeline.fetch(payload.dispensary_name, str(payload.source_url))
        if result.duplicate:
            return {"skipped": True, "reason": result.reason}
        return {"file_path": result.file_path, "hash": result.hash, "uploaded": True}

    @app.post("/ingest/ocr", dependencies=[throttled("strict")])
    async def ingest_ocr(payload: OcrRequest, pipeline: IngestPipeline = Depends(get_pipeline)) -> dict[str, Any]:
        data = None
        if not payload.file_path:
            if not payload.data_base64 or not payload.mime_type:
                raise ValidationError("Provide file_path, or data_base64 with mime_type")
            try:
                data = base64.b64decode(payload.data_base64, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ValidationError("data_base64 is not valid base64") from exc
        result = await pipeline.ocr(file_path=payload.file_path, data=data, mime_type=payload.mime_type)
        return {"text": result.text, "confidence": result.confidence, "cached": result.cached}

    @app.post("/ingest/parse", dependencies=[throttled("strict")])
    async def ingest_parse(payload: ParseRequest, pipeline: IngestPipeline = Depends(get_pipeline)) -> dict[str, Any]:
        outcome = await pipeline.parse_text(
            payload.ocr_text,
            payload.dispensary_name,
            city=payload.city,
            source_url=str(payload.source_url) if payload.source_url else None,
        )
        return outcome.as_dict()

    @app.post("/ingest/website-deals", dependencies=[throttled("strict")])
    async def ingest_website_deals(
        payload: WebsiteDealsRequest, pipeline: IngestPipeline = Depends(get_pipeline)
    ) -> dict[str, Any]:
        outcome = await pipeline.website_deals(
            payload.dispensary_name, str(payload.website_url), city=payload.city
        )
        return {**outcome.as_dict(), "source": "website"}

    @app.get("/deals", dependencies=[throttled("moderate")])
    async def ranked_deals(
        email: EmailStr,
        date: str | None = None,
        ctx: AppContext = Depends(get_context),
    ) -> dict[str, Any]:
        if date is None:
            as_of = today_in_tz(ctx.settings.timezone)
        else:
            try:
                as_of = parse_iso_date(date)
            except ValueError as exc:
                raise ValidationError("date must be YYYY-MM-DD") from exc
        try:
            ranked = await run_sync(ctx.ranking.rank, str(email), as_of)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load deals: {exc}") from exc
        return {"deals": ranked}

    @app.get("/brands", dependencies=[throttled("lenient")])
    async def list_brands(ctx: AppContext = Depends(get_context)) -> dict[str, Any]:
        try:
            return {"brands": await run_sync(ctx.brands.list_brands)}
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load brands: {exc}") from exc

    @app.put("/preferences", dependencies=[throttled("moderate")])
    async def update_preferences(payload: PreferencesRequest, ctx: AppContext = Depends(get_context)) -> dict[str, Any]:
        return await run_sync(
            save_preferences,
            ctx.engine,
            str(payload.email),
            payload.categories,
            payload.brands,
            payload.zip,
            payload.radius,
        )

    @app.get("/admin/reviews")
    async def list_reviews(
        authorization: str | None = Header(default=None),
        ctx: AppContext = Depends(get_context),
    ) -> dict[str, Any]:
        _require_trusted(ctx, authorization)
        return {"reviews": await run_sync(pending_reviews, ctx.engine)}

    @app.post("/admin/reviews/{flag_id}")
    async def review_deal(
        flag_id: int,
        payload: ReviewRequest,
        authorization: str | None = Header(default=None),
        ctx: AppContext = Depends(get_context),
    ) -> dict[str, Any]:
        _require_trusted(ctx, authorization)
        reviewed_by = str(payload.reviewed_by) if payload.reviewed_by else None
        result = await run_sync(
            resolve_review,
            ctx.engine,
            flag_id,
            payload.action,
            reviewed_by=reviewed_by,
            notes=payload.notes,
        )
        return {"ok": True, **result}


def _require_trusted(ctx: AppContext, authorization: str | None) -> None:
    if _bearer(authorization) not in ctx.settings.trusted_secrets:
        raise HTTPException(status_code=401, detail="Unauthorized")


app = create_app()
