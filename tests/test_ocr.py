from datetime import datetime, timezone

import httpx
import pytest
import respx
from sqlalchemy import select

from dispodeals.db.tables import source_documents
from dispodeals.errors import ExtractionFailed, ExtractionUnavailable
from dispodeals.ingest.ocr import TextExtractor
from dispodeals.ingest.providers import GEMINI_ENDPOINT, OPENAI_ENDPOINT, GeminiClient, OpenAIClient

GEMINI_URL = GEMINI_ENDPOINT.format(model="gemini-2.5-flash")


def gemini_reply(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def openai_reply(text):
    return {"choices": [{"message": {"content": text}}]}


def providers(client):
    return [
        GeminiClient("gemini-key", session=client),
        OpenAIClient("openai-key", session=client),
    ]


@pytest.mark.asyncio
async def test_falls_back_to_second_provider(engine, storage):
    async with respx.mock(assert_all_called=True) as router:
        router.post(GEMINI_URL).mock(return_value=httpx.Response(429, json={"error": "quota"}))
        openai_route = router.post(OPENAI_ENDPOINT).mock(
            return_value=httpx.Response(200, json=openai_reply("  2/$35 STIIIZY carts  "))
        )
        async with httpx.AsyncClient() as client:
            extractor = TextExtractor(providers(client), engine, storage)
            result = await extractor.extract(b"png-bytes", "image/png")

    assert result.text == "2/$35 STIIIZY carts"
    assert result.confidence == 0.9
    assert not result.cached
    body = openai_route.calls.last.request.content.decode()
    assert "data:image/png;base64," in body


@pytest.mark.asyncio
async def test_all_providers_failing_raises(engine, storage):
    async with respx.mock() as router:
        router.post(GEMINI_URL).mock(return_value=httpx.Response(500))
        router.post(OPENAI_ENDPOINT).mock(return_value=httpx.Response(200, json={"choices": []}))
        async with httpx.AsyncClient() as client:
            extractor = TextExtractor(providers(client), engine, storage)
            with pytest.raises(ExtractionFailed):
                await extractor.extract(b"png-bytes", "image/png")


@pytest.mark.asyncio
async def test_no_provider_configured(engine, storage):
    extractor = TextExtractor([], engine, storage)
    with pytest.raises(ExtractionUnavailable):
        await extractor.extract(b"png-bytes", "image/png")


@pytest.mark.asyncio
async def test_stored_flyer_text_is_cached(engine, storage, today):
    path = "Greenhouse/flyer.png"
    await storage.put(path, b"png-bytes", "image/png")
    with engine.begin() as conn:
        conn.execute(
            source_documents.insert().values(
                dispensary_name="Greenhouse",
                date=today,
                file_path=path,
                source_url="https://greenhouse.example/flyer.png",
                hash="abc",
                mime_type="image/png",
                deals_extracted=0,
                created_at=datetime.now(timezone.utc),
            )
        )

    async with respx.mock() as router:
        route = router.post(GEMINI_URL).mock(return_value=httpx.Response(200, json=gemini_reply("Eighths $20")))
        async with httpx.AsyncClient() as client:
            extractor = TextExtractor(providers(client), engine, storage)
            first = await extractor.extract_stored(path)
            second = await extractor.extract_stored(path)

    assert route.call_count == 1
    assert first.text == second.text == "Eighths $20"
    assert not first.cached
    assert second.cached
    with engine.connect() as conn:
        row = conn.execute(select(source_documents.c.ocr_text, source_documents.c.ocr_text_hash)).one()
    assert row.ocr_text == "Eighths $20"
    assert len(row.ocr_text_hash) == 64
