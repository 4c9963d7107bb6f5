import json

import httpx
import pytest
import respx

from conftest import FakeJsonProvider
from dispodeals.errors import ExtractionFailed, SchemaViolation
from dispodeals.ingest.parser import MAX_HTML_CHARS, DealParser, clean_html, validate_response
from dispodeals.ingest.providers import OPENAI_ENDPOINT, OpenAIClient, ProviderError

GOOD = json.dumps(
    {
        "deals": [
            {"category": "vapes", "title": "STIIIZY 1g carts", "price_text": "2/$35", "confidence": 0.87},
            {"category": "flower", "title": "Eighths", "price_text": "$20", "brand": "  "},
        ]
    }
)


def test_clean_html_strips_scripts_and_truncates():
    html = (
        "<html><script type='text/javascript'>var x = 1;</script>"
        "<style>body {color: red}</style><noscript>enable js</noscript>"
        "<p>2/$35   carts</p>\n\n</html>"
    )
    cleaned = clean_html(html)
    assert "var x" not in cleaned
    assert "color" not in cleaned
    assert "enable js" not in cleaned
    assert "<p>2/$35 carts</p>" in cleaned
    assert len(clean_html("a" * (MAX_HTML_CHARS + 10))) == MAX_HTML_CHARS


def test_validate_response_defaults_and_blank_brand():
    deals = validate_response(GOOD)
    assert [d.category for d in deals] == ["vapes", "flower"]
    assert deals[1].confidence == 1.0
    assert deals[1].brand is None


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        json.dumps({"items": []}),
        json.dumps({"deals": [{"category": "seeds", "title": "x", "price_text": "$1"}]}),
        json.dumps({"deals": [{"category": "flower", "title": "", "price_text": "$1"}]}),
        json.dumps({"deals": [{"category": "flower", "title": "x", "price_text": "$1", "confidence": 1.5}]}),
    ],
)
def test_validate_response_rejects_malformed(raw):
    with pytest.raises(SchemaViolation):
        validate_response(raw)


@pytest.mark.asyncio
async def test_parser_falls_through_to_next_provider():
    broken = FakeJsonProvider("openai", ["{not json"])
    working = FakeJsonProvider("gemini", [GOOD])
    parser = DealParser([broken, working], [])
    deals = await parser.parse_text("2/$35 carts", "Greenhouse", "Walled Lake")
    assert len(deals) == 2
    assert "City: Walled Lake" in working.calls[0]


@pytest.mark.asyncio
async def test_parser_raises_when_every_provider_fails():
    parser = DealParser(
        [FakeJsonProvider("openai", [ProviderError("HTTP 500")])],
        [FakeJsonProvider("gemini", ['{"deals": "nope"}'])],
    )
    with pytest.raises(ExtractionFailed):
        await parser.parse_text("text", "Greenhouse")
    with pytest.raises(ExtractionFailed):
        await parser.parse_html("<p>deals</p>", "Greenhouse")


@pytest.mark.asyncio
async def test_openai_client_requests_json_mode():
    async with respx.mock(assert_all_called=True) as router:
        route = router.post(OPENAI_ENDPOINT).mock(
            return_value=httpx.Response(200, json={"choices": [{"message": {"content": GOOD}}]})
        )
        async with httpx.AsyncClient() as client:
            parser = DealParser([OpenAIClient("openai-key", session=client)], [])
            deals = await parser.parse_text("2/$35 carts", "Greenhouse")

    assert len(deals) == 2
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer openai-key"
    body = json.loads(request.content)
    assert body["model"] == "gpt-4o-mini"
    assert body["response_format"] == {"type": "json_object"}
