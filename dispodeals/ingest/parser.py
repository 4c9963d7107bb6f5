"""Structured deal extraction from OCR text and website HTML."""

from __future__ import annotations

import json
import logging
import re
from typing import Sequence

import pydantic

from dispodeals.errors import ExtractionFailed, ExtractionUnavailable, SchemaViolation
from dispodeals.ingest.models import CATEGORIES, CandidateDeal, ParseResponse
from dispodeals.ingest.providers import JsonProvider, ProviderError

logger = logging.getLogger(__name__)

MAX_HTML_CHARS = 50_000

_SCRIPT_RE = re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[^>]*>[\s\S]*?</style>", re.IGNORECASE)
_NOSCRIPT_RE = re.compile(r"<noscript[^>]*>[\s\S]*?</noscript>", re.IGNORECASE)
_WS_RE = re.compile(r"\s+")
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")

TEXT_SYSTEM_PROMPT = (
    "You are a helpful assistant that extracts structured deal information from "
    "dispensary flyer text. Always return valid JSON."
)

HTML_SYSTEM_PROMPT = f"""You are extracting cannabis deal data from a dispensary website's deals/specials page.
Return JSON with a "deals" array. Each deal has:
- category (one of: {", ".join(CATEGORIES)})
- title (full product title as shown)
- brand (brand/producer name if present, e.g. "STIIIZY", "Element")
- product_name (product name without the brand)
- price_text (e.g. 2/$35, $15/gram, 30% off)
- confidence (0-1)

If the brand is not clearly identifiable, leave brand and product_name empty and put the full title in title.
Ignore navigation, headers, footers and non-deal content."""

EXAMPLE_RESPONSE = """{
  "deals": [
    {
      "category": "vapes",
      "title": "STIIIZY 1g carts",
      "brand": "STIIIZY",
      "product_name": "1g carts",
      "price_text": "2/$35",
      "confidence": 0.87
    }
  ]
}"""


def _context_lines(dispensary_name: str, city: str | None) -> str:
    lines = [f"Dispensary: {dispensary_name}"]
    if city:
        lines.append(f"City: {city}")
    return "\n".join(lines)


def build_text_prompt(ocr_text: str, dispensary_name: str, city: str | None = None) -> str:
    return (
        "Extract all cannabis deals from this dispensary flyer text.\n"
        "Return objects with category, title, price_text, optional brand, "
        "optional product_name and optional confidence (0-1).\n\n"
        f"Categories must be one of: {', '.join(CATEGORIES)}\n"
        'Price format examples: "2/$35", "1g $15", "30% off", "$25 each", "3/$60"\n\n'
        f"{_context_lines(dispensary_name, city)}\n\n"
        f"Text:\n{ocr_text}\n\n"
        f"Return only valid JSON in this format:\n{EXAMPLE_RESPONSE}"
    )


def build_html_prompt(cleaned_html: str, dispensary_name: str, city: str | None = None) -> str:
    return (
        f"{_context_lines(dispensary_name, city)}\n\n"
        f"Extract all deals from this website HTML:\n{cleaned_html}\n\n"
        f"Return only valid JSON in this format:\n{EXAMPLE_RESPONSE}"
    )


def clean_html(html: str) -> str:
    """Strip script/style/noscript blocks, collapse whitespace and truncate."""
    for pattern in (_SCRIPT_RE, _STYLE_RE, _NOSCRIPT_RE):
        html = pattern.sub("", html)
    return _WS_RE.sub(" ", html)[:MAX_HTML_CHARS]


def validate_response(raw: str) -> list[CandidateDeal]:
    """Parse provider output into candidates or raise SchemaViolation."""
    payload = _FENCE_RE.sub("", raw.strip())
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise SchemaViolation(f"Provider returned invalid JSON: {exc}") from exc
    try:
        return ParseResponse.model_validate(data).deals
    except pydantic.ValidationError as exc:
        raise SchemaViolation(f"Provider output does not match deal schema: {exc.error_count()} errors") from exc


class DealParser:
    def __init__(self, text_providers: Sequence[JsonProvider], html_providers: Sequence[JsonProvider]) -> None:
        self.text_providers = list(text_providers)
        self.html_providers = list(html_providers)

    async def parse_text(self, ocr_text: str, dispensary_name: str, city: str | None = None) -> list[CandidateDeal]:
        prompt = build_text_prompt(ocr_text, dispensary_name, city)
        return await self._run(self.text_providers, TEXT_SYSTEM_PROMPT, prompt, dispensary_name)

    async def parse_html(self, html: str, dispensary_name: str, city: str | None = None) -> list[CandidateDeal]:
        prompt = build_html_prompt(clean_html(html), dispensary_name, city)
        return await self._run(self.html_providers, HTML_SYSTEM_PROMPT, prompt, dispensary_name)

    async def _run(
        self,
        providers: list[JsonProvider],
        system: str,
        prompt: str,
        dispensary_name: str,
    ) -> list[CandidateDeal]:
        if not providers:
            raise ExtractionUnavailable("No parsing provider configured: set OPENAI_API_KEY or GEMINI_API_KEY")
        errors: list[str] = []
        for provider in providers:
            try:
                raw = await provider.generate_json(system, prompt)
                deals = validate_response(raw)
            except (ProviderError, SchemaViolation) as exc:
                logger.warning("Deal parsing with %s failed for %s: %s", provider.name, dispensary_name, exc)
                errors.append(f"{provider.name}: {exc}")
                continue
            logger.info("%s extracted %s deals for %s", provider.name, len(deals), dispensary_name)
            return deals
        raise ExtractionFailed("All parsing providers failed: " + "; ".join(errors))
