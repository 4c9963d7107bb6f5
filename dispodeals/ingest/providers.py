"""REST clients for the AI providers used by OCR and deal parsing."""

from __future__ import annotations

import base64
import logging
from typing import Any, Protocol

import httpx

from dispodeals.utils.retry import retry_async

logger = logging.getLogger(__name__)

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
OPENAI_ENDPOINT = "https://api.openai.com/v1/chat/completions"

OCR_INSTRUCTION = (
    "Extract all text from this dispensary flyer. Return only the text content, no explanations."
)


class ProviderError(Exception):
    """A single provider call failed; callers move on to the next provider."""


class VisionProvider(Protocol):
    name: str

    async def extract_text(self, data: bytes, mime_type: str) -> str: ...


class JsonProvider(Protocol):
    name: str

    async def generate_json(self, system: str, prompt: str) -> str: ...


class GeminiClient:
    name = "gemini"

    def __init__(self, api_key: str, *, model: str = "gemini-2.5-flash", session: httpx.AsyncClient) -> None:
        self.api_key = api_key
        self.model = model
        self.session = session

    async def extract_text(self, data: bytes, mime_type: str) -> str:
        body = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": OCR_INSTRUCTION},
                        {
                            "inline_data": {
                                "mime_type": mime_type,
                                "data": base64.b64encode(data).decode("ascii"),
                            }
                        },
                    ],
                }
            ]
        }
        return (await self._generate(body)).strip()

    async def generate_json(self, system: str, prompt: str) -> str:
        body = {
            "systemInstruction": {"parts": [{"text": system}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.1, "responseMimeType": "application/json"},
        }
        return await self._generate(body)

    async def _generate(self, body: dict[str, Any]) -> str:
        url = GEMINI_ENDPOINT.format(model=self.model)
        data = await _post_json(self.session, url, body, headers={"x-goog-api-key": self.api_key}, name=self.name)
        try:
            parts = data["candidates"][0]["content"]["parts"]
            text = "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"gemini response missing content: {exc!r}") from exc
        if not text:
            raise ProviderError("gemini returned an empty response")
        return text


class OpenAIClient:
    name = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o-mini",
        vision_model: str = "gpt-4o",
        session: httpx.AsyncClient,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.vision_model = vision_model
        self.session = session

    async def extract_text(self, data: bytes, mime_type: str) -> str:
        encoded = base64.b64encode(data).decode("ascii")
        body = {
            "model": self.vision_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": OCR_INSTRUCTION},
                        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
                    ],
                }
            ],
            "max_tokens": 4000,
        }
        return (await self._complete(body)).strip()

    async def generate_json(self, system: str, prompt: str) -> str:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.1,
            "response_format": {"type": "json_object"},
        }
        return await self._complete(body)

    async def _complete(self, body: dict[str, Any]) -> str:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        data = await _post_json(self.session, OPENAI_ENDPOINT, body, headers=headers, name=self.name)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"openai response missing content: {exc!r}") from exc
        if not content:
            raise ProviderError("openai returned an empty response")
        return content


async def _post_json(
    session: httpx.AsyncClient,
    url: str,
    body: dict[str, Any],
    *,
    headers: dict[str, str],
    name: str,
) -> dict[str, Any]:
    try:
        response = await retry_async(session.post)(url, json=body, headers=headers)
    except httpx.HTTPError as exc:
        raise ProviderError(f"{name} request failed: {exc}") from exc
    if response.status_code >= 400:
        raise ProviderError(f"{name} returned HTTP {response.status_code}: {response.text[:200]}")
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderError(f"{name} returned invalid JSON") from exc


def build_providers(settings, session: httpx.AsyncClient) -> tuple[list[VisionProvider], list[JsonProvider], list[JsonProvider]]:
    """Return (ocr, text parsing, html parsing) providers in preference order."""
    gemini = (
        GeminiClient(settings.gemini_api_key, model=settings.gemini_model, session=session)
        if settings.gemini_api_key
        else None
    )
    openai = (
        OpenAIClient(
            settings.openai_api_key,
            model=settings.openai_model,
            vision_model=settings.openai_vision_model,
            session=session,
        )
        if settings.openai_api_key
        else None
    )
    ocr = [p for p in (gemini, openai) if p is not None]
    text_parsers = [p for p in (openai, gemini) if p is not None]
    html_parsers = [p for p in (gemini, openai) if p is not None]
    if not ocr:
        logger.warning("No AI provider configured; OCR and parsing are unavailable")
    return ocr, text_parsers, html_parsers
