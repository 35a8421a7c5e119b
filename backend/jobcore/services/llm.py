"""LLM service: Gemini primary, OpenRouter fallback.

Async implementation using httpx so the FastAPI event loop is not blocked
while waiting on upstream LLM APIs. Includes lightweight retries via tenacity
for transient network and 429/5xx responses; the visual quote task adds its
own bounded retry on top (see services/retry.py).
"""
from __future__ import annotations

import base64
import json
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from ..config import get_settings
from ..exceptions import AnalysisFailedError, ExternalServiceError
from ..models import ImagePart, QuoteSuggestion, Service, Upcharge

logger = logging.getLogger(__name__)


# Retry predicate: network errors, timeouts, and 429/5xx HTTP errors
def _is_retryable(exc: BaseException) -> bool:  # pragma: no cover - simple predicate
    if isinstance(exc, (httpx.RequestError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or 500 <= status < 600
    return False


QUOTE_INSTRUCTIONS = """### ROLE ###
You are an experienced vehicle detailing estimator.

### OBJECTIVE ###
Look at the attached photos of a vehicle. Judge its visible condition (dirt,
swirl marks, stains, pet hair, oxidation) and choose the services and
upcharges from the catalogs below that the job needs.

### OUTPUT ###
Respond with a SINGLE JSON object and nothing else:
{
  "suggestedServiceIds": ["string"],   // ids from AVAILABLE SERVICES only
  "suggestedUpchargeIds": ["string"]   // ids from AVAILABLE UPCHARGES only
}
Do not wrap the JSON in markdown code fences. Use empty arrays when nothing applies.
"""

DESCRIPTION_INSTRUCTIONS = (
    "Write a compelling, customer-facing description for an auto detailing "
    "service named \"{name}\". Keep it to 2-3 sentences and highlight the key "
    "benefits. Return plain text only."
)

# Registry of prompts by version label
PROMPTS = {
    "v1": QUOTE_INSTRUCTIONS,
}


def _catalog_block(services: Sequence[Service], upcharges: Sequence[Upcharge]) -> str:
    svc = [{"id": s.id, "name": s.name, "description": s.description} for s in services]
    ups = [{"id": u.id, "name": u.name, "description": u.description} for u in upcharges]
    return (
        "\n---- AVAILABLE SERVICES ----\n" + json.dumps(svc)
        + "\n---- AVAILABLE UPCHARGES ----\n" + json.dumps(ups)
    )


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_suggestion(text: str) -> QuoteSuggestion:
    """Parse a model response into a QuoteSuggestion or raise AnalysisFailedError."""
    try:
        return QuoteSuggestion.model_validate(json.loads(_strip_fences(text)))
    except (json.JSONDecodeError, ValidationError) as e:
        raise AnalysisFailedError(f"Model returned an unusable quote suggestion: {e}") from e


class LLMService:
    def __init__(self) -> None:
        self.settings = get_settings()
        # Read max output tokens from env without modifying global settings
        try:
            mot = int(os.getenv("LLM_MAX_OUTPUT_TOKENS", "2048"))
            # Clamp to a range the providers accept
            self.max_output_tokens = max(256, min(8192, mot))
        except ValueError:
            self.max_output_tokens = 2048
        # Select prompt by version (defaults to v1)
        self.prompt_version = (self.settings.LLM_PROMPT_VERSION or "v1").strip()
        self.instructions = PROMPTS.get(self.prompt_version, QUOTE_INSTRUCTIONS)

    def _gemini_url(self) -> str:
        model = self.settings.GEMINI_MODEL or "gemini-2.5-flash"
        return f"https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent?key={self.settings.GEMINI_API_KEY}"

    def _openrouter_url(self) -> str:
        return "https://openrouter.ai/api/v1/chat/completions"

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_random_exponential(multiplier=0.2, max=5),
        retry=retry_if_exception(_is_retryable),
    )
    async def _post_json(self, url: str, *, headers: Optional[Dict[str, str]] = None, payload: Dict[str, Any], timeout: float = 60.0) -> Dict[str, Any]:
        """HTTP POST JSON with retries. Raises httpx.HTTPStatusError on non-2xx.

        Returns parsed JSON dict.
        """
        t = httpx.Timeout(timeout, connect=5.0)
        async with httpx.AsyncClient(timeout=t) as client:
            resp = await client.post(url, headers=headers, json=payload)
            resp.raise_for_status()
            return resp.json()

    async def _gemini_generate(self, parts: List[Dict[str, Any]], *, json_mode: bool) -> str:
        if not self.settings.GEMINI_API_KEY:
            raise ExternalServiceError("Missing GEMINI_API_KEY")
        generation_config: Dict[str, Any] = {
            "temperature": 0.2,
            "maxOutputTokens": self.max_output_tokens,
        }
        if json_mode:
            generation_config["responseMimeType"] = "application/json"
        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }
        data = await self._post_json(self._gemini_url(), payload=payload)
        # Gemini returns candidates[0].content.parts[*].text
        try:
            cand_parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as e:
            logger.exception("Gemini unexpected response: %s", data)
            raise ExternalServiceError(f"Gemini parse error: {e}") from e
        return "".join(p.get("text", "") for p in cand_parts)

    async def _openrouter_chat(self, messages: List[Dict[str, Any]]) -> str:
        if not self.settings.OPENROUTER_API_KEY:
            raise ExternalServiceError("Missing OPENROUTER_API_KEY")
        headers = {
            "Authorization": f"Bearer {self.settings.OPENROUTER_API_KEY}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.settings.OPENROUTER_MODEL,
            "messages": messages,
            "temperature": 0.2,
            "max_tokens": self.max_output_tokens,
        }
        data = await self._post_json(self._openrouter_url(), headers=headers, payload=payload)
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            logger.exception("OpenRouter unexpected response: %s", data)
            raise ExternalServiceError(f"OpenRouter parse error: {e}") from e

    async def suggest_quote_async(
        self,
        images: Sequence[ImagePart],
        services: Sequence[Service],
        upcharges: Sequence[Upcharge],
    ) -> QuoteSuggestion:
        """Try Gemini, fallback to OpenRouter. Raises AnalysisFailedError if both fail."""
        prompt = self.instructions + _catalog_block(services, upcharges)
        encoded = [(img.mimeType, base64.b64encode(img.data).decode("ascii")) for img in images]

        try:
            parts: List[Dict[str, Any]] = [{"inlineData": {"mimeType": m, "data": d}} for m, d in encoded]
            parts.append({"text": prompt})
            return parse_suggestion(await self._gemini_generate(parts, json_mode=True))
        except (ExternalServiceError, AnalysisFailedError, httpx.HTTPError) as e:
            logger.warning("Gemini quote analysis failed: %s", e)

        try:
            content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
            content.extend({"type": "image_url", "image_url": {"url": f"data:{m};base64,{d}"}} for m, d in encoded)
            return parse_suggestion(await self._openrouter_chat([{"role": "user", "content": content}]))
        except (ExternalServiceError, httpx.HTTPError) as e:
            logger.error("OpenRouter quote analysis failed: %s", e)
            raise AnalysisFailedError(str(e)) from e

    async def generate_service_description_async(self, service_name: str) -> str:
        """Short marketing description for a service; Gemini first, OpenRouter fallback."""
        prompt = DESCRIPTION_INSTRUCTIONS.format(name=service_name)
        try:
            return (await self._gemini_generate([{"text": prompt}], json_mode=False)).strip()
        except (ExternalServiceError, httpx.HTTPError) as e:
            logger.warning("Gemini description failed: %s", e)
        try:
            return (await self._openrouter_chat([{"role": "user", "content": prompt}])).strip()
        except httpx.HTTPError as e:
            logger.error("OpenRouter description failed: %s", e)
            raise ExternalServiceError(f"Description generation failed: {e}") from e
