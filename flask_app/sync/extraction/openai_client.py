"""OpenAI-backed structured extraction."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Mapping

from openai import APITimeoutError, OpenAI, OpenAIError, RateLimitError as OpenAIRateLimitError

from flask_app.sync.adapters.errors import AdapterTimeoutError, RateLimitError

from . import ExtractionError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"

SYSTEM_PROMPT = (
    "You extract structured data from user-provided text. Respond with a single JSON object that "
    "follows this JSON schema and contains no other keys:\n{schema}"
)


class OpenAIExtractor:
    """Return structured fields for a prompt using a JSON-mode chat completion."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        temperature: float = 0,
        timeout_s: float = 30,
        client: OpenAI | None = None,
        rate_limiter=None,
    ):
        self.model = model
        self.temperature = temperature
        self.client = client or OpenAI(api_key=api_key, timeout=timeout_s)
        self._rate_limiter = rate_limiter

    def extract_structured(self, prompt: str, schema: Mapping[str, Any]) -> dict[str, Any]:
        if self._rate_limiter is not None:
            self._rate_limiter.acquire()
        started = time.monotonic()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT.format(schema=json.dumps(schema, sort_keys=True))},
                    {"role": "user", "content": prompt},
                ],
            )
        except OpenAIRateLimitError as exc:
            raise RateLimitError(f"OpenAI rate limit: {exc}") from exc
        except APITimeoutError as exc:
            raise AdapterTimeoutError(f"OpenAI request timed out: {exc}") from exc
        except OpenAIError as exc:
            logger.error(
                "Structured extraction failed",
                extra={"sync_llm_model": self.model, "sync_llm_error": exc.__class__.__name__},
            )
            raise ExtractionError(str(exc)) from exc

        latency_ms = round((time.monotonic() - started) * 1000)
        choices = response.choices or []
        content = choices[0].message.content if choices else None
        if not content:
            raise ExtractionError("Empty content in extraction response")
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ExtractionError(f"Extraction response is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ExtractionError("Extraction response is not a JSON object")

        logger.info(
            "Structured extraction completed",
            extra={"sync_llm_model": self.model, "sync_llm_latency_ms": latency_ms, "sync_llm_cache": "miss"},
        )
        return data
