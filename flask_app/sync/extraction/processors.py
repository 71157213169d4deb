"""Turn raw free text into destination fields via the extraction collaborator."""

from __future__ import annotations

from typing import Any

from . import Extractor
from .prompts import FULL_ADDRESS, FULL_NAME, PromptSpec


def _run(spec: PromptSpec, raw_input: str | None, extractor: Extractor) -> dict[str, Any]:
    if raw_input is None or not str(raw_input).strip():
        return {}
    prompt = spec.render(str(raw_input).strip())
    data = extractor.extract_structured(prompt, spec.schema)
    return {key: data[key] for key in spec.output_fields if key in data}


def extract_full_name(raw_input: str | None, extractor: Extractor) -> dict[str, Any]:
    """Return ``{"firstName": ..., "lastName": ...}`` parsed from free text."""
    return _run(FULL_NAME, raw_input, extractor)


def extract_full_address(raw_input: str | None, extractor: Extractor) -> dict[str, Any]:
    return _run(FULL_ADDRESS, raw_input, extractor)


__all__ = ["extract_full_address", "extract_full_name"]
