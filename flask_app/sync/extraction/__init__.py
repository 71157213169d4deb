"""Free-text to structured-field extraction collaborator."""

from __future__ import annotations

from typing import Any, Mapping, Protocol


class ExtractionError(RuntimeError):
    """Raised when the extraction backend cannot produce structured output."""


class Extractor(Protocol):
    def extract_structured(self, prompt: str, schema: Mapping[str, Any]) -> dict[str, Any]: ...


__all__ = ["ExtractionError", "Extractor"]
