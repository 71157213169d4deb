"""Loops destination adapter."""

from __future__ import annotations

from .client import API_URL, SYSTEM_FIELDS, LoopsApiError, LoopsClient

__all__ = ["API_URL", "LoopsApiError", "LoopsClient", "SYSTEM_FIELDS"]
