"""
Source adapter registry.

Adapters register metadata here so configuration validation can occur before
any client is constructed.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Tuple

from flask_app.models.sync import SourceType


@dataclass(frozen=True)
class AdapterDescriptor:
    """Metadata describing a source adapter."""

    name: str
    title: str
    required_env_vars: Tuple[str, ...] = ()
    optional_dependencies: Tuple[str, ...] = ()
    summary: str | None = None


def get_adapter_registry() -> Mapping[str, AdapterDescriptor]:
    """Return the registry of supported source adapters."""
    return OrderedDict(
        (
            (
                SourceType.AIRTABLE.value,
                AdapterDescriptor(
                    name=SourceType.AIRTABLE.value,
                    title="Airtable",
                    required_env_vars=("AIRTABLE_PERSONAL_ACCESS_TOKEN",),
                    summary="Poll Airtable bases for tagged field changes.",
                ),
            ),
        )
    )


def resolve_adapters(
    configured: Sequence[str],
    registry: Mapping[str, AdapterDescriptor] | None = None,
) -> Iterable[AdapterDescriptor]:
    """Map configured adapter names to registry descriptors, raising on unknowns."""
    registry = registry or get_adapter_registry()
    unknown = sorted({adapter for adapter in configured if adapter not in registry})
    if unknown:
        raise ValueError(
            "Unknown sync adapters configured: "
            + ", ".join(unknown)
            + ". Update SYNC_ADAPTERS or register these adapters first."
        )
    return tuple(registry[adapter] for adapter in configured)


__all__ = ["AdapterDescriptor", "get_adapter_registry", "resolve_adapters"]
