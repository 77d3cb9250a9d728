"""Adapter registry — maps transport kinds to adapter classes."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

    from pitboard.config import Config
    from pitboard.ingestion.adapter import SourceAdapter

_REGISTRY: dict[str, type[SourceAdapter]] = {}


def register_adapter(kind: str, cls: type[SourceAdapter]) -> None:
    """Register an adapter class for a given transport kind."""
    _REGISTRY[kind] = cls


def get_adapter_class(kind: str) -> type[SourceAdapter] | None:
    """Look up an adapter class by transport kind. Returns None if not found."""
    return _REGISTRY.get(kind)


def registered_kinds() -> list[str]:
    """Return a sorted list of all registered transport kinds."""
    return sorted(_REGISTRY)


def build_adapters(config: Config, client: httpx.Client) -> dict[str, SourceAdapter]:
    """Instantiate one adapter per registered kind, all sharing ``client``."""
    return {kind: cls.from_config(config, client) for kind, cls in _REGISTRY.items()}
