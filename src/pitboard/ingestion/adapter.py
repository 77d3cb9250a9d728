"""Transport adapter interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx

from pitboard.ingestion.normalize import RawEntry

if TYPE_CHECKING:
    from pitboard.config import Config
    from pitboard.ingestion.sources import ConditionalToken, SourceConfig
    from pitboard.ingestion.window import RunMode


@dataclass
class FetchResult:
    """What one adapter call produced for one source."""

    entries: list[RawEntry] = field(default_factory=list)
    not_modified: bool = False
    conditional_token: ConditionalToken | None = None
    newest_item_id: str | None = None
    dropped: int = 0


class SourceAdapter(ABC):
    """Abstract base class for transport adapters.

    Every adapter knows how to fetch one kind of upstream and turn its
    response into RawEntry objects in upstream (newest-first) order. The rest
    of the pipeline is transport-agnostic. Adapters hold no per-source state;
    everything they need arrives with the SourceConfig and RunMode.
    """

    # Whether an incremental run may stop at the first already-stored entry.
    early_stop_on_duplicate: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Transport kind this adapter serves."""

    @classmethod
    @abstractmethod
    def from_config(cls, config: Config, client: httpx.Client) -> SourceAdapter:
        """Build an adapter sharing the run's HTTP client."""

    @abstractmethod
    def fetch(self, source: SourceConfig, mode: RunMode) -> FetchResult:
        """Fetch entries for one source.

        Raises TransportError on timeouts, connection failures and non-2xx
        responses, and ParseError when the upstream document is malformed.
        """
