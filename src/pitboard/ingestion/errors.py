"""Ingestion error taxonomy."""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for all ingestion failures."""


class TransportError(IngestionError):
    """Timeout, non-2xx response, or connection failure talking to an upstream."""


class ParseError(IngestionError):
    """Upstream document could not be parsed; the source is skipped entirely."""


class PersistenceError(IngestionError):
    """A content-store write failed."""


class FatalError(IngestionError):
    """The source registry itself could not be read. Aborts the whole run."""
