"""Storage layer — SQLite database access, schema management, and the content store."""

from pitboard.storage.connection import get_connection
from pitboard.storage.content import ContentStore
from pitboard.storage.schema import init_db

__all__ = ["ContentStore", "get_connection", "init_db"]
