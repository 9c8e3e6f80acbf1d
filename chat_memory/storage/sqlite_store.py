from __future__ import annotations

import aiosqlite

from .base import StorageBackend
from .messages import SqliteMessagesMixin
from .profiles import SqliteProfilesMixin
from .schema import SqliteSchemaMixin
from .settings import SqliteSettingsMixin


class SqliteStorage(
    SqliteSchemaMixin,
    SqliteMessagesMixin,
    SqliteProfilesMixin,
    SqliteSettingsMixin,
    StorageBackend,
):
    """Local relational store: per-call aiosqlite connections over a WAL database.

    Vector search is not available here; the vector operations keep the
    ``StorageBackend`` defaults and raise ``UnsupportedOperationError``.
    """

    backend_name = "sqlite"
    supports_vectors = False

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("SELECT 1")
