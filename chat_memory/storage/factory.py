from __future__ import annotations

from ..config import Settings
from .base import StorageBackend
from .file_store import FileStorage
from .sqlite_store import SqliteStorage


def build_storage_backend(settings: Settings) -> StorageBackend:
    backend = settings.storage_backend.strip().lower()
    if backend == "sqlite":
        return SqliteStorage(settings.sqlite_path)
    if backend == "file":
        return FileStorage(settings.file_storage_dir, max_messages_per_chat=settings.file_cache_max_messages)

    if backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("POSTGRES_DSN is required when STORAGE_BACKEND=postgres")
        from .postgres_store import PostgresStorage

        return PostgresStorage(settings.postgres_dsn)

    if backend == "mongo":
        if not settings.mongodb_uri:
            raise ValueError("MONGODB_URI is required when STORAGE_BACKEND=mongo")
        from .mongo_store import MongoStorage

        return MongoStorage(
            settings.mongodb_uri,
            settings.mongodb_dbname,
            vector_index_name=settings.mongo_vector_index_name,
            embedding_dimensions=settings.embedding_dimensions,
        )

    raise ValueError("STORAGE_BACKEND must be 'sqlite', 'postgres', 'mongo' or 'file'")
