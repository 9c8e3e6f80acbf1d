from .base import StorageBackend
from .factory import build_storage_backend
from .file_store import FileStorage
from .sqlite_store import SqliteStorage

__all__ = ["FileStorage", "SqliteStorage", "StorageBackend", "build_storage_backend"]
