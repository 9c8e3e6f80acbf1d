from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from ..config import Settings
from ..errors import ChatMemoryError, ProviderError, UnsupportedOperationError
from ..services.embeddings import EmbeddingProvider
from ..storage.base import StorageBackend
from ..types import ChatMessage, ChatSettingsDefaults
from .calls import CallPolicy
from .chat_settings import SettingsStore
from .messages import MessageStore
from .profiles import ProfileStore


logger = logging.getLogger("chat_memory")


class StorageFacade:
    """Single entry point over exactly one backend selected at startup."""

    def __init__(
        self,
        backend: StorageBackend,
        *,
        defaults: ChatSettingsDefaults | None = None,
        embedder: EmbeddingProvider | None = None,
        long_term_memory_enabled: bool = False,
        context_window: int = 1000,
        fetch_k: int = 3,
        storage_timeout: float = 10.0,
        embedding_timeout: float = 30.0,
    ) -> None:
        self.backend = backend
        self.calls = CallPolicy(storage_timeout=storage_timeout, embedding_timeout=embedding_timeout)
        self.fetch_k = max(1, int(fetch_k))
        self.messages = MessageStore(
            backend,
            calls=self.calls,
            embedder=embedder,
            long_term_memory_enabled=long_term_memory_enabled,
            context_window=context_window,
        )
        self.profiles = ProfileStore(backend, calls=self.calls)
        self.settings = SettingsStore(backend, defaults or ChatSettingsDefaults(), calls=self.calls)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        backend: StorageBackend,
        embedder: EmbeddingProvider | None = None,
    ) -> "StorageFacade":
        return cls(
            backend,
            defaults=settings.chat_settings_defaults(),
            embedder=embedder,
            long_term_memory_enabled=settings.long_term_memory_enabled,
            context_window=settings.context_window,
            fetch_k=settings.long_term_memory_fetch_k,
            storage_timeout=settings.storage_timeout_seconds,
            embedding_timeout=settings.embedding_timeout_seconds,
        )

    @property
    def backend_name(self) -> str:
        return self.backend.backend_name

    async def init(self) -> None:
        await self.calls.storage(self.backend.init(), "init", timeout=max(30.0, self.calls.storage_timeout))

    async def close(self) -> None:
        await self.backend.close()

    async def ping(self) -> None:
        await self.calls.storage(self.backend.ping(), "ping")

    async def status(self, chat_id: int | None = None) -> Dict[str, Any]:
        """Reachability and message counts; ``chat_messages`` is filled only for a given chat."""
        report: Dict[str, Any] = {
            "backend": self.backend_name,
            "ok": True,
            "supports_vectors": bool(self.backend.supports_vectors),
            "long_term_memory_enabled": self.messages.long_term_memory_enabled,
            "total_messages": None,
            "chat_id": chat_id,
            "chat_messages": None,
            "error": "",
        }
        try:
            await self.ping()
            report["total_messages"] = await self.messages.count_messages()
            if chat_id is not None:
                report["chat_messages"] = await self.messages.count_messages(chat_id)
        except asyncio.CancelledError:
            raise
        except ChatMemoryError as exc:
            report["ok"] = False
            report["error"] = str(exc)
        return report

    async def find_relevant_history(self, chat_id: int, query: str, k: int | None = None) -> List[ChatMessage]:
        """Semantic lookup for context assembly; never fails the surrounding conversation."""
        try:
            return await self.messages.search_relevant(chat_id, query, k or self.fetch_k)
        except UnsupportedOperationError as exc:
            logger.debug("[storage.search] chat=%s %s", chat_id, exc)
            return []
        except ProviderError as exc:
            logger.warning("[storage.search] chat=%s embedding failed, no relevant history: %s", chat_id, exc)
            return []
