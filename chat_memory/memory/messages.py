from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Iterable, List, Optional, Set

from ..errors import ProviderError, UnsupportedOperationError, ValidationError
from ..services.embeddings import EmbeddingProvider
from ..storage.base import StorageBackend
from ..types import ChatMessage, RetentionState, ScoredMessage
from .calls import CallPolicy


logger = logging.getLogger("chat_memory")


class MessageStore:
    """Per-chat ordered message ledger over one backend.

    Writes are idempotent upserts keyed by ``(chat_id, message_id)``. When long-term
    memory is on, ``add`` embeds inline on a best-effort basis: the message is stored
    even if the provider fails, and the backfill worker fills the gap later.
    """

    def __init__(
        self,
        backend: StorageBackend,
        *,
        calls: CallPolicy | None = None,
        embedder: EmbeddingProvider | None = None,
        long_term_memory_enabled: bool = False,
        context_window: int = 1000,
    ) -> None:
        self.backend = backend
        self.calls = calls or CallPolicy()
        self.embedder = embedder
        self.long_term_memory_enabled = bool(long_term_memory_enabled)
        self.context_window = max(1, int(context_window))

    @property
    def supports_vectors(self) -> bool:
        return bool(self.backend.supports_vectors)

    def _should_embed(self, message: ChatMessage) -> bool:
        return (
            self.long_term_memory_enabled
            and self.embedder is not None
            and self.supports_vectors
            and message.needs_embedding
        )

    async def _with_embedding(self, message: ChatMessage) -> ChatMessage:
        if not self._should_embed(message):
            return message
        try:
            vector = await self.calls.embed(self.embedder, message.embeddable_text)
        except (ProviderError, ValidationError) as exc:
            logger.warning(
                "[storage.add] embedding skipped chat=%s message=%s, left for backfill: %s",
                message.chat_id,
                message.message_id,
                exc,
            )
            return message
        return replace(message, embedding=vector)

    async def add(self, message: ChatMessage) -> ChatMessage:
        stored = await self._with_embedding(message)
        await self.calls.storage(
            self.backend.upsert_message(stored),
            "add",
            chat_id=message.chat_id,
            message_id=message.message_id,
        )
        return stored

    async def add_many(self, messages: Iterable[ChatMessage]) -> List[ChatMessage]:
        """Bulk ingest, e.g. an imported chat history, written in one backend call.

        Embedding stays best-effort per message; a storage failure fails the whole call.
        """
        stored = [await self._with_embedding(message) for message in messages]
        if not stored:
            return []
        chat_ids = {message.chat_id for message in stored}
        await self.calls.storage(
            self.backend.upsert_messages(stored),
            "add_many",
            chat_id=next(iter(chat_ids)) if len(chat_ids) == 1 else None,
        )
        logger.info("[storage.add_many] stored=%s chats=%s", len(stored), len(chat_ids))
        return stored

    async def get_message(self, chat_id: int, message_id: int) -> Optional[ChatMessage]:
        return await self.calls.storage(
            self.backend.get_message(chat_id, message_id),
            "get_message",
            chat_id=chat_id,
            message_id=message_id,
        )

    async def get_recent(self, chat_id: int, limit: int | None = None) -> List[ChatMessage]:
        size = self.context_window if limit is None else int(limit)
        if size <= 0:
            return []
        return await self.calls.storage(self.backend.get_recent_messages(chat_id, size), "get_recent", chat_id=chat_id)

    async def get_since(
        self,
        chat_id: int,
        since: datetime,
        *,
        user_id: int = 0,
        limit: int = 0,
    ) -> List[ChatMessage]:
        return await self.calls.storage(
            self.backend.get_messages_since(chat_id, since, user_id=user_id, limit=limit),
            "get_since",
            chat_id=chat_id,
        )

    async def get_reply_chain(self, chat_id: int, start_message_id: int, max_depth: int) -> List[ChatMessage]:
        chain: List[ChatMessage] = []
        seen: Set[int] = set()
        next_id = int(start_message_id)
        while next_id and len(chain) < max_depth and next_id not in seen:
            seen.add(next_id)
            message = await self.get_message(chat_id, next_id)
            if message is None:
                if chain:
                    logger.debug(
                        "[storage.reply_chain] chat=%s chain truncated at missing message=%s",
                        chat_id,
                        next_id,
                    )
                break
            chain.append(message)
            next_id = int(message.reply_to_message_id or 0)
        chain.reverse()
        return chain

    async def search_scored(self, chat_id: int, query: str, k: int) -> List[ScoredMessage]:
        if k <= 0 or not (query or "").strip() or not self.long_term_memory_enabled:
            return []
        if not self.supports_vectors:
            raise UnsupportedOperationError(self.backend.backend_name, "search_relevant")
        if self.embedder is None:
            raise ProviderError("long-term memory is enabled but no embedding provider is configured")

        vector = await self.calls.embed(self.embedder, query)
        results = await self.calls.vector(self.backend.search_similar(chat_id, vector, k), "search_relevant", chat_id=chat_id)
        results.sort(key=lambda item: (item.score, item.message.timestamp), reverse=True)
        return results[:k]

    async def search_relevant(self, chat_id: int, query: str, k: int) -> List[ChatMessage]:
        return [item.message for item in await self.search_scored(chat_id, query, k)]

    async def clear(self, chat_id: int) -> int:
        removed = await self.calls.storage(self.backend.delete_chat_messages(chat_id), "clear", chat_id=chat_id)
        logger.info("[storage.clear] chat=%s removed=%s", chat_id, removed)
        return removed

    async def list_chat_ids(self) -> Set[int]:
        return await self.calls.storage(self.backend.list_chat_ids(), "list_chat_ids")

    async def count_messages(self, chat_id: int | None = None) -> int:
        return await self.calls.storage(self.backend.count_messages(chat_id), "count_messages", chat_id=chat_id)

    # Maintenance paths used by the backfill and retention jobs.

    async def find_unembedded(self, chat_id: int, limit: int, skip_ids: Iterable[int] = ()) -> List[ChatMessage]:
        return await self.calls.storage(
            self.backend.find_messages_without_embedding(chat_id, limit, tuple(skip_ids)),
            "find_unembedded",
            chat_id=chat_id,
        )

    async def attach_embedding(self, chat_id: int, message_id: int, vector: List[float]) -> bool:
        return await self.calls.storage(
            self.backend.set_message_embedding(chat_id, message_id, vector),
            "attach_embedding",
            chat_id=chat_id,
            message_id=message_id,
        )

    async def measure(self, chat_id: int) -> RetentionState:
        size = await self.calls.storage(self.backend.get_chat_storage_size(chat_id), "measure_size", chat_id=chat_id)
        oldest = await self.calls.storage(
            self.backend.get_oldest_message_timestamp(chat_id),
            "oldest_timestamp",
            chat_id=chat_id,
        )
        return RetentionState(chat_id=int(chat_id), size_bytes=int(size), oldest_timestamp=oldest)

    async def delete_older_than(self, chat_id: int, threshold: datetime) -> int:
        return await self.calls.storage(
            self.backend.delete_messages_before(chat_id, threshold),
            "delete_older_than",
            chat_id=chat_id,
        )
