"""Backend contract shared by every physical store (SQLite, Postgres, MongoDB, JSON files)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, List, Optional, Set

from ..errors import UnsupportedOperationError
from ..types import ChatMessage, ChatSettingsRecord, ScoredMessage, SettingsField, UserProfile


class StorageBackend(ABC):
    """A connected handle to one physical store.

    Backends persist exactly what they are given; timestamps, defaults and
    embedding policy are decided one level up in ``chat_memory.memory``.
    Operations a backend cannot serve raise ``UnsupportedOperationError``.
    """

    backend_name = "abstract"
    supports_vectors = False

    # -- lifecycle -----------------------------------------------------------

    @abstractmethod
    async def init(self) -> None:
        """Connect and provision schema/indexes. Safe to call more than once."""

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def ping(self) -> None:
        """Raise if the store is unreachable."""

    # -- messages ------------------------------------------------------------

    @abstractmethod
    async def upsert_message(self, message: ChatMessage) -> None:
        """Insert or replace by (chat_id, message_id); an existing vector survives a copy without one."""

    async def upsert_messages(self, messages: Iterable[ChatMessage]) -> None:
        """Bulk form of ``upsert_message`` with the same per-message semantics."""
        for message in messages:
            await self.upsert_message(message)

    @abstractmethod
    async def get_message(self, chat_id: int, message_id: int) -> Optional[ChatMessage]: ...

    @abstractmethod
    async def get_recent_messages(self, chat_id: int, limit: int) -> List[ChatMessage]:
        """Newest ``limit`` messages, returned oldest first."""

    @abstractmethod
    async def get_messages_since(
        self,
        chat_id: int,
        since: datetime,
        *,
        user_id: int = 0,
        limit: int = 0,
    ) -> List[ChatMessage]:
        """Messages with ``timestamp >= since`` (optionally one author), oldest first."""

    @abstractmethod
    async def delete_chat_messages(self, chat_id: int) -> int: ...

    @abstractmethod
    async def list_chat_ids(self) -> Set[int]: ...

    @abstractmethod
    async def count_messages(self, chat_id: int | None = None) -> int: ...

    # -- vectors ---------------------------------------------------------------

    async def search_similar(self, chat_id: int, vector: List[float], k: int) -> List[ScoredMessage]:
        raise UnsupportedOperationError(self.backend_name, "search_similar")

    async def find_messages_without_embedding(
        self,
        chat_id: int,
        limit: int,
        skip_ids: Iterable[int] = (),
    ) -> List[ChatMessage]:
        raise UnsupportedOperationError(self.backend_name, "find_messages_without_embedding")

    async def set_message_embedding(self, chat_id: int, message_id: int, vector: List[float]) -> bool:
        raise UnsupportedOperationError(self.backend_name, "set_message_embedding")

    # -- retention -------------------------------------------------------------

    @abstractmethod
    async def get_chat_storage_size(self, chat_id: int) -> int:
        """Approximate footprint of the chat's messages in bytes."""

    @abstractmethod
    async def get_oldest_message_timestamp(self, chat_id: int) -> Optional[datetime]: ...

    @abstractmethod
    async def delete_messages_before(self, chat_id: int, threshold: datetime) -> int:
        """Delete messages with ``timestamp < threshold``; return the count."""

    # -- profiles --------------------------------------------------------------

    @abstractmethod
    async def get_user_profile(self, chat_id: int, user_id: int) -> Optional[UserProfile]: ...

    @abstractmethod
    async def upsert_user_profile(self, profile: UserProfile) -> None: ...

    @abstractmethod
    async def list_user_profiles(self, chat_id: int) -> List[UserProfile]: ...

    @abstractmethod
    async def reset_auto_bio_timestamps(self, chat_id: int) -> int: ...

    # -- chat settings ---------------------------------------------------------

    @abstractmethod
    async def get_chat_settings(self, chat_id: int) -> Optional[ChatSettingsRecord]: ...

    @abstractmethod
    async def upsert_chat_settings(self, record: ChatSettingsRecord, *, only_missing: bool = False) -> None:
        """Create the row if absent, then write the record's non-None fields.

        With ``only_missing`` a stored non-null value always wins, so the call can
        materialize defaults without clobbering a concurrent patch.
        """

    @abstractmethod
    async def set_chat_setting(self, chat_id: int, item: SettingsField, value: Any) -> None: ...
