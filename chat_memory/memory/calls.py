from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, List, TypeVar

from ..errors import ChatMemoryError, ProviderError, StorageIOError
from ..services.embeddings import EmbeddingProvider


T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CallPolicy:
    """Per-call deadlines for backend and provider I/O.

    Every storage call is bounded by ``storage_timeout``; embedding and vector
    search share the longer ``embedding_timeout``. Driver failures surface as
    ``StorageIOError`` carrying the operation and chat/message ids.
    """

    storage_timeout: float = 10.0
    embedding_timeout: float = 30.0

    async def storage(
        self,
        call: Awaitable[T],
        operation: str,
        *,
        chat_id: int | None = None,
        message_id: int | None = None,
        timeout: float | None = None,
    ) -> T:
        limit = self.storage_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(call, timeout=limit)
        except asyncio.CancelledError:
            raise
        except ChatMemoryError:
            raise
        except asyncio.TimeoutError as exc:
            raise StorageIOError(
                operation,
                chat_id=chat_id,
                message_id=message_id,
                detail=f"timed out after {limit:.1f}s",
            ) from exc
        except Exception as exc:
            raise StorageIOError(
                operation,
                chat_id=chat_id,
                message_id=message_id,
                detail=f"{type(exc).__name__}: {exc}",
            ) from exc

    async def vector(self, call: Awaitable[T], operation: str, *, chat_id: int | None = None) -> T:
        return await self.storage(call, operation, chat_id=chat_id, timeout=self.embedding_timeout)

    async def embed(self, provider: EmbeddingProvider, text: str) -> List[float]:
        try:
            return await asyncio.wait_for(provider.embed(text), timeout=self.embedding_timeout)
        except asyncio.CancelledError:
            raise
        except ChatMemoryError:
            raise
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"embedding timed out after {self.embedding_timeout:.1f}s") from exc
        except Exception as exc:
            raise ProviderError(f"embedding failed: {type(exc).__name__}: {exc}") from exc
