from __future__ import annotations


class ChatMemoryError(Exception):
    """Base class for every error raised by the chat memory layer."""


class UnsupportedOperationError(ChatMemoryError):
    def __init__(self, backend: str, operation: str) -> None:
        self.backend = backend
        self.operation = operation
        super().__init__(f"{operation} is not supported by the {backend} backend")


class ProviderError(ChatMemoryError):
    """Embedding provider call failed. Recoverable; the backfill worker retries later."""


class ValidationError(ChatMemoryError, ValueError):
    pass


class StorageIOError(ChatMemoryError):
    def __init__(
        self,
        operation: str,
        *,
        chat_id: int | None = None,
        message_id: int | None = None,
        detail: str = "",
    ) -> None:
        self.operation = operation
        self.chat_id = chat_id
        self.message_id = message_id
        self.detail = detail
        parts = [f"storage operation {operation} failed"]
        if chat_id is not None:
            parts.append(f"chat={chat_id}")
        if message_id is not None:
            parts.append(f"message={message_id}")
        text = " ".join(parts)
        if detail:
            text = f"{text}: {detail}"
        super().__init__(text)
