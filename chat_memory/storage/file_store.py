"""Local JSON fallback: one ``chat_<id>.json`` document per chat, cached in memory."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from ..types import (
    ChatMessage,
    ChatSettingsRecord,
    ScoredMessage,
    SettingsField,
    UserProfile,
    ensure_utc,
    settings_record_from_mapping,
)
from .base import StorageBackend
from .utils import cosine_scores, sort_chronologically


logger = logging.getLogger("chat_memory")

FILE_FORMAT_VERSION = 1


def _copy_message(message: ChatMessage) -> ChatMessage:
    embedding = list(message.embedding) if message.embedding is not None else None
    return replace(message, embedding=embedding)


@dataclass(slots=True)
class _ChatState:
    messages: Dict[int, ChatMessage] = field(default_factory=dict)
    profiles: Dict[int, UserProfile] = field(default_factory=dict)
    settings: Optional[ChatSettingsRecord] = None

    def to_payload(self, chat_id: int) -> Dict[str, Any]:
        settings = None
        if self.settings is not None:
            settings = {item.value: value for item, value in self.settings.values().items()}
        return {
            "version": FILE_FORMAT_VERSION,
            "chat_id": chat_id,
            "messages": [message.to_dict() for message in sort_chronologically(self.messages.values())],
            "profiles": [profile.to_dict() for profile in self.profiles.values()],
            "settings": settings,
        }

    def clone(self) -> "_ChatState":
        # Shallow per-entry copy: mutators replace entries instead of editing them in place.
        return _ChatState(
            messages=dict(self.messages),
            profiles=dict(self.profiles),
            settings=replace(self.settings) if self.settings is not None else None,
        )

    @classmethod
    def from_payload(cls, chat_id: int, payload: Any) -> "_ChatState":
        if not isinstance(payload, dict):
            raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
        state = cls()
        for raw in payload.get("messages") or []:
            message = ChatMessage.from_dict(raw)
            state.messages[message.message_id] = message
        for raw in payload.get("profiles") or []:
            profile = UserProfile.from_dict(raw)
            state.profiles[profile.user_id] = profile
        raw_settings = payload.get("settings")
        if raw_settings is not None:
            state.settings = settings_record_from_mapping(chat_id, raw_settings)
        return state


class FileStorage(StorageBackend):
    """In-process cache persisted write-through to per-chat JSON files.

    Mutations for one chat are serialised by that chat's lock, including the
    file write. Each mutation is staged on a copy of the chat and becomes visible
    only after the file write succeeds, so a failed write changes nothing.
    Reads never await, so they always see a fully applied mutation.
    Vector search is a brute-force cosine scan over the chat's cached vectors.
    """

    backend_name = "file"
    supports_vectors = True

    def __init__(self, data_dir: Path, *, max_messages_per_chat: int = 0) -> None:
        self.data_dir = Path(data_dir)
        self.max_messages_per_chat = max(0, int(max_messages_per_chat))
        self._chats: Dict[int, _ChatState] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._loaded = False

    def _path_for(self, chat_id: int) -> Path:
        return self.data_dir / f"chat_{int(chat_id)}.json"

    def _lock_for(self, chat_id: int) -> asyncio.Lock:
        return self._locks.setdefault(int(chat_id), asyncio.Lock())

    def _draft(self, chat_id: int) -> _ChatState:
        current = self._chats.get(int(chat_id))
        return current.clone() if current is not None else _ChatState()

    # -- lifecycle -----------------------------------------------------------

    async def init(self) -> None:
        if self._loaded:
            return
        self.data_dir.mkdir(parents=True, exist_ok=True)
        loaded = await asyncio.to_thread(self._load_all_sync)
        self._chats.update(loaded)
        self._loaded = True
        logger.info("[storage.init] backend=file dir=%s chats=%s", self.data_dir, len(loaded))

    def _load_all_sync(self) -> Dict[int, _ChatState]:
        chats: Dict[int, _ChatState] = {}
        for path in sorted(self.data_dir.glob("chat_*.json")):
            try:
                chat_id = int(path.stem.split("_", 1)[1])
            except (IndexError, ValueError):
                logger.warning("[storage.file] skipping unexpected file %s", path.name)
                continue
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                chats[chat_id] = _ChatState.from_payload(chat_id, payload)
            except (json.JSONDecodeError, UnicodeDecodeError, AttributeError, KeyError, TypeError, ValueError) as exc:
                backup = path.with_name(f"{path.name}.corrupted.{int(time.time())}")
                os.replace(path, backup)
                logger.error("[storage.file] corrupted chat file %s moved to %s: %s", path.name, backup.name, exc)
        return chats

    @staticmethod
    def _write_atomic_sync(path: Path, payload: Dict[str, Any]) -> None:
        tmp_path = path.with_name(f"{path.name}.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)

    async def _commit(self, chat_id: int, draft: _ChatState) -> None:
        """Write ``draft`` to disk, then make it the cached state. Caller holds the chat lock."""
        payload = draft.to_payload(int(chat_id))
        await asyncio.to_thread(self._write_atomic_sync, self._path_for(chat_id), payload)
        self._chats[int(chat_id)] = draft

    async def close(self) -> None:
        self._loaded = False

    async def ping(self) -> None:
        if not self.data_dir.is_dir():
            raise FileNotFoundError(f"storage directory {self.data_dir} does not exist")
        if not os.access(self.data_dir, os.W_OK):
            raise PermissionError(f"storage directory {self.data_dir} is not writable")

    # -- messages ------------------------------------------------------------

    def _trim(self, state: _ChatState) -> None:
        if not self.max_messages_per_chat or len(state.messages) <= self.max_messages_per_chat:
            return
        ordered = sort_chronologically(state.messages.values())
        for message in ordered[: len(ordered) - self.max_messages_per_chat]:
            state.messages.pop(message.message_id, None)

    @staticmethod
    def _put_message(state: _ChatState, message: ChatMessage) -> None:
        stored = _copy_message(message)
        previous = state.messages.get(message.message_id)
        if stored.embedding is None and previous is not None and previous.embedding is not None:
            stored.embedding = list(previous.embedding)
        state.messages[message.message_id] = stored

    async def upsert_message(self, message: ChatMessage) -> None:
        async with self._lock_for(message.chat_id):
            draft = self._draft(message.chat_id)
            self._put_message(draft, message)
            self._trim(draft)
            await self._commit(message.chat_id, draft)

    async def upsert_messages(self, messages: Iterable[ChatMessage]) -> None:
        by_chat: Dict[int, List[ChatMessage]] = {}
        for message in messages:
            by_chat.setdefault(int(message.chat_id), []).append(message)
        for chat_id, batch in by_chat.items():
            async with self._lock_for(chat_id):
                draft = self._draft(chat_id)
                for message in batch:
                    self._put_message(draft, message)
                self._trim(draft)
                await self._commit(chat_id, draft)

    async def get_message(self, chat_id: int, message_id: int) -> Optional[ChatMessage]:
        state = self._chats.get(int(chat_id))
        if state is None:
            return None
        message = state.messages.get(int(message_id))
        return _copy_message(message) if message is not None else None

    def _ordered(self, chat_id: int) -> List[ChatMessage]:
        state = self._chats.get(int(chat_id))
        if state is None:
            return []
        return sort_chronologically(state.messages.values())

    async def get_recent_messages(self, chat_id: int, limit: int) -> List[ChatMessage]:
        if limit <= 0:
            return []
        return [_copy_message(message) for message in self._ordered(chat_id)[-int(limit):]]

    async def get_messages_since(
        self,
        chat_id: int,
        since: datetime,
        *,
        user_id: int = 0,
        limit: int = 0,
    ) -> List[ChatMessage]:
        since = ensure_utc(since)
        matched = [
            message
            for message in self._ordered(chat_id)
            if message.timestamp >= since and (not user_id or message.user_id == int(user_id))
        ]
        if limit > 0:
            matched = matched[-int(limit):]
        return [_copy_message(message) for message in matched]

    async def delete_chat_messages(self, chat_id: int) -> int:
        async with self._lock_for(chat_id):
            if int(chat_id) not in self._chats:
                return 0
            draft = self._draft(chat_id)
            removed = len(draft.messages)
            draft.messages.clear()
            await self._commit(chat_id, draft)
            return removed

    async def list_chat_ids(self) -> Set[int]:
        return {chat_id for chat_id, state in self._chats.items() if state.messages}

    async def count_messages(self, chat_id: int | None = None) -> int:
        if chat_id is None:
            return sum(len(state.messages) for state in self._chats.values())
        state = self._chats.get(int(chat_id))
        return len(state.messages) if state is not None else 0

    # -- vectors ---------------------------------------------------------------

    async def search_similar(self, chat_id: int, vector: List[float], k: int) -> List[ScoredMessage]:
        if k <= 0:
            return []
        candidates = [message for message in self._ordered(chat_id) if message.embedding is not None]
        scores = cosine_scores(vector, [message.embedding for message in candidates])
        ranked = sorted(
            zip(candidates, scores),
            key=lambda pair: (pair[1], pair[0].timestamp),
            reverse=True,
        )
        return [ScoredMessage(message=_copy_message(message), score=score) for message, score in ranked[: int(k)]]

    async def find_messages_without_embedding(
        self,
        chat_id: int,
        limit: int,
        skip_ids: Iterable[int] = (),
    ) -> List[ChatMessage]:
        skipped = {int(item) for item in skip_ids}
        found: List[ChatMessage] = []
        for message in self._ordered(chat_id):
            if len(found) >= limit:
                break
            if message.needs_embedding and message.message_id not in skipped:
                found.append(_copy_message(message))
        return found

    async def set_message_embedding(self, chat_id: int, message_id: int, vector: List[float]) -> bool:
        async with self._lock_for(chat_id):
            state = self._chats.get(int(chat_id))
            message = state.messages.get(int(message_id)) if state is not None else None
            if message is None:
                return False
            draft = self._draft(chat_id)
            draft.messages[int(message_id)] = replace(message, embedding=[float(x) for x in vector])
            await self._commit(chat_id, draft)
            return True

    # -- retention -------------------------------------------------------------

    async def get_chat_storage_size(self, chat_id: int) -> int:
        messages = self._ordered(chat_id)
        if not messages:
            return 0
        encoded = json.dumps([message.to_dict() for message in messages], ensure_ascii=False)
        return len(encoded.encode("utf-8"))

    async def get_oldest_message_timestamp(self, chat_id: int) -> Optional[datetime]:
        messages = self._ordered(chat_id)
        return messages[0].timestamp if messages else None

    async def delete_messages_before(self, chat_id: int, threshold: datetime) -> int:
        threshold = ensure_utc(threshold)
        async with self._lock_for(chat_id):
            state = self._chats.get(int(chat_id))
            if state is None:
                return 0
            doomed = [mid for mid, message in state.messages.items() if message.timestamp < threshold]
            if doomed:
                draft = self._draft(chat_id)
                for message_id in doomed:
                    del draft.messages[message_id]
                await self._commit(chat_id, draft)
            return len(doomed)

    # -- profiles --------------------------------------------------------------

    async def get_user_profile(self, chat_id: int, user_id: int) -> Optional[UserProfile]:
        state = self._chats.get(int(chat_id))
        profile = state.profiles.get(int(user_id)) if state is not None else None
        return replace(profile) if profile is not None else None

    async def upsert_user_profile(self, profile: UserProfile) -> None:
        async with self._lock_for(profile.chat_id):
            draft = self._draft(profile.chat_id)
            stored = replace(profile)
            previous = draft.profiles.get(profile.user_id)
            if previous is not None and previous.created_at is not None:
                stored.created_at = previous.created_at
            draft.profiles[profile.user_id] = stored
            await self._commit(profile.chat_id, draft)

    async def list_user_profiles(self, chat_id: int) -> List[UserProfile]:
        state = self._chats.get(int(chat_id))
        if state is None:
            return []
        ordered = sorted(
            state.profiles.values(),
            key=lambda item: (item.last_seen.timestamp() if item.last_seen else float("-inf"), -item.user_id),
            reverse=True,
        )
        return [replace(profile) for profile in ordered]

    async def reset_auto_bio_timestamps(self, chat_id: int) -> int:
        async with self._lock_for(chat_id):
            if int(chat_id) not in self._chats:
                return 0
            draft = self._draft(chat_id)
            changed = 0
            for user_id, profile in draft.profiles.items():
                if profile.last_auto_bio_update is not None:
                    draft.profiles[user_id] = replace(profile, last_auto_bio_update=None)
                    changed += 1
            if changed:
                await self._commit(chat_id, draft)
            return changed

    # -- chat settings ---------------------------------------------------------

    async def get_chat_settings(self, chat_id: int) -> Optional[ChatSettingsRecord]:
        state = self._chats.get(int(chat_id))
        if state is None or state.settings is None:
            return None
        return replace(state.settings)

    async def upsert_chat_settings(self, record: ChatSettingsRecord, *, only_missing: bool = False) -> None:
        async with self._lock_for(record.chat_id):
            draft = self._draft(record.chat_id)
            if draft.settings is None:
                draft.settings = ChatSettingsRecord(chat_id=int(record.chat_id))
            for item, value in record.present_values().items():
                if only_missing and draft.settings.get(item) is not None:
                    continue
                draft.settings.set(item, value)
            await self._commit(record.chat_id, draft)

    async def set_chat_setting(self, chat_id: int, item: SettingsField, value: Any) -> None:
        async with self._lock_for(chat_id):
            draft = self._draft(chat_id)
            if draft.settings is None:
                draft.settings = ChatSettingsRecord(chat_id=int(chat_id))
            draft.settings.set(SettingsField(item), value)
            await self._commit(chat_id, draft)
