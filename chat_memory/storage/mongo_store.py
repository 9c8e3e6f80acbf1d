"""MongoDB backend with Atlas ``$vectorSearch`` over stored message embeddings."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, UpdateOne
from pymongo.errors import DuplicateKeyError, OperationFailure

from ..types import (
    ChatMessage,
    ChatSettingsRecord,
    ScoredMessage,
    SettingsField,
    UserProfile,
    ensure_utc,
    parse_optional_datetime,
    settings_record_from_mapping,
    utc_now,
)
from .base import StorageBackend


logger = logging.getLogger("chat_memory")

VECTOR_FIELD = "message_vector"
# Exactly the characters str.strip() removes; PCRE's \S is ASCII-only.
PY_WHITESPACE = (
    "\t\n\x0b\x0c\r\x1c\x1d\x1e\x1f \x85\xa0\u1680"
    "\u2000\u2001\u2002\u2003\u2004\u2005\u2006\u2007\u2008\u2009\u200a"
    "\u2028\u2029\u202f\u205f\u3000"
)
NON_BLANK_PATTERN = f"[^{PY_WHITESPACE}]"
_EMBEDDABLE_FILTER = {
    "$or": [
        {"text": {"$regex": NON_BLANK_PATTERN}},
        {"caption": {"$regex": NON_BLANK_PATTERN}},
    ]
}


def _message_document(message: ChatMessage) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "chat_id": int(message.chat_id),
        "message_id": int(message.message_id),
        "user_id": int(message.user_id),
        "username": message.username,
        "first_name": message.first_name,
        "last_name": message.last_name,
        "is_bot": bool(message.is_bot),
        "date": ensure_utc(message.timestamp),
        "text": message.text,
        "caption": message.caption,
        "reply_to_message_id": int(message.reply_to_message_id),
        "has_media": bool(message.has_media),
        "is_voice": bool(message.is_voice),
        "is_forward": bool(message.is_forward),
        "forwarded_from_user_id": int(message.forwarded_from_user_id),
        "forwarded_from_chat_id": int(message.forwarded_from_chat_id),
        "forwarded_from_message_id": int(message.forwarded_from_message_id),
        "forwarded_at": ensure_utc(message.forwarded_at) if message.forwarded_at else None,
    }
    # Omitted rather than nulled so $set never wipes a vector written by backfill.
    if message.embedding is not None:
        doc[VECTOR_FIELD] = [float(x) for x in message.embedding]
    return doc


def _message_from_document(doc: Dict[str, Any]) -> ChatMessage:
    vector = doc.get(VECTOR_FIELD)
    return ChatMessage(
        chat_id=int(doc["chat_id"]),
        message_id=int(doc["message_id"]),
        timestamp=parse_optional_datetime(doc.get("date")) or utc_now(),
        user_id=int(doc.get("user_id") or 0),
        username=str(doc.get("username") or ""),
        first_name=str(doc.get("first_name") or ""),
        last_name=str(doc.get("last_name") or ""),
        is_bot=bool(doc.get("is_bot")),
        text=str(doc.get("text") or ""),
        caption=str(doc.get("caption") or ""),
        reply_to_message_id=int(doc.get("reply_to_message_id") or 0),
        has_media=bool(doc.get("has_media")),
        is_voice=bool(doc.get("is_voice")),
        is_forward=bool(doc.get("is_forward")),
        forwarded_from_user_id=int(doc.get("forwarded_from_user_id") or 0),
        forwarded_from_chat_id=int(doc.get("forwarded_from_chat_id") or 0),
        forwarded_from_message_id=int(doc.get("forwarded_from_message_id") or 0),
        forwarded_at=parse_optional_datetime(doc.get("forwarded_at")),
        embedding=[float(x) for x in vector] if vector else None,
    )


def _profile_document(profile: UserProfile) -> Dict[str, Any]:
    def _aware(value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    return {
        "chat_id": int(profile.chat_id),
        "user_id": int(profile.user_id),
        "username": profile.username,
        "alias": profile.alias,
        "gender": profile.gender,
        "real_name": profile.real_name,
        "bio": profile.bio,
        "auto_bio": profile.auto_bio,
        "last_auto_bio_update": _aware(profile.last_auto_bio_update),
        "last_seen": _aware(profile.last_seen),
        "updated_at": _aware(profile.updated_at),
    }


class MongoStorage(StorageBackend):
    """Document store; the only server-backed backend with vector search.

    Messages live in one collection keyed by ``(chat_id, message_id)``; the
    Atlas vector index named ``vector_index_name`` covers ``message_vector``
    with ``chat_id`` as a filter field.
    """

    backend_name = "mongo"
    supports_vectors = True

    def __init__(
        self,
        uri: str,
        database: str,
        *,
        vector_index_name: str = "vector_index_messages",
        embedding_dimensions: int = 768,
        messages_collection: str = "chat_messages",
        profiles_collection: str = "user_profiles",
        settings_collection: str = "chat_settings",
        provision_vector_index: bool = True,
        server_selection_timeout_ms: int = 10000,
    ) -> None:
        self.uri = uri.strip()
        if not self.uri:
            raise ValueError("MONGODB_URI cannot be empty")
        self.database_name = database
        self.vector_index_name = vector_index_name
        self.embedding_dimensions = int(embedding_dimensions)
        self.messages_collection = messages_collection
        self.profiles_collection = profiles_collection
        self.settings_collection = settings_collection
        self.provision_vector_index = provision_vector_index
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self._client: Optional["AsyncIOMotorClient"] = None
        self._db: Optional["AsyncIOMotorDatabase"] = None

    def _collection(self, name: str) -> Any:
        if self._db is None:
            raise RuntimeError("MongoStorage.init() must be called before use")
        return self._db[name]

    @property
    def _messages(self) -> Any:
        return self._collection(self.messages_collection)

    @property
    def _profiles(self) -> Any:
        return self._collection(self.profiles_collection)

    @property
    def _settings(self) -> Any:
        return self._collection(self.settings_collection)

    # -- lifecycle -----------------------------------------------------------

    async def init(self) -> None:
        if self._client is None:
            self._client = AsyncIOMotorClient(
                self.uri,
                tz_aware=True,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
            )
            self._db = self._client[self.database_name]

        await self._client.admin.command("ping")

        await self._messages.create_index(
            [("chat_id", ASCENDING), ("message_id", ASCENDING)],
            unique=True,
            name="chat_message_unique",
        )
        await self._messages.create_index(
            [("chat_id", ASCENDING), ("date", DESCENDING)],
            name="chat_date",
        )
        await self._profiles.create_index(
            [("chat_id", ASCENDING), ("user_id", ASCENDING)],
            unique=True,
            name="chat_user_unique",
        )
        await self._settings.create_index([("chat_id", ASCENDING)], unique=True, name="chat_unique")

        if self.provision_vector_index:
            await self._ensure_vector_index()
        logger.info("[storage.init] backend=mongo database=%s", self.database_name)

    async def _ensure_vector_index(self) -> None:
        try:
            cursor = self._messages.list_search_indexes(self.vector_index_name)
            existing = await cursor.to_list(length=None)
            if existing:
                return
            await self._messages.create_search_index(
                {
                    "name": self.vector_index_name,
                    "type": "vectorSearch",
                    "definition": {
                        "fields": [
                            {
                                "type": "vector",
                                "path": VECTOR_FIELD,
                                "numDimensions": self.embedding_dimensions,
                                "similarity": "cosine",
                            },
                            {"type": "filter", "path": "chat_id"},
                        ]
                    },
                }
            )
            logger.info("[storage.init] created vector index=%s dims=%s", self.vector_index_name, self.embedding_dimensions)
        except OperationFailure as exc:
            # Self-hosted mongod has no search index support; search_similar will fail loudly instead.
            logger.warning("[storage.init] vector index %s not provisioned: %s", self.vector_index_name, exc)

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
        self._db = None

    async def ping(self) -> None:
        if self._client is None:
            raise RuntimeError("MongoStorage is not connected")
        await self._client.admin.command("ping")

    # -- messages ------------------------------------------------------------

    async def upsert_message(self, message: ChatMessage) -> None:
        doc = _message_document(message)
        await self._messages.update_one(
            {"chat_id": doc["chat_id"], "message_id": doc["message_id"]},
            {"$set": doc},
            upsert=True,
        )

    async def upsert_messages(self, messages: Iterable[ChatMessage]) -> None:
        requests = []
        for message in messages:
            doc = _message_document(message)
            requests.append(
                UpdateOne({"chat_id": doc["chat_id"], "message_id": doc["message_id"]}, {"$set": doc}, upsert=True)
            )
        if requests:
            await self._messages.bulk_write(requests, ordered=False)

    async def get_message(self, chat_id: int, message_id: int) -> Optional[ChatMessage]:
        doc = await self._messages.find_one(
            {"chat_id": int(chat_id), "message_id": int(message_id)},
            projection={"_id": 0},
        )
        if doc is None:
            return None
        return _message_from_document(doc)

    async def get_recent_messages(self, chat_id: int, limit: int) -> List[ChatMessage]:
        if limit <= 0:
            return []
        cursor = (
            self._messages.find({"chat_id": int(chat_id)}, projection={"_id": 0, VECTOR_FIELD: 0})
            .sort([("date", DESCENDING), ("message_id", DESCENDING)])
            .limit(int(limit))
        )
        docs = await cursor.to_list(length=int(limit))
        return [_message_from_document(doc) for doc in reversed(docs)]

    async def get_messages_since(
        self,
        chat_id: int,
        since: datetime,
        *,
        user_id: int = 0,
        limit: int = 0,
    ) -> List[ChatMessage]:
        query: Dict[str, Any] = {"chat_id": int(chat_id), "date": {"$gte": ensure_utc(since)}}
        if user_id:
            query["user_id"] = int(user_id)
        cursor = self._messages.find(query, projection={"_id": 0, VECTOR_FIELD: 0})
        if limit > 0:
            cursor = cursor.sort([("date", DESCENDING), ("message_id", DESCENDING)]).limit(int(limit))
            docs = list(reversed(await cursor.to_list(length=int(limit))))
        else:
            cursor = cursor.sort([("date", ASCENDING), ("message_id", ASCENDING)])
            docs = await cursor.to_list(length=None)
        return [_message_from_document(doc) for doc in docs]

    async def delete_chat_messages(self, chat_id: int) -> int:
        result = await self._messages.delete_many({"chat_id": int(chat_id)})
        return int(result.deleted_count)

    async def list_chat_ids(self) -> Set[int]:
        values = await self._messages.distinct("chat_id")
        return {int(value) for value in values}

    async def count_messages(self, chat_id: int | None = None) -> int:
        query: Dict[str, Any] = {} if chat_id is None else {"chat_id": int(chat_id)}
        return int(await self._messages.count_documents(query))

    # -- vectors ---------------------------------------------------------------

    async def search_similar(self, chat_id: int, vector: List[float], k: int) -> List[ScoredMessage]:
        if k <= 0:
            return []
        pipeline = [
            {
                "$vectorSearch": {
                    "index": self.vector_index_name,
                    "path": VECTOR_FIELD,
                    "queryVector": [float(x) for x in vector],
                    "numCandidates": int(k) * 10,
                    "limit": int(k),
                    "filter": {"chat_id": int(chat_id)},
                }
            },
            {"$set": {"score": {"$meta": "vectorSearchScore"}}},
            {"$project": {"_id": 0, VECTOR_FIELD: 0}},
        ]
        cursor = self._messages.aggregate(pipeline)
        docs = await cursor.to_list(length=int(k))
        return [ScoredMessage(message=_message_from_document(doc), score=float(doc.get("score") or 0.0)) for doc in docs]

    async def find_messages_without_embedding(
        self,
        chat_id: int,
        limit: int,
        skip_ids: Iterable[int] = (),
    ) -> List[ChatMessage]:
        query: Dict[str, Any] = {
            "chat_id": int(chat_id),
            VECTOR_FIELD: {"$exists": False},
            **_EMBEDDABLE_FILTER,
        }
        skipped = sorted({int(item) for item in skip_ids})
        if skipped:
            query["message_id"] = {"$nin": skipped}
        cursor = (
            self._messages.find(query, projection={"_id": 0})
            .sort([("date", ASCENDING), ("message_id", ASCENDING)])
            .limit(int(limit))
        )
        docs = await cursor.to_list(length=int(limit))
        return [_message_from_document(doc) for doc in docs]

    async def set_message_embedding(self, chat_id: int, message_id: int, vector: List[float]) -> bool:
        result = await self._messages.update_one(
            {"chat_id": int(chat_id), "message_id": int(message_id)},
            {"$set": {VECTOR_FIELD: [float(x) for x in vector]}},
        )
        return int(result.matched_count) > 0

    # -- retention -------------------------------------------------------------

    async def get_chat_storage_size(self, chat_id: int) -> int:
        cursor = self._messages.aggregate(
            [
                {"$match": {"chat_id": int(chat_id)}},
                {"$group": {"_id": None, "size": {"$sum": {"$bsonSize": "$$ROOT"}}}},
            ]
        )
        docs = await cursor.to_list(length=1)
        if not docs:
            return 0
        return int(docs[0].get("size") or 0)

    async def get_oldest_message_timestamp(self, chat_id: int) -> Optional[datetime]:
        doc = await self._messages.find_one(
            {"chat_id": int(chat_id)},
            projection={"_id": 0, "date": 1},
            sort=[("date", ASCENDING)],
        )
        if doc is None:
            return None
        return parse_optional_datetime(doc.get("date"))

    async def delete_messages_before(self, chat_id: int, threshold: datetime) -> int:
        result = await self._messages.delete_many({"chat_id": int(chat_id), "date": {"$lt": ensure_utc(threshold)}})
        return int(result.deleted_count)

    # -- profiles --------------------------------------------------------------

    async def get_user_profile(self, chat_id: int, user_id: int) -> Optional[UserProfile]:
        doc = await self._profiles.find_one({"chat_id": int(chat_id), "user_id": int(user_id)}, projection={"_id": 0})
        if doc is None:
            return None
        return UserProfile.from_dict(doc)

    async def upsert_user_profile(self, profile: UserProfile) -> None:
        created_at = ensure_utc(profile.created_at) if profile.created_at else utc_now()
        await self._profiles.update_one(
            {"chat_id": int(profile.chat_id), "user_id": int(profile.user_id)},
            {"$set": _profile_document(profile), "$setOnInsert": {"created_at": created_at}},
            upsert=True,
        )

    async def list_user_profiles(self, chat_id: int) -> List[UserProfile]:
        cursor = self._profiles.find({"chat_id": int(chat_id)}, projection={"_id": 0}).sort(
            [("last_seen", DESCENDING), ("user_id", ASCENDING)]
        )
        docs = await cursor.to_list(length=None)
        return [UserProfile.from_dict(doc) for doc in docs]

    async def reset_auto_bio_timestamps(self, chat_id: int) -> int:
        result = await self._profiles.update_many(
            {"chat_id": int(chat_id), "last_auto_bio_update": {"$ne": None}},
            {"$set": {"last_auto_bio_update": None}},
        )
        return int(result.modified_count)

    # -- chat settings ---------------------------------------------------------

    async def get_chat_settings(self, chat_id: int) -> Optional[ChatSettingsRecord]:
        doc = await self._settings.find_one({"chat_id": int(chat_id)}, projection={"_id": 0})
        if doc is None:
            return None
        return settings_record_from_mapping(chat_id, doc)

    async def upsert_chat_settings(self, record: ChatSettingsRecord, *, only_missing: bool = False) -> None:
        present = {item.value: value for item, value in record.present_values().items()}
        if only_missing:
            # Pipeline form so a stored non-null value always wins over the one being materialized.
            stage: Dict[str, Any] = {
                key: {"$ifNull": [f"${key}", {"$literal": value}]} for key, value in present.items()
            }
            stage["updated_at"] = {"$literal": utc_now()}
            update: Any = [{"$set": stage}]
        else:
            update = {"$set": {**present, "updated_at": utc_now()}}

        query = {"chat_id": int(record.chat_id)}
        try:
            await self._settings.update_one(query, update, upsert=True)
        except DuplicateKeyError:
            # Two first writers raced on the unique index; the row exists now, so apply as an update.
            await self._settings.update_one(query, update)

    async def set_chat_setting(self, chat_id: int, item: SettingsField, value: Any) -> None:
        query = {"chat_id": int(chat_id)}
        update = {"$set": {SettingsField(item).value: value, "updated_at": utc_now()}}
        try:
            await self._settings.update_one(query, update, upsert=True)
        except DuplicateKeyError:
            await self._settings.update_one(query, update)
