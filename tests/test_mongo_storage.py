from __future__ import annotations

import asyncio
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict
from unittest.mock import AsyncMock, MagicMock

from pymongo import UpdateOne
from pymongo.errors import DuplicateKeyError, OperationFailure


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chat_memory.storage.mongo_store import (  # noqa: E402
    NON_BLANK_PATTERN,
    PY_WHITESPACE,
    VECTOR_FIELD,
    MongoStorage,
    _message_document,
)
from chat_memory.types import ChatMessage, ChatSettingsRecord, UserProfile  # noqa: E402


T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _cursor(docs) -> MagicMock:
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=docs)
    return cursor


def _storage() -> tuple[MongoStorage, Dict[str, MagicMock]]:
    storage = MongoStorage("mongodb://localhost:27017", "chat_memory_test", vector_index_name="idx_test", embedding_dimensions=4)
    collections = {
        "chat_messages": MagicMock(),
        "user_profiles": MagicMock(),
        "chat_settings": MagicMock(),
    }
    storage._db = collections  # type: ignore[assignment]
    return storage, collections


def test_search_similar_builds_a_chat_scoped_vector_search() -> None:
    storage, collections = _storage()
    messages = collections["chat_messages"]
    messages.aggregate.return_value = _cursor(
        [{"chat_id": 1, "message_id": 5, "date": T0, "text": "cats", "score": 0.87}]
    )

    results = asyncio.run(storage.search_similar(1, [0.1, 0.2, 0.3, 0.4], 3))

    pipeline = messages.aggregate.call_args.args[0]
    stage = pipeline[0]["$vectorSearch"]
    assert stage["index"] == "idx_test"
    assert stage["path"] == VECTOR_FIELD
    assert stage["filter"] == {"chat_id": 1}
    assert stage["limit"] == 3
    assert stage["numCandidates"] == 30
    assert pipeline[1] == {"$set": {"score": {"$meta": "vectorSearchScore"}}}
    assert len(results) == 1
    assert results[0].message.message_id == 5
    assert results[0].message.timestamp == T0
    assert results[0].score == 0.87


def test_upsert_without_vector_does_not_touch_the_stored_vector() -> None:
    storage, collections = _storage()
    messages = collections["chat_messages"]
    messages.update_one = AsyncMock()

    asyncio.run(storage.upsert_message(ChatMessage(chat_id=1, message_id=2, timestamp=T0, text="hello")))
    query, update = messages.update_one.call_args.args
    assert query == {"chat_id": 1, "message_id": 2}
    assert VECTOR_FIELD not in update["$set"]
    assert update["$set"]["date"] == T0
    assert messages.update_one.call_args.kwargs["upsert"] is True

    asyncio.run(
        storage.upsert_message(ChatMessage(chat_id=1, message_id=3, timestamp=T0, text="hi", embedding=[1, 0, 0, 0]))
    )
    _, update = messages.update_one.call_args.args
    assert update["$set"][VECTOR_FIELD] == [1.0, 0.0, 0.0, 0.0]


def test_find_unembedded_filters_skipped_and_blank_messages() -> None:
    storage, collections = _storage()
    messages = collections["chat_messages"]
    cursor = _cursor([{"chat_id": 1, "message_id": 7, "date": T0, "text": "pending"}])
    messages.find.return_value = cursor

    found = asyncio.run(storage.find_messages_without_embedding(1, 50, skip_ids=[5, 2]))

    query = messages.find.call_args.args[0]
    assert query["chat_id"] == 1
    assert query[VECTOR_FIELD] == {"$exists": False}
    assert query["message_id"] == {"$nin": [2, 5]}
    assert "$or" in query
    cursor.limit.assert_called_once_with(50)
    assert [message.message_id for message in found] == [7]


def test_blank_filter_agrees_with_python_whitespace() -> None:
    python_whitespace = {chr(code) for code in range(0x110000) if chr(code).isspace()}
    assert set(PY_WHITESPACE) == python_whitespace

    pattern = re.compile(NON_BLANK_PATTERN)
    assert pattern.search("\u00a0\u3000\u2009\t") is None
    assert pattern.search("\u00a0hi") is not None
    assert ChatMessage(chat_id=1, message_id=1, timestamp=T0, text="\u00a0\u3000").is_embeddable is False


def test_bulk_upsert_sends_one_unordered_bulk_write() -> None:
    storage, collections = _storage()
    messages = collections["chat_messages"]
    messages.bulk_write = AsyncMock()

    first = ChatMessage(chat_id=1, message_id=1, timestamp=T0, text="a")
    second = ChatMessage(chat_id=2, message_id=9, timestamp=T0, text="b", embedding=[1, 0, 0, 0])
    asyncio.run(storage.upsert_messages([first, second]))

    requests = messages.bulk_write.call_args.args[0]
    assert messages.bulk_write.call_args.kwargs["ordered"] is False
    assert requests == [
        UpdateOne({"chat_id": 1, "message_id": 1}, {"$set": _message_document(first)}, upsert=True),
        UpdateOne({"chat_id": 2, "message_id": 9}, {"$set": _message_document(second)}, upsert=True),
    ]
    assert VECTOR_FIELD not in _message_document(first)
    assert _message_document(second)[VECTOR_FIELD] == [1.0, 0.0, 0.0, 0.0]

    messages.bulk_write.reset_mock()
    asyncio.run(storage.upsert_messages([]))
    messages.bulk_write.assert_not_called()


def test_materializing_settings_never_overwrites_stored_values() -> None:
    storage, collections = _storage()
    settings = collections["chat_settings"]
    settings.update_one = AsyncMock()

    record = ChatSettingsRecord(chat_id=4, model="flash", temperature=0.7)
    asyncio.run(storage.upsert_chat_settings(record, only_missing=True))

    query, update = settings.update_one.call_args.args
    assert query == {"chat_id": 4}
    assert isinstance(update, list)
    stage = update[0]["$set"]
    assert stage["model"] == {"$ifNull": ["$model", {"$literal": "flash"}]}
    assert stage["temperature"] == {"$ifNull": ["$temperature", {"$literal": 0.7}]}
    assert "conversation_style" not in stage


def test_settings_upsert_retries_as_update_after_duplicate_key() -> None:
    storage, collections = _storage()
    settings = collections["chat_settings"]
    settings.update_one = AsyncMock(side_effect=[DuplicateKeyError("E11000 duplicate key"), None])

    asyncio.run(storage.upsert_chat_settings(ChatSettingsRecord(chat_id=4, model="pro")))

    assert settings.update_one.await_count == 2
    first, second = settings.update_one.call_args_list
    assert first.kwargs == {"upsert": True}
    assert second.kwargs == {}
    assert second.args[1]["$set"]["model"] == "pro"


def test_profile_upsert_only_sets_created_at_on_insert() -> None:
    storage, collections = _storage()
    profiles = collections["user_profiles"]
    profiles.update_one = AsyncMock()

    asyncio.run(storage.upsert_user_profile(UserProfile(chat_id=1, user_id=9, username="bob", created_at=T0)))
    _, update = profiles.update_one.call_args.args
    assert "created_at" not in update["$set"]
    assert update["$setOnInsert"] == {"created_at": T0}


def test_vector_index_is_created_once_and_missing_support_only_warns() -> None:
    storage, collections = _storage()
    messages = collections["chat_messages"]
    messages.list_search_indexes.return_value = _cursor([])
    messages.create_search_index = AsyncMock()

    asyncio.run(storage._ensure_vector_index())
    definition = messages.create_search_index.call_args.args[0]
    assert definition["name"] == "idx_test"
    assert definition["type"] == "vectorSearch"
    vector_field = definition["definition"]["fields"][0]
    assert vector_field["path"] == VECTOR_FIELD
    assert vector_field["numDimensions"] == 4

    messages.list_search_indexes.return_value = _cursor([{"name": "idx_test"}])
    messages.create_search_index.reset_mock()
    asyncio.run(storage._ensure_vector_index())
    messages.create_search_index.assert_not_called()

    messages.list_search_indexes.side_effect = OperationFailure("search indexes are not supported")
    asyncio.run(storage._ensure_vector_index())


def test_storage_size_sums_document_sizes() -> None:
    storage, collections = _storage()
    messages = collections["chat_messages"]
    messages.aggregate.return_value = _cursor([{"_id": None, "size": 4096}])
    assert asyncio.run(storage.get_chat_storage_size(1)) == 4096

    messages.aggregate.return_value = _cursor([])
    assert asyncio.run(storage.get_chat_storage_size(2)) == 0
