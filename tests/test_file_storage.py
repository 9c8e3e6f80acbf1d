from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chat_memory.errors import StorageIOError  # noqa: E402
from chat_memory.memory.messages import MessageStore  # noqa: E402
from chat_memory.storage.file_store import FileStorage  # noqa: E402
from chat_memory.types import ChatMessage, SettingsField, UserProfile  # noqa: E402


T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _msg(chat_id: int, message_id: int, minutes: int, **kwargs) -> ChatMessage:
    return ChatMessage(
        chat_id=chat_id,
        message_id=message_id,
        timestamp=T0 + timedelta(minutes=minutes),
        user_id=100,
        text=kwargs.pop("text", f"message {message_id}"),
        **kwargs,
    )


def test_state_survives_a_restart(tmp_path: Path) -> None:
    data_dir = tmp_path / "chats"

    async def write() -> None:
        storage = FileStorage(data_dir)
        await storage.init()
        await storage.upsert_message(_msg(1, 1, 0, text="привіт", embedding=[0.25, 0.75]))
        await storage.upsert_message(_msg(1, 2, 1, reply_to_message_id=1))
        await storage.upsert_user_profile(UserProfile(chat_id=1, user_id=100, username="alice", last_seen=T0))
        await storage.set_chat_setting(1, SettingsField.MODEL, "flash")
        await storage.close()

    async def read() -> None:
        storage = FileStorage(data_dir)
        await storage.init()
        recent = await storage.get_recent_messages(1, 10)
        assert [message.message_id for message in recent] == [1, 2]
        assert recent[0].text == "привіт"
        assert recent[0].embedding == [0.25, 0.75]
        assert recent[0].timestamp == T0
        assert recent[1].reply_to_message_id == 1

        profile = await storage.get_user_profile(1, 100)
        assert profile is not None and profile.username == "alice"
        settings = await storage.get_chat_settings(1)
        assert settings is not None and settings.model == "flash"
        assert settings.temperature is None

    asyncio.run(write())
    assert (data_dir / "chat_1.json").exists()
    assert not (data_dir / "chat_1.json.tmp").exists()
    asyncio.run(read())


def test_corrupted_chat_file_is_moved_aside(tmp_path: Path) -> None:
    data_dir = tmp_path / "chats"
    data_dir.mkdir()
    (data_dir / "chat_5.json").write_text("{not json", encoding="utf-8")
    (data_dir / "chat_6.json").write_text(
        json.dumps({"version": 1, "chat_id": 6, "messages": [], "profiles": [], "settings": None}),
        encoding="utf-8",
    )

    async def scenario() -> None:
        storage = FileStorage(data_dir)
        await storage.init()
        assert await storage.get_recent_messages(5, 10) == []
        await storage.upsert_message(_msg(5, 1, 0))
        assert await storage.count_messages(5) == 1

    asyncio.run(scenario())

    backups = list(data_dir.glob("chat_5.json.corrupted.*"))
    assert len(backups) == 1
    assert backups[0].read_text(encoding="utf-8") == "{not json"
    assert (data_dir / "chat_5.json").exists()


def test_chat_file_that_is_not_an_object_is_moved_aside(tmp_path: Path) -> None:
    data_dir = tmp_path / "chats"
    data_dir.mkdir()
    (data_dir / "chat_7.json").write_text("[1, 2, 3]", encoding="utf-8")
    (data_dir / "chat_8.json").write_text(json.dumps({"messages": [42]}), encoding="utf-8")

    async def scenario() -> None:
        storage = FileStorage(data_dir)
        await storage.init()
        assert await storage.count_messages() == 0

    asyncio.run(scenario())

    assert len(list(data_dir.glob("chat_7.json.corrupted.*"))) == 1
    assert len(list(data_dir.glob("chat_8.json.corrupted.*"))) == 1
    assert not (data_dir / "chat_7.json").exists()


def test_cache_cap_drops_oldest_messages(tmp_path: Path) -> None:
    async def scenario() -> None:
        storage = FileStorage(tmp_path / "chats", max_messages_per_chat=3)
        await storage.init()
        for message_id in range(1, 6):
            await storage.upsert_message(_msg(1, message_id, message_id))
        recent = await storage.get_recent_messages(1, 10)
        assert [message.message_id for message in recent] == [3, 4, 5]

    asyncio.run(scenario())


def test_reads_return_copies(tmp_path: Path) -> None:
    async def scenario() -> None:
        storage = FileStorage(tmp_path / "chats")
        await storage.init()
        await storage.upsert_message(_msg(1, 1, 0, embedding=[1.0, 0.0]))

        copy = await storage.get_message(1, 1)
        copy.text = "mutated"
        copy.embedding.append(9.0)

        stored = await storage.get_message(1, 1)
        assert stored.text == "message 1"
        assert stored.embedding == [1.0, 0.0]

    asyncio.run(scenario())


def test_concurrent_writes_to_one_chat_are_all_kept(tmp_path: Path) -> None:
    async def scenario() -> None:
        storage = FileStorage(tmp_path / "chats")
        await storage.init()
        await asyncio.gather(*(storage.upsert_message(_msg(1, message_id, message_id)) for message_id in range(1, 21)))
        assert await storage.count_messages(1) == 20

        restarted = FileStorage(tmp_path / "chats")
        await restarted.init()
        assert await restarted.count_messages(1) == 20

    asyncio.run(scenario())


def test_ping_fails_when_directory_is_missing(tmp_path: Path) -> None:
    async def scenario() -> None:
        storage = FileStorage(tmp_path / "missing")
        with pytest.raises(FileNotFoundError):
            await storage.ping()

    asyncio.run(scenario())


def test_failed_write_leaves_cache_and_disk_unchanged(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = tmp_path / "chats"

    def _disk_full(path: Path, payload: dict) -> None:
        raise OSError(28, "No space left on device")

    async def scenario() -> None:
        storage = FileStorage(data_dir)
        await storage.init()
        store = MessageStore(storage)
        await store.add(_msg(1, 1, 0))
        await store.add(_msg(1, 2, 60))

        monkeypatch.setattr(storage, "_write_atomic_sync", _disk_full)

        with pytest.raises(StorageIOError):
            await store.add(_msg(1, 3, 120))
        with pytest.raises(StorageIOError):
            await store.add(_msg(9, 1, 0))
        with pytest.raises(StorageIOError):
            await store.clear(1)
        with pytest.raises(StorageIOError):
            await store.delete_older_than(1, T0 + timedelta(hours=1))
        with pytest.raises(StorageIOError):
            await store.attach_embedding(1, 1, [1.0, 0.0])
        with pytest.raises(StorageIOError):
            await storage.set_chat_setting(1, SettingsField.MODEL, "flash")

        assert [message.message_id for message in await store.get_recent(1, 10)] == [1, 2]
        assert (await store.get_message(1, 1)).embedding is None
        assert await store.count_messages(9) == 0
        assert await store.list_chat_ids() == {1}
        assert await storage.get_chat_settings(1) is None

        restarted = FileStorage(data_dir)
        await restarted.init()
        assert [message.message_id for message in await restarted.get_recent_messages(1, 10)] == [1, 2]

    asyncio.run(scenario())
